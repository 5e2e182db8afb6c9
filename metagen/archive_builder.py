"""
Archive builder: bundles completed results into one ZIP download.

Entries are laid out as ``<variant>/<seo filename>``, hold the untouched
original bytes and carry the variant's metadata as a JSON entry comment.
A failed fetch skips only that entry.
"""
import asyncio
import io
import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .asset_storage import AssetStorage
from .errors import ValidationError
from .metadata_embedder import (
    build_xmp_sidecar, embed_xmp_in_jpeg, is_jpeg, needs_xmp_sidecar, xmp_sidecar_filename
)
from .models import ItemStatus, QueueItem, Variant
from .pipeline_config import config
from .seo_filename import dedupe_filename, get_file_extension, make_filename

logger = logging.getLogger(__name__)

MAX_ENTRY_COMMENT = 65535


@dataclass
class ArchiveResult:
    data: Optional[bytes]
    filename: str
    content_type: str
    requested: int
    added: int
    skipped: int
    failures: List[str]

    @property
    def message(self) -> str:
        if self.added == 0:
            return "No files could be added to the download"
        return f"Downloaded {self.added} file(s)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filename': self.filename,
            'requested': self.requested,
            'added': self.added,
            'skipped': self.skipped,
            'failures': list(self.failures),
            'message': self.message,
        }


def filename_for(item: QueueItem, variant: Variant) -> str:
    """SEO filename shared by archive entries and single downloads"""
    ext = get_file_extension(item.source.filename)
    title = variant.title or variant.prompt
    if not title:
        title = item.source.filename.rsplit('.', 1)[0]
    return make_filename(title, variant.keywords, variant.name, ext)


def _entry_metadata(variant: Variant) -> Dict[str, Any]:
    metadata = {'variant': variant.name}
    for key in ('title', 'description', 'prompt', 'negative_prompt'):
        value = getattr(variant, key)
        if value:
            metadata[key] = value
    if variant.keywords:
        metadata['keywords'] = list(variant.keywords)
    return metadata


def _entry_comment(metadata: Dict[str, Any]) -> bytes:
    comment = json.dumps(metadata, ensure_ascii=False).encode('utf-8')
    if len(comment) > MAX_ENTRY_COMMENT:
        # keywords are the bulk; keep the title and description readable
        trimmed = {k: v for k, v in metadata.items() if k != 'keywords'}
        comment = json.dumps(trimmed, ensure_ascii=False).encode('utf-8')[:MAX_ENTRY_COMMENT]
    return comment


class ArchiveBuilder:
    """Builds ZIP archives over completed queue items"""

    def __init__(self, storage: AssetStorage, include_sidecars: Optional[bool] = None):
        self.storage = storage
        self.include_sidecars = (config.archive_include_xmp_sidecars
                                 if include_sidecars is None else include_sidecars)

    @staticmethod
    def plan(items: Iterable[QueueItem], variant: Optional[str] = None
             ) -> List[Tuple[QueueItem, Variant]]:
        """(item, variant) pairs to include, in queue order"""
        entries = []
        for item in items:
            if item.status != ItemStatus.COMPLETED or item.result is None:
                continue
            for v in item.result.variants:
                if variant is None or v.name == variant:
                    entries.append((item, v))
        return entries

    async def build(self, items: Iterable[QueueItem], variant: Optional[str] = None,
                    label: str = 'all') -> ArchiveResult:
        entries = self.plan(items, variant)
        if not entries:
            raise ValidationError("No completed items to download")

        requested = len(entries)
        added = 0
        failures = []
        taken = {}
        now = datetime.now()
        buffer = io.BytesIO()

        with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zip_file:
            for item, v in entries:
                try:
                    data = await self.storage.fetch(item.uploaded_asset_url or '')
                except Exception as e:
                    logger.error("Skipping %s/%s in archive: %s",
                                 v.name, item.source.filename, e)
                    failures.append(f"{item.source.filename} ({v.name}): {e}")
                    continue

                folder_names = taken.setdefault(v.name, set())
                name = dedupe_filename(filename_for(item, v), folder_names)
                info = zipfile.ZipInfo(f"{v.name}/{name}", date_time=now.timetuple()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                info.comment = _entry_comment(_entry_metadata(v))
                zip_file.writestr(info, data)
                added += 1

                if self.include_sidecars and v.title and needs_xmp_sidecar(name):
                    sidecar = await asyncio.to_thread(
                        build_xmp_sidecar, v.title, v.description or '', v.keywords)
                    if sidecar is not None:
                        zip_file.writestr(f"{v.name}/{xmp_sidecar_filename(name)}", sidecar)


        safe_label = ''.join(c for c in label if c.isalnum() or c in ('-', '_')) or 'all'
        result = ArchiveResult(
            data=buffer.getvalue() if added else None,
            filename=f"metadata-{safe_label}-{now.strftime('%Y%m%d_%H%M%S')}.zip",
            content_type='application/zip',
            requested=requested,
            added=added,
            skipped=requested - added,
            failures=failures,
        )
        logger.info("Archive %s: %d requested, %d added, %d skipped",
                    result.filename, requested, added, result.skipped)
        return result

    async def build_single_download(self, item: QueueItem, variant: str) -> Dict[str, Any]:
        """One file for one variant, named like its archive entry"""
        if item.status != ItemStatus.COMPLETED or item.result is None:
            raise ValidationError("Item has no completed result")
        v = item.result.variant(variant)
        if v is None:
            raise ValidationError(f"Item has no result for {variant}")

        data = await self.storage.fetch(item.uploaded_asset_url or '')
        if v.title and is_jpeg(data):
            data = await asyncio.to_thread(
                embed_xmp_in_jpeg, data, v.title, v.description or '', v.keywords)
        return {
            'data': data,
            'filename': filename_for(item, v),
            'content_type': item.source.content_type or 'application/octet-stream',
        }
