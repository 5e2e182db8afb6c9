"""
File type validation and image preparation before upload
"""
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Iterable, List, Optional, Tuple

from PIL import Image, ImageOps

from .errors import ValidationError
from .models import SourceFile
from .pipeline_config import config

logger = logging.getLogger(__name__)

ANALYZABLE_IMAGE_TYPES = {
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'gif': 'image/gif',
}

REVIEWABLE_TYPES = dict(ANALYZABLE_IMAGE_TYPES, **{
    'avif': 'image/avif',
    'heic': 'image/heic',
    'tiff': 'image/tiff',
    'tif': 'image/tiff',
    'svg': 'image/svg+xml',
    'mp4': 'video/mp4',
    'mov': 'video/quicktime',
    'webm': 'video/webm',
})

# Vector sources the vision model cannot read
UNSUPPORTED_VECTOR_TYPES = {'eps', 'ai'}


@dataclass
class PartitionResult:
    accepted: List[SourceFile] = field(default_factory=list)
    rejected: List[Tuple[SourceFile, str]] = field(default_factory=list)
    # filled in by the session once accepted files are queued
    queued: list = field(default_factory=list)

    def rejection_messages(self) -> List[str]:
        return [f"{f.filename}: {reason}" for f, reason in self.rejected]


def supported_types_for(tool: str) -> dict:
    return REVIEWABLE_TYPES if tool == 'review' else ANALYZABLE_IMAGE_TYPES


def content_type_for(filename: str, fallback: str = 'application/octet-stream') -> str:
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    return REVIEWABLE_TYPES.get(ext, fallback)


def validate_file(source: SourceFile, tool: str = 'metadata'):
    """Raise ValidationError if the file cannot be dispatched by this tool"""
    ext = source.extension
    if ext in UNSUPPORTED_VECTOR_TYPES:
        raise ValidationError(
            f"{ext.upper()} files cannot be analyzed directly. Export a JPG or PNG preview instead.")
    allowed = supported_types_for(tool)
    # a present extension must itself be supported; content type only covers bare names
    supported = ext in allowed if ext else source.content_type in allowed.values()
    if not supported:
        raise ValidationError(f"Unsupported file type: {ext or source.content_type}")
    if not source.data:
        raise ValidationError("File is empty")
    if source.size > config.max_upload_size:
        raise ValidationError(
            f"File exceeds maximum size of {config.max_upload_size // (1024 * 1024)}MB")


def partition_supported(files: Iterable[SourceFile], tool: str = 'metadata') -> PartitionResult:
    """Split files into dispatchable ones and rejected ones with reasons"""
    result = PartitionResult()
    for source in files:
        try:
            validate_file(source, tool)
            result.accepted.append(source)
        except ValidationError as e:
            logger.info("Rejected %s before queueing: %s", source.filename, e)
            result.rejected.append((source, str(e)))
    return result


def prepare_for_analysis(data: bytes, max_size: Optional[int] = None) -> bytes:
    """
    Normalize an image for the vision model: honour EXIF orientation,
    convert to RGB, bound the longest side and re-encode as JPEG.

    Returns the input unchanged when Pillow cannot decode it (video, svg).
    """
    max_size = max_size or config.image_max_size
    try:
        with Image.open(BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert('RGB')
            if img.width > max_size or img.height > max_size:
                img.thumbnail((max_size, max_size), Image.LANCZOS)
            out_buf = BytesIO()
            img.save(out_buf, format='JPEG', quality=85, optimize=True)
            return out_buf.getvalue()
    except Exception as e:
        logger.debug("Could not prepare image for analysis: %r", e)
        return data
