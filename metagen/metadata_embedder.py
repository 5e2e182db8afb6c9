"""
XMP metadata for downloaded assets, written with exiftool.

JPEG files get Dublin Core title, description and subject written into the
file, replacing any XMP already there; other formats get a ``.xmp`` sidecar
that Adobe tools and stock sites read alongside the file.

Requires the ``exiftool`` executable on PATH.
"""
import logging
import os
import tempfile
from typing import Iterable, Optional

from exiftool import ExifToolHelper
from exiftool.exceptions import ExifToolException

logger = logging.getLogger(__name__)

CREATOR_TOOL = "MetaGen"

JPEG_EXTENSIONS = ('jpg', 'jpeg')


def xmp_tags(title: str, description: str, keywords: Iterable[str]) -> dict:
    """exiftool tag assignments for one variant"""
    return {
        'XMP-dc:Title': title,
        'XMP-dc:Description': description,
        'XMP-dc:Subject': list(keywords or []),
        'XMP-photoshop:Headline': title,
        'XMP-xmp:CreatorTool': CREATOR_TOOL,
    }


def _write_tags(path: str, tags: dict, params: Optional[list] = None) -> bool:
    try:
        with ExifToolHelper() as et:
            et.set_tags(files=[path], tags=tags, params=params or [])
    except (ValueError, TypeError, OSError, ExifToolException) as e:
        logger.warning("exiftool could not write XMP to %s: %r", os.path.basename(path), e)
        return False
    return True


def is_jpeg(data: bytes) -> bool:
    return len(data) >= 2 and data[0] == 0xFF and data[1] == 0xD8


def embed_xmp_in_jpeg(data: bytes, title: str, description: str,
                      keywords: Iterable[str]) -> bytes:
    """Write XMP fields into a JPEG; returns data unchanged if that fails"""
    if not is_jpeg(data):
        logger.debug("Not a JPEG, skipping XMP embedding")
        return data

    with tempfile.TemporaryDirectory(prefix='metagen-xmp-') as workdir:
        path = os.path.join(workdir, 'asset.jpg')
        with open(path, 'wb') as f:
            f.write(data)
        if not _write_tags(path, xmp_tags(title, description, keywords),
                           params=["-overwrite_original"]):
            return data
        with open(path, 'rb') as f:
            return f.read()


def build_xmp_sidecar(title: str, description: str,
                      keywords: Iterable[str]) -> Optional[bytes]:
    """Create a standalone .xmp document; None if exiftool fails"""
    with tempfile.TemporaryDirectory(prefix='metagen-xmp-') as workdir:
        # exiftool creates an .xmp file from scratch when the target is missing
        path = os.path.join(workdir, 'sidecar.xmp')
        if not _write_tags(path, xmp_tags(title, description, keywords)):
            return None
        with open(path, 'rb') as f:
            return f.read()


def needs_xmp_sidecar(filename: str) -> bool:
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    return ext not in JPEG_EXTENSIONS


def xmp_sidecar_filename(filename: str) -> str:
    if '.' in filename:
        return filename.rsplit('.', 1)[0] + '.xmp'
    return filename + '.xmp'
