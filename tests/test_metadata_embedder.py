import shutil
from io import BytesIO

import pytest
from exiftool import ExifToolHelper
from PIL import Image

import metagen.metadata_embedder as embedder
from metagen.metadata_embedder import (
    build_xmp_sidecar, embed_xmp_in_jpeg, needs_xmp_sidecar, xmp_sidecar_filename
)

XMP_SIGNATURE = b'http://ns.adobe.com/xap/1.0/\x00'

requires_exiftool = pytest.mark.skipif(
    shutil.which('exiftool') is None, reason="exiftool executable not installed")


def _jpeg():
    buf = BytesIO()
    Image.new('RGB', (16, 16), (200, 120, 40)).save(buf, format='JPEG')
    return buf.getvalue()


def _read_tags(tmp_path, data):
    path = tmp_path / 'check.jpg'
    path.write_bytes(data)
    with ExifToolHelper() as et:
        return et.get_tags([str(path)], tags=['XMP-dc:Title', 'XMP-dc:Subject'])[0]


@requires_exiftool
def test_embed_keeps_jfif_first_and_replaces_existing_xmp(tmp_path):
    original = _jpeg()
    assert original[2:4] == b'\xff\xe0'

    once = embed_xmp_in_jpeg(original, 'First title', 'First', ['a'])
    twice = embed_xmp_in_jpeg(once, 'Harbor lights', 'Boats at night', ['harbor', 'night'])

    assert twice[:2] == b'\xff\xd8'
    assert twice[2:4] == b'\xff\xe0'
    assert twice.count(XMP_SIGNATURE) == 1
    tags = _read_tags(tmp_path, twice)
    assert tags['XMP:Title'] == 'Harbor lights'
    assert tags['XMP:Subject'] == ['harbor', 'night']


@requires_exiftool
def test_sidecar_is_standalone_xmp():
    sidecar = build_xmp_sidecar('Cats & "Dogs"', 'Pets on a sofa', ['pets', 'fur'])
    assert sidecar is not None
    text = sidecar.decode('utf-8')
    assert 'x:xmpmeta' in text
    assert 'Cats &amp; &quot;Dogs&quot;' in text
    assert 'pets' in text and 'fur' in text


def test_embed_leaves_non_jpeg_untouched():
    png = b'\x89PNG\r\n\x1a\n'
    assert embed_xmp_in_jpeg(png, 't', 'd', []) == png


class _MissingExifTool:
    def __init__(self, *args, **kwargs):
        raise FileNotFoundError("exiftool")


def test_exiftool_failure_returns_original_bytes(monkeypatch):
    monkeypatch.setattr(embedder, 'ExifToolHelper', _MissingExifTool)
    data = _jpeg()
    assert embed_xmp_in_jpeg(data, 'Title', 'Description', ['a']) == data
    assert build_xmp_sidecar('Title', 'Description', ['a']) is None


def test_sidecar_naming():
    assert needs_xmp_sidecar('Sunset.png') is True
    assert needs_xmp_sidecar('Sunset.JPG') is False
    assert xmp_sidecar_filename('Sunset Beach.png') == 'Sunset Beach.xmp'
