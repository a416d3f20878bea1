from __future__ import annotations

import io

import pytest
from PIL import Image

from novelkit.cover import CoverImage, sniff_media_type
from novelkit.errors import ConfigurationError


def _image_bytes(fmt: str) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (10, 20, 30)).save(buffer, format=fmt)
    return buffer.getvalue()


def test_sniff_media_type_reads_image_bytes() -> None:
    assert sniff_media_type(_image_bytes("JPEG")) == "image/jpeg"
    assert sniff_media_type(_image_bytes("PNG"), "misnamed.jpg") == "image/png"


def test_sniff_media_type_falls_back_to_suffix() -> None:
    assert sniff_media_type(b"<svg/>", "cover.svg") == "image/svg+xml"
    assert sniff_media_type(b"??") is None


def test_cover_image_from_bytes_and_base64() -> None:
    cover = CoverImage.from_bytes(_image_bytes("JPEG"), filename="front.jpeg")
    assert cover.media_type == "image/jpeg"
    assert cover.extension == ".jpg"
    restored = CoverImage.from_base64(cover.to_base64(), cover.media_type)
    assert restored.data == cover.data
    data_url = "data:image/jpeg;base64," + cover.to_base64()
    assert CoverImage.from_base64(data_url, "image/jpeg").data == cover.data


def test_cover_image_rejects_unknown_data() -> None:
    with pytest.raises(ConfigurationError):
        CoverImage.from_bytes(b"")
    with pytest.raises(ConfigurationError):
        CoverImage.from_bytes(b"plain text", filename="notes.txt")
