from __future__ import annotations

import base64
import binascii
import io
from dataclasses import dataclass
from pathlib import PurePosixPath

from PIL import Image, UnidentifiedImageError

from .errors import ConfigurationError, InvalidDocumentSchemaError

_FORMAT_MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}
_SUFFIX_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}
_MEDIA_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}


@dataclass
class CoverImage:
    data: bytes
    media_type: str
    filename: str | None = None

    @property
    def extension(self) -> str:
        ext = _MEDIA_TYPE_EXTENSIONS.get(self.media_type.lower())
        if ext:
            return ext
        if self.filename:
            suffix = PurePosixPath(self.filename).suffix.lower()
            if suffix in _SUFFIX_MEDIA_TYPES:
                return ".jpg" if suffix == ".jpeg" else suffix
        return ".img"

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        filename: str | None = None,
        media_type: str | None = None,
    ) -> "CoverImage":
        if not data:
            raise ConfigurationError("Cover image is empty.")
        detected = media_type or sniff_media_type(data, filename)
        if detected is None:
            raise ConfigurationError(f"Unsupported cover image: {filename or 'unnamed'}")
        return cls(data=data, media_type=detected, filename=filename)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def from_base64(cls, value: str, media_type: str) -> "CoverImage":
        if "," in value and value.lstrip().startswith("data:"):
            value = value.split(",", 1)[1]
        try:
            raw = base64.b64decode(value, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise InvalidDocumentSchemaError(f"Cover image is not valid base64: {exc}") from exc
        return cls(data=raw, media_type=media_type or "image/jpeg")


def sniff_media_type(data: bytes, filename: str | None = None) -> str | None:
    """Identify an image's media type from its bytes, falling back to the filename."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            fmt = (image.format or "").upper()
    except (UnidentifiedImageError, OSError):
        fmt = ""
    if fmt in _FORMAT_MEDIA_TYPES:
        return _FORMAT_MEDIA_TYPES[fmt]
    if filename:
        return _SUFFIX_MEDIA_TYPES.get(PurePosixPath(filename).suffix.lower())
    return None
