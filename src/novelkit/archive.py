from __future__ import annotations

import codecs
import io
import logging
import re
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Iterable, Mapping

from .errors import ConfigurationError, MalformedArchiveError, NoContentFoundError

logger = logging.getLogger(__name__)

DECODE_CONCURRENCY = 5
AUTO_ENCODINGS = ("utf-8", "gbk", "big5")

_ENTRY_ERRORS = (UnicodeDecodeError, zipfile.BadZipFile, zlib.error, OSError, EOFError)


@dataclass
class ArchiveEntry:
    name: str
    text: str

    @property
    def stem(self) -> str:
        return PurePosixPath(self.name).stem


def natural_sort_key(name: str) -> tuple[object, ...]:
    """Sort key that orders ``ch2`` before ``ch10``."""
    parts = re.split(r"(\d+)", name.lower())
    key: list[object] = []
    for part in parts:
        if part.isdigit():
            key.append((0, int(part), part))
        else:
            key.append((1, 0, part))
    return tuple(key)


def check_encoding(encoding: str) -> str:
    if encoding == "auto":
        return encoding
    try:
        return codecs.lookup(encoding).name
    except LookupError as exc:
        raise ConfigurationError(f"Unknown text encoding: {encoding}") from exc


def decode_bytes(raw: bytes, encoding: str = "auto") -> str:
    """Decode ``raw`` using ``encoding`` or, for ``auto``, the first codec that fits.

    Explicit encodings raise ``UnicodeDecodeError`` on bad input so batch
    callers can skip the offending entry.
    """
    if encoding != "auto":
        text = raw.decode(encoding)
        return text[1:] if text.startswith("\ufeff") else text
    if raw.startswith(codecs.BOM_UTF8):
        return raw[len(codecs.BOM_UTF8):].decode("utf-8", errors="replace")
    if raw.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return raw.decode("utf-16", errors="replace")
    for enc in AUTO_ENCODINGS:
        try:
            return raw.decode(enc)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def open_archive(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, zlib.error, OSError) as exc:
        raise MalformedArchiveError(f"Not a readable ZIP archive: {exc}") from exc


def _is_hidden(name: str) -> bool:
    parts = PurePosixPath(name).parts
    return any(part.startswith(".") or part == "__MACOSX" for part in parts)


def list_entries(zf: zipfile.ZipFile, extension: str | None = None) -> list[str]:
    names: list[str] = []
    suffix = extension.lower() if extension else None
    for info in zf.infolist():
        if info.is_dir() or _is_hidden(info.filename):
            continue
        if suffix and not info.filename.lower().endswith(suffix):
            continue
        names.append(info.filename)
    names.sort(key=natural_sort_key)
    return names


def read_text_entries(
    data: bytes,
    extension: str = ".txt",
    *,
    encoding: str = "auto",
    max_workers: int = DECODE_CONCURRENCY,
) -> list[ArchiveEntry]:
    """Decode every ``extension`` entry of a ZIP archive in natural filename order.

    Entries are decoded by a bounded worker pool. Entries that fail to read
    or decode are logged and skipped; an archive with no usable entry raises
    ``NoContentFoundError``.
    """
    encoding = check_encoding(encoding)
    if max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1.")
    with open_archive(data) as zf:
        names = list_entries(zf, extension)
        if not names:
            raise NoContentFoundError(f"No {extension} files found in the archive.")

        def _worker(index: int) -> tuple[int, ArchiveEntry | None]:
            name = names[index]
            try:
                text = decode_bytes(zf.read(name), encoding)
            except _ENTRY_ERRORS as exc:
                logger.warning("Skipping %s: %s", name, exc)
                return index, None
            return index, ArchiveEntry(name=name, text=text)

        results: list[ArchiveEntry | None] = [None] * len(names)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for index, entry in executor.map(_worker, range(len(names))):
                results[index] = entry

    entries = [entry for entry in results if entry is not None]
    if not entries:
        raise NoContentFoundError("None of the archive entries could be decoded.")
    return entries


def build_archive(
    entries: Iterable[tuple[str, bytes | str]] | Mapping[str, bytes | str],
    *,
    stored: Iterable[str] = (),
) -> bytes:
    """Write ``entries`` (in the given order) into a deflated ZIP archive."""
    if isinstance(entries, Mapping):
        items = list(entries.items())
    else:
        items = list(entries)
    stored_names = set(stored)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, payload in items:
            raw = payload.encode("utf-8") if isinstance(payload, str) else payload
            info = zipfile.ZipInfo(name, date_time=(1980, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_STORED if name in stored_names else zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, raw)
    return buffer.getvalue()
