from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Iterable, Sequence

from .archive import DECODE_CONCURRENCY, build_archive, decode_bytes, list_entries, open_archive
from .backup import BackupDocument, count_words, loads_backup
from .errors import ConfigurationError, InvalidDocumentSchemaError, NoContentFoundError

logger = logging.getLogger(__name__)

UNTITLED_SERIES = "Untitled Series"
BACKUP_TYPES = frozenset({"nov", "json", "nov.txt"})
SERIES_TYPES = BACKUP_TYPES | {"txt"}

FILE_ORDERS = (
    "date-desc",
    "date-asc",
    "name-asc",
    "name-desc",
    "size-desc",
    "size-asc",
    "word-count-desc",
    "word-count-asc",
)
SERIES_ORDERS = ("name-asc", "file-count-desc", "updated-desc")

_CHAPTER_RANGE = r"(?:C|Ch|Chapter)?\s?\d+[-_]\d+"
_LEADING_RANGE_RE = re.compile(rf"^{_CHAPTER_RANGE}[-_]?\s*")
_TRAILING_RANGE_RE = re.compile(rf"\s*[-_]?{_CHAPTER_RANGE}(?:\s*_END)?$")
_TRAILING_CHAPTER_RE = re.compile(r"\s*(?:C|Ch|Chapter)\s?\d+$")
_STAMP_RE = re.compile(r"(\d{14})")


def series_name(title: str) -> str:
    """Strip chapter ranges (``C12-20``, ``Ch5``, ``_END``) so related backups share a name."""
    if not title:
        return UNTITLED_SERIES
    cleaned = _LEADING_RANGE_RE.sub("", title, count=1)
    cleaned = _TRAILING_RANGE_RE.sub("", cleaned, count=1)
    cleaned = _TRAILING_CHAPTER_RE.sub("", cleaned, count=1)
    cleaned = re.sub(r"[_-]", " ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or title


def file_type(name: str) -> str:
    lowered = PurePosixPath(name).name.lower()
    if lowered.endswith(".nov.txt"):
        return "nov.txt"
    suffix = PurePosixPath(lowered).suffix
    return suffix[1:] if suffix else ""


def _stamp_from_name(name: str) -> datetime | None:
    found = _STAMP_RE.search(name)
    if not found:
        return None
    try:
        return datetime.strptime(found.group(1), "%Y%m%d%H%M%S")
    except ValueError:
        return None


@dataclass
class BackupFileInfo:
    path: str
    size: int
    modified: datetime
    file_type: str
    series: str
    title: str | None = None
    word_count: int | None = None
    latest: bool = False

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def folder(self) -> str:
        parent = PurePosixPath(self.path).parent
        return "/" if str(parent) == "." else f"{parent}/"

    @property
    def is_backup(self) -> bool:
        return self.title is not None

    def as_payload(self) -> dict[str, object]:
        return {
            "path": self.path,
            "name": self.name,
            "folder": self.folder,
            "size": self.size,
            "modified": self.modified.isoformat(),
            "file_type": self.file_type,
            "series": self.series,
            "title": self.title,
            "word_count": self.word_count,
            "latest": self.latest,
        }


@dataclass
class OrganizedArchive:
    series: dict[str, list[BackupFileInfo]] = field(default_factory=dict)
    others: list[BackupFileInfo] = field(default_factory=list)

    @property
    def files(self) -> list[BackupFileInfo]:
        grouped = [info for infos in self.series.values() for info in infos]
        return grouped + self.others

    @property
    def folders(self) -> list[str]:
        return sorted({info.folder for info in self.files})

    def latest(self) -> list[BackupFileInfo]:
        return [info for info in self.files if info.latest]

    def as_payload(self) -> dict[str, object]:
        return {
            "series": [
                {"name": name, "files": [info.as_payload() for info in infos]}
                for name, infos in self.series.items()
            ],
            "others": [info.as_payload() for info in self.others],
            "folders": self.folders,
        }


def _from_millis(value: int) -> datetime | None:
    if value <= 0:
        return None
    try:
        return datetime.fromtimestamp(value / 1000)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_backup(raw: bytes) -> BackupDocument | None:
    try:
        document = loads_backup(decode_bytes(raw))
    except InvalidDocumentSchemaError as exc:
        logger.debug("Not a backup document: %s", exc)
        return None
    if not document.title or _from_millis(document.last_backup_date) is None:
        return None
    return document


def inspect_entry(path: str, raw: bytes, zip_date: datetime | None = None) -> BackupFileInfo:
    """Describe one archive entry, reading backup metadata when it parses as one.

    The date comes from the backup's ``last_backup_date``, else a
    ``YYYYMMDDhhmmss`` stamp in the file name, else the archive entry date.
    """
    kind = file_type(path)
    document = _parse_backup(raw) if kind in BACKUP_TYPES else None
    if document is not None:
        return BackupFileInfo(
            path=path,
            size=len(raw),
            modified=_from_millis(document.last_backup_date) or datetime.now(),
            file_type=kind,
            series=series_name(document.title),
            title=document.title,
            word_count=count_words(document.scenes),
        )
    name = PurePosixPath(path).name
    modified = _stamp_from_name(name) or zip_date or datetime.now()
    stem = re.sub(r"\.[^/.]+$", "", name)
    return BackupFileInfo(
        path=path,
        size=len(raw),
        modified=modified,
        file_type=kind,
        series=series_name(stem),
    )


def _flag_latest(infos: Iterable[BackupFileInfo]) -> None:
    backups = [info for info in infos if info.is_backup]
    if backups:
        max(backups, key=lambda info: info.modified).latest = True


def organize_backups(data: bytes, *, max_workers: int = DECODE_CONCURRENCY) -> OrganizedArchive:
    """Group the files of a ZIP archive into backup series.

    Backup and text files are grouped by series name; anything else is
    listed under ``others``. The newest parsed backup of each series is
    flagged ``latest``. Series are ordered by name, files newest first.
    """
    if max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1.")
    with open_archive(data) as zf:
        names = list_entries(zf)
        if not names:
            raise NoContentFoundError("The archive contains no files.")

        def _worker(index: int) -> tuple[int, BackupFileInfo]:
            info = zf.getinfo(names[index])
            return index, inspect_entry(info.filename, zf.read(info), datetime(*info.date_time))

        results: list[BackupFileInfo | None] = [None] * len(names)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for index, entry in executor.map(_worker, range(len(names))):
                results[index] = entry

    organized = OrganizedArchive()
    for info in results:
        if info is None:
            continue
        if info.file_type in SERIES_TYPES:
            organized.series.setdefault(info.series, []).append(info)
        else:
            organized.others.append(info)
    for infos in organized.series.values():
        _flag_latest(infos)
    organized.series = sorted_series(organized.series)
    organized.series = {name: sort_files(infos) for name, infos in organized.series.items()}
    logger.info("Organized %d file(s) into %d series", len(names), len(organized.series))
    return organized


def sort_files(files: Sequence[BackupFileInfo], order: str = "date-desc") -> list[BackupFileInfo]:
    if order not in FILE_ORDERS:
        raise ConfigurationError(f"Unknown file order {order!r} (expected one of: {', '.join(FILE_ORDERS)})")
    field_name, _, direction = order.rpartition("-")
    reverse = direction == "desc"
    if field_name == "date":
        return sorted(files, key=lambda info: info.modified, reverse=reverse)
    if field_name == "name":
        return sorted(files, key=lambda info: info.name.lower(), reverse=reverse)
    if field_name == "size":
        return sorted(files, key=lambda info: info.size, reverse=reverse)
    return sorted(files, key=lambda info: info.word_count or 0, reverse=reverse)


def sorted_series(
    series: dict[str, list[BackupFileInfo]],
    order: str = "name-asc",
) -> dict[str, list[BackupFileInfo]]:
    if order not in SERIES_ORDERS:
        raise ConfigurationError(f"Unknown series order {order!r} (expected one of: {', '.join(SERIES_ORDERS)})")
    if order == "name-asc":
        keys = sorted(series, key=str.lower)
    elif order == "file-count-desc":
        keys = sorted(series, key=lambda name: len(series[name]), reverse=True)
    else:
        keys = sorted(series, key=lambda name: max(info.modified for info in series[name]), reverse=True)
    return {name: series[name] for name in keys}


def filter_files(
    files: Iterable[BackupFileInfo],
    *,
    folder: str | None = None,
    query: str | None = None,
) -> list[BackupFileInfo]:
    """Keep files in ``folder`` whose name contains ``query`` (case-insensitive)."""
    needle = query.lower() if query else None
    kept: list[BackupFileInfo] = []
    for info in files:
        if folder is not None and info.folder != folder:
            continue
        if needle and needle not in info.name.lower():
            continue
        kept.append(info)
    return kept


def export_selection(data: bytes, paths: Iterable[str], *, preserve_structure: bool = False) -> bytes:
    """Copy the selected entries of ``data`` into a new ZIP archive.

    Without ``preserve_structure`` files are written at the archive root,
    so two selected files with the same name are rejected.
    """
    selected = list(dict.fromkeys(paths))
    if not selected:
        raise ConfigurationError("Select at least one file to export.")
    with open_archive(data) as zf:
        available = set(zf.namelist())
        missing = [path for path in selected if path not in available]
        if missing:
            raise ConfigurationError(f"Not in the archive: {', '.join(missing)}")
        files: list[tuple[str, bytes]] = []
        used: set[str] = set()
        for path in selected:
            target = path if preserve_structure else PurePosixPath(path).name
            if target in used:
                raise ConfigurationError(f"Two selected files are both named {target!r}; keep folders to export them.")
            used.add(target)
            files.append((target, zf.read(path)))
    return build_archive(files)
