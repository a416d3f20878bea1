from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Iterable, Sequence

from .archive import DECODE_CONCURRENCY, build_archive, read_text_entries
from .chapters import Chapter
from .errors import ConfigurationError, NoContentFoundError

GROUP_SEPARATOR = "\n\n\n---------------- END ----------------\n\n\n"
UNTITLED_CHAPTER = "Untitled Chapter"


def _slugify_for_filename(text: str) -> str:
    cleaned_chars: list[str] = []
    for ch in text.strip():
        if ch in {"/", "\\", ":", "*", "?", '"', "<", ">", "|"}:
            cleaned_chars.append("_")
            continue
        if ord(ch) < 32:
            continue
        if ch.isspace():
            cleaned_chars.append("_")
            continue
        cleaned_chars.append(ch)
    slug = "".join(cleaned_chars)
    slug = re.sub(r"_+", "_", slug).strip("_.")
    return slug[:80]


def _chapter_basename(index: int, title: str, width: int, used_names: set[str]) -> str:
    prefix = f"{index + 1:0{width}d}"
    slug = _slugify_for_filename(title)
    candidate = f"{prefix}_{slug}" if slug else prefix
    suffix = 1
    base = candidate
    while candidate.lower() in used_names:
        suffix += 1
        candidate = f"{base}_{suffix}"
    used_names.add(candidate.lower())
    return candidate


def chapter_filenames(titles: Sequence[str]) -> list[str]:
    """Zero-padded ``NNN_<title>.txt`` names that sort in chapter order."""
    width = max(3, len(str(len(titles))))
    used_names: set[str] = set()
    return [f"{_chapter_basename(idx, title, width, used_names)}.txt" for idx, title in enumerate(titles)]


def build_chapter_zip(chapters: Iterable[Chapter], *, bom: bool = False) -> bytes:
    items = [(chapter.title, chapter.content) for chapter in chapters]
    if not items:
        raise NoContentFoundError("Cannot build a ZIP without chapters.")
    names = chapter_filenames([title for title, _ in items])
    marker = "\ufeff" if bom else ""
    return build_archive((name, marker + content) for name, (_, content) in zip(names, items))


def clean_title_from_filename(filename: str) -> str:
    """Turn ``003_the-long_night.txt`` into ``The long night``."""
    title = PurePosixPath(filename).name
    title = re.sub(r"\.txt$", "", title, flags=re.IGNORECASE)
    title = re.sub(r"^[0-9\s._-]+", "", title)
    title = re.sub(r"[_-]", " ", title).strip()
    if title:
        title = title[0].upper() + title[1:]
    return title or UNTITLED_CHAPTER


def read_chapter_zip(
    data: bytes,
    extension: str = ".txt",
    *,
    encoding: str = "auto",
    clean_titles: bool = False,
    max_workers: int = DECODE_CONCURRENCY,
) -> list[Chapter]:
    """Load one chapter per ``extension`` file, in natural filename order.

    Titles are the file stems, or cleaned-up readable titles with
    ``clean_titles``.
    """
    entries = read_text_entries(data, extension, encoding=encoding, max_workers=max_workers)
    chapters: list[Chapter] = []
    for entry in entries:
        title = clean_title_from_filename(entry.name) if clean_titles else entry.stem
        chapters.append(Chapter(title=title, content=entry.text))
    return chapters


def drop_leading_lines(text: str, count: int) -> str:
    if count < 0:
        raise ConfigurationError("Lines to remove cannot be negative.")
    if count == 0:
        return text
    return "\n".join(text.split("\n")[count:])


def build_numbered_zip(
    texts: Sequence[str],
    pattern: str = "Chapter",
    *,
    start_number: int = 1,
    offset: int = 0,
    group_size: int = 1,
) -> bytes:
    """Write ``texts[offset:]`` as ``<pattern>NN.txt`` files, or ``<pattern>NN-MM.txt`` groups."""
    if start_number < 1:
        raise ConfigurationError("Start number must be at least 1.")
    if offset < 0:
        raise ConfigurationError("Offset cannot be negative.")
    if group_size < 1:
        raise ConfigurationError("Group size must be at least 1.")
    pattern = pattern.strip() or "Chapter"
    usable = list(texts[offset:])
    if not usable:
        raise NoContentFoundError(f"Offset of {offset} leaves no chapters to write.")
    files: list[tuple[str, str]] = []
    last_number = start_number + len(usable) - 1
    for index in range(0, len(usable), group_size):
        first = start_number + index
        last = min(first + group_size - 1, last_number)
        if first == last:
            name = f"{pattern}{first:02d}.txt"
        else:
            name = f"{pattern}{first:02d}-{last:02d}.txt"
        files.append((name, GROUP_SEPARATOR.join(usable[index : index + group_size])))
    return build_archive(files)
