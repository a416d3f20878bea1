from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

from .errors import (
    ChapterNotFoundError,
    ConfigurationError,
    InvalidDocumentSchemaError,
    InvalidOffsetError,
    InvalidPermutationError,
    NoPreviousChapterError,
)

if TYPE_CHECKING:
    from .backup import BackupDocument

SESSION_VERSION = 1
DEFAULT_NEW_TITLE = "New Chapter"
MERGE_SEPARATOR = "\n\n"
SELECTED_MERGE_SEPARATOR = "\n\n\n"


@dataclass
class Chapter:
    title: str
    content: str
    id: str | None = None

    def as_payload(self) -> dict[str, object]:
        return {"id": self.id, "title": self.title, "content": self.content}

    @classmethod
    def from_payload(cls, payload: object) -> "Chapter":
        if not isinstance(payload, dict):
            raise InvalidDocumentSchemaError("Chapter entry must be an object.")
        title = payload.get("title")
        content = payload.get("content")
        chapter_id = payload.get("id")
        return cls(
            title=title if isinstance(title, str) else "",
            content=content if isinstance(content, str) else "",
            id=chapter_id if isinstance(chapter_id, str) else None,
        )


class ChapterModel:
    """Ordered, single-owner chapter list edited during an interactive session.

    Ids are assigned by the model and never reused, so a selection survives
    reorders, splits and merges of other chapters.
    """

    def __init__(self, chapters: Iterable[Chapter] = ()) -> None:
        self._chapters: list[Chapter] = []
        self._next_id = 1
        self.selected_id: str | None = None
        self.dirty = False
        for chapter in chapters:
            self._chapters.append(Chapter(title=chapter.title, content=chapter.content, id=self._new_id()))

    @classmethod
    def from_chapters(cls, chapters: Iterable[Chapter]) -> "ChapterModel":
        return cls(chapters)

    @classmethod
    def from_backup(cls, document: "BackupDocument") -> "ChapterModel":
        from .backup import backup_to_chapters

        return cls(backup_to_chapters(document))

    def _new_id(self) -> str:
        chapter_id = f"chap-{self._next_id}"
        self._next_id += 1
        return chapter_id

    def _index(self, chapter_id: str) -> int:
        for idx, chapter in enumerate(self._chapters):
            if chapter.id == chapter_id:
                return idx
        raise ChapterNotFoundError(f"Unknown chapter id: {chapter_id}")

    def __len__(self) -> int:
        return len(self._chapters)

    def __iter__(self) -> Iterator[Chapter]:
        return iter(list(self._chapters))

    @property
    def chapters(self) -> list[Chapter]:
        return list(self._chapters)

    @property
    def ids(self) -> list[str]:
        return [chapter.id for chapter in self._chapters if chapter.id]

    @property
    def selected(self) -> Chapter | None:
        if self.selected_id is None:
            return None
        return self.get(self.selected_id)

    def get(self, chapter_id: str) -> Chapter:
        return self._chapters[self._index(chapter_id)]

    def index_of(self, chapter_id: str) -> int:
        return self._index(chapter_id)

    def select(self, chapter_id: str | None) -> None:
        if chapter_id is not None:
            self._index(chapter_id)
        self.selected_id = chapter_id

    def add(self, title: str = DEFAULT_NEW_TITLE, content: str = "", *, after: str | None = None) -> Chapter:
        chapter = Chapter(title=title, content=content, id=self._new_id())
        if after is None:
            self._chapters.append(chapter)
        else:
            self._chapters.insert(self._index(after) + 1, chapter)
        self.dirty = True
        return chapter

    def split_at(self, chapter_id: str, offset: int) -> Chapter:
        """Move ``content[offset:]`` into a new chapter inserted right after ``chapter_id``."""
        idx = self._index(chapter_id)
        chapter = self._chapters[idx]
        if offset < 0 or offset > len(chapter.content):
            raise InvalidOffsetError(
                f"Offset {offset} is outside 0..{len(chapter.content)} for {chapter_id}"
            )
        head, tail = chapter.content[:offset], chapter.content[offset:]
        new_chapter = Chapter(title=f"Chapter {idx + 2}", content=tail, id=self._new_id())
        chapter.content = head
        self._chapters.insert(idx + 1, new_chapter)
        self.dirty = True
        return new_chapter

    def merge_up(self, chapter_id: str) -> Chapter:
        """Append ``chapter_id`` to its predecessor and drop it. Returns the predecessor."""
        idx = self._index(chapter_id)
        if idx == 0:
            raise NoPreviousChapterError(f"{chapter_id} is the first chapter")
        previous = self._chapters[idx - 1]
        current = self._chapters.pop(idx)
        previous.content = f"{previous.content}{MERGE_SEPARATOR}{current.content}"
        if self.selected_id == current.id:
            self.selected_id = previous.id
        self.dirty = True
        return previous

    def merge_selected(self, chapter_ids: Iterable[str]) -> Chapter:
        requested = list(chapter_ids)
        if len(set(requested)) != len(requested):
            raise ConfigurationError("Duplicate chapter ids in merge selection.")
        if len(requested) < 2:
            raise ConfigurationError("Select at least two chapters to merge.")
        indexes = sorted(self._index(chapter_id) for chapter_id in requested)
        target = self._chapters[indexes[0]]
        absorbed = [self._chapters[idx] for idx in indexes[1:]]
        parts = [target.content]
        parts.extend(f"{chapter.title}\n\n{chapter.content}" for chapter in absorbed)
        target.content = SELECTED_MERGE_SEPARATOR.join(parts)
        absorbed_ids = {chapter.id for chapter in absorbed}
        self._chapters = [chapter for chapter in self._chapters if chapter.id not in absorbed_ids]
        if self.selected_id in absorbed_ids:
            self.selected_id = target.id
        self.dirty = True
        return target

    def reorder(self, new_order: Iterable[str]) -> None:
        order = list(new_order)
        current = self.ids
        if len(order) != len(current) or set(order) != set(current):
            raise InvalidPermutationError("New order must contain every chapter id exactly once.")
        by_id = {chapter.id: chapter for chapter in self._chapters}
        self._chapters = [by_id[chapter_id] for chapter_id in order]
        self.dirty = True

    def move(self, chapter_id: str, index: int) -> None:
        idx = self._index(chapter_id)
        if index < 0 or index >= len(self._chapters):
            raise InvalidOffsetError(f"Position {index} is outside 0..{len(self._chapters) - 1}")
        chapter = self._chapters.pop(idx)
        self._chapters.insert(index, chapter)
        self.dirty = True

    def retitle(self, chapter_id: str, title: str) -> None:
        self.get(chapter_id).title = title
        self.dirty = True

    def set_content(self, chapter_id: str, content: str) -> None:
        self.get(chapter_id).content = content
        self.dirty = True

    def delete(self, chapter_id: str) -> Chapter:
        idx = self._index(chapter_id)
        removed = self._chapters.pop(idx)
        if self.selected_id == chapter_id:
            self.selected_id = None
        self.dirty = True
        return removed

    def batch_rename(
        self,
        chapter_ids: Iterable[str] | None = None,
        pattern: str = "Chapter {n}",
        start_number: int = 1,
    ) -> None:
        """Retitle chapters in model order, substituting ``{n}`` with a running number."""
        targets = set(chapter_ids) if chapter_ids is not None else set(self.ids)
        for chapter_id in targets:
            self._index(chapter_id)
        number = start_number
        for chapter in self._chapters:
            if chapter.id not in targets:
                continue
            if "{n}" in pattern:
                chapter.title = pattern.replace("{n}", str(number))
            else:
                chapter.title = f"{pattern}{number}"
            number += 1
        self.dirty = True

    def mark_clean(self) -> None:
        self.dirty = False

    def to_payload(self) -> dict[str, object]:
        return {
            "version": SESSION_VERSION,
            "chapters": [chapter.as_payload() for chapter in self._chapters],
            "selected_id": self.selected_id,
            "dirty": self.dirty,
            "next_id": self._next_id,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "ChapterModel":
        if not isinstance(payload, dict):
            raise InvalidDocumentSchemaError("Session payload must be an object.")
        raw_chapters = payload.get("chapters")
        if not isinstance(raw_chapters, list):
            raise InvalidDocumentSchemaError("Session payload is missing 'chapters'.")
        model = cls()
        seen: set[str] = set()
        highest = 0
        for entry in raw_chapters:
            chapter = Chapter.from_payload(entry)
            if not chapter.id or chapter.id in seen:
                chapter.id = None
            else:
                seen.add(chapter.id)
                suffix = chapter.id.rpartition("-")[2]
                if suffix.isdigit():
                    highest = max(highest, int(suffix))
            model._chapters.append(chapter)
        next_id = payload.get("next_id")
        model._next_id = max(highest + 1, next_id if isinstance(next_id, int) else 1)
        for chapter in model._chapters:
            if chapter.id is None:
                chapter.id = model._new_id()
        selected = payload.get("selected_id")
        model.selected_id = selected if isinstance(selected, str) and selected in seen else None
        model.dirty = bool(payload.get("dirty", False))
        return model

    def save_session(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_payload(), ensure_ascii=False, indent=2), encoding="utf-8")
        return path

    @classmethod
    def load_session(cls, path: Path) -> "ChapterModel":
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise InvalidDocumentSchemaError(f"Session file is not valid JSON: {exc}") from exc
        return cls.from_payload(payload)
