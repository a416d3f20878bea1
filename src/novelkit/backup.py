from __future__ import annotations

import json
import logging
import re
import secrets
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from .chapters import Chapter, ChapterModel
from .errors import ConfigurationError, InvalidDocumentSchemaError, NoContentFoundError

logger = logging.getLogger(__name__)

BACKUP_VERSION = 4
DEFAULT_PREFIX = "Chapter "
DEFAULT_STATUS_CODE = "1"
DEFAULT_STATUS_COLOR = -2697255
DEFAULT_STATUS_TITLE = "Todo"


def _split_known(payload: Mapping[str, Any], keys: Iterable[str]) -> dict[str, Any]:
    known = set(keys)
    return {key: deepcopy(value) for key, value in payload.items() if key not in known}


def _merge_extra(known: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in extra.items():
        known.setdefault(key, deepcopy(value))
    return known


def _require_mapping(payload: object, what: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise InvalidDocumentSchemaError(f"{what} must be a JSON object.")
    return payload


def _as_int(value: object, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return default


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


@dataclass
class Status:
    code: str
    title: str = DEFAULT_STATUS_TITLE
    color: int = DEFAULT_STATUS_COLOR
    ranking: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = ("code", "title", "color", "ranking")

    @classmethod
    def from_payload(cls, payload: object) -> "Status":
        data = _require_mapping(payload, "Status")
        return cls(
            code=str(data.get("code", "")),
            title=_as_str(data.get("title")),
            color=_as_int(data.get("color"), DEFAULT_STATUS_COLOR),
            ranking=_as_int(data.get("ranking"), 0),
            extra=_split_known(data, cls._KEYS),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra(
            {"code": self.code, "title": self.title, "color": self.color, "ranking": self.ranking},
            self.extra,
        )


def default_status() -> Status:
    return Status(code=DEFAULT_STATUS_CODE)


@dataclass
class Scene:
    code: str
    title: str
    text: str
    ranking: int
    status: str = DEFAULT_STATUS_CODE
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = ("code", "title", "text", "ranking", "status")

    @classmethod
    def from_payload(cls, payload: object) -> "Scene":
        data = _require_mapping(payload, "Scene")
        return cls(
            code=str(data.get("code", "")),
            title=_as_str(data.get("title")),
            text=_as_str(data.get("text")),
            ranking=_as_int(data.get("ranking")),
            status=str(data.get("status", DEFAULT_STATUS_CODE)),
            extra=_split_known(data, cls._KEYS),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra(
            {
                "code": self.code,
                "title": self.title,
                "text": self.text,
                "ranking": self.ranking,
                "status": self.status,
            },
            self.extra,
        )

    @property
    def plain_text(self) -> str:
        return scene_plain_text(self.text)


@dataclass
class SectionScene:
    code: str
    ranking: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> "SectionScene":
        data = _require_mapping(payload, "Section scene reference")
        return cls(
            code=str(data.get("code", "")),
            ranking=_as_int(data.get("ranking"), 1),
            extra=_split_known(data, ("code", "ranking")),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra({"code": self.code, "ranking": self.ranking}, self.extra)


@dataclass
class Section:
    code: str
    title: str
    ranking: int
    synopsis: str = ""
    section_scenes: list[SectionScene] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = ("code", "title", "synopsis", "ranking", "section_scenes")

    @classmethod
    def from_payload(cls, payload: object) -> "Section":
        data = _require_mapping(payload, "Section")
        raw_refs = data.get("section_scenes") or []
        if not isinstance(raw_refs, list):
            raise InvalidDocumentSchemaError("Section 'section_scenes' must be a list.")
        return cls(
            code=str(data.get("code", "")),
            title=_as_str(data.get("title")),
            ranking=_as_int(data.get("ranking")),
            synopsis=_as_str(data.get("synopsis")),
            section_scenes=[SectionScene.from_payload(ref) for ref in raw_refs],
            extra=_split_known(data, cls._KEYS),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra(
            {
                "code": self.code,
                "title": self.title,
                "synopsis": self.synopsis,
                "ranking": self.ranking,
                "section_scenes": [ref.to_payload() for ref in self.section_scenes],
            },
            self.extra,
        )


@dataclass
class BookProgress:
    year: int
    month: int
    day: int
    word_count: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> "BookProgress":
        data = _require_mapping(payload, "Book progress")
        return cls(
            year=_as_int(data.get("year")),
            month=_as_int(data.get("month")),
            day=_as_int(data.get("day")),
            word_count=_as_int(data.get("word_count")),
            extra=_split_known(data, ("year", "month", "day", "word_count")),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra(
            {"year": self.year, "month": self.month, "day": self.day, "word_count": self.word_count},
            self.extra,
        )

    def is_day(self, when: datetime) -> bool:
        return (self.year, self.month, self.day) == (when.year, when.month, when.day)


@dataclass
class Revision:
    number: int = 1
    date: int = 0
    statuses: list[Status] = field(default_factory=list)
    scenes: list[Scene] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)
    book_progresses: list[BookProgress] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = ("number", "date", "book_progresses", "statuses", "scenes", "sections")

    @classmethod
    def from_payload(cls, payload: object, *, strict: bool = False) -> "Revision":
        data = _require_mapping(payload, "Revision")
        lists: dict[str, list[Any]] = {}
        for key in ("statuses", "scenes", "sections", "book_progresses"):
            value = data.get(key)
            if value is None:
                if strict and key in ("scenes", "sections"):
                    raise InvalidDocumentSchemaError(f"Backup revision is missing '{key}'.")
                value = []
            if not isinstance(value, list):
                raise InvalidDocumentSchemaError(f"Backup revision '{key}' must be a list.")
            lists[key] = value
        return cls(
            number=_as_int(data.get("number"), 1),
            date=_as_int(data.get("date")),
            statuses=[Status.from_payload(item) for item in lists["statuses"]],
            scenes=[Scene.from_payload(item) for item in lists["scenes"]],
            sections=[Section.from_payload(item) for item in lists["sections"]],
            book_progresses=[BookProgress.from_payload(item) for item in lists["book_progresses"]],
            extra=_split_known(data, cls._KEYS),
        )

    def to_payload(self) -> dict[str, Any]:
        return _merge_extra(
            {
                "number": self.number,
                "date": self.date,
                "book_progresses": [entry.to_payload() for entry in self.book_progresses],
                "statuses": [status.to_payload() for status in self.statuses],
                "scenes": [scene.to_payload() for scene in self.scenes],
                "sections": [section.to_payload() for section in self.sections],
            },
            self.extra,
        )

    def max_ranking(self) -> int:
        rankings = [scene.ranking for scene in self.scenes] + [section.ranking for section in self.sections]
        return max(rankings, default=0)


@dataclass
class BackupDocument:
    """In-memory form of a version 4 novel backup.

    Keys this model does not know about are kept in ``extra`` so that a
    load/save cycle leaves them untouched.
    """

    code: str
    title: str
    description: str = ""
    version: int = BACKUP_VERSION
    cover: str | None = None
    show_table_of_contents: bool = True
    apply_automatic_indentation: bool = False
    last_update_date: int = 0
    last_backup_date: int = 0
    revisions: list[Revision] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    _KEYS = (
        "version",
        "code",
        "title",
        "description",
        "cover",
        "show_table_of_contents",
        "apply_automatic_indentation",
        "last_update_date",
        "last_backup_date",
        "revisions",
    )

    @property
    def active(self) -> Revision:
        if not self.revisions:
            raise InvalidDocumentSchemaError("Backup document has no revisions.")
        return self.revisions[0]

    @property
    def scenes(self) -> list[Scene]:
        return self.active.scenes

    @property
    def sections(self) -> list[Section]:
        return self.active.sections

    @classmethod
    def from_payload(cls, payload: object) -> "BackupDocument":
        data = _require_mapping(payload, "Backup document")
        raw_revisions = data.get("revisions")
        if not isinstance(raw_revisions, list) or not raw_revisions:
            raise InvalidDocumentSchemaError("Backup document has no revisions.")
        revisions = [
            Revision.from_payload(item, strict=(index == 0)) for index, item in enumerate(raw_revisions)
        ]
        extra = _split_known(data, cls._KEYS)
        cover = data.get("cover")
        if cover is not None and not isinstance(cover, str):
            extra["cover"] = deepcopy(cover)
            cover = None
        elif cover is None and "cover" in data:
            extra["cover"] = None
        return cls(
            code=str(data.get("code", "")),
            title=_as_str(data.get("title")),
            description=_as_str(data.get("description")),
            version=_as_int(data.get("version"), BACKUP_VERSION),
            cover=cover,
            show_table_of_contents=bool(data.get("show_table_of_contents", True)),
            apply_automatic_indentation=bool(data.get("apply_automatic_indentation", False)),
            last_update_date=_as_int(data.get("last_update_date")),
            last_backup_date=_as_int(data.get("last_backup_date")),
            revisions=revisions,
            extra=extra,
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": self.version,
            "code": self.code,
            "title": self.title,
            "description": self.description,
        }
        if self.cover is not None:
            payload["cover"] = self.cover
        payload.update(
            {
                "show_table_of_contents": self.show_table_of_contents,
                "apply_automatic_indentation": self.apply_automatic_indentation,
                "last_update_date": self.last_update_date,
                "last_backup_date": self.last_backup_date,
                "revisions": [revision.to_payload() for revision in self.revisions],
            }
        )
        return _merge_extra(payload, self.extra)


@dataclass
class SyncOptions:
    prefix: str | None = None
    start_number: int = 1
    preserve_titles: bool = False
    extra_empty_chapters: int = 0


@dataclass
class MergeOptions:
    title: str
    description: str = ""
    prefix: str | None = None
    preserve_titles: bool = False
    cover_index: int | None = None


# Scene text ------------------------------------------------------------------


def text_to_blocks(raw_text: str) -> dict[str, list[dict[str, str]]]:
    """Map paragraphs (separated by blank lines) to alternating text/separator blocks."""
    normalized = raw_text.replace("\r\n", "\n").replace("\r", "\n")
    segments = [segment.strip() for segment in re.split(r"\n{2,}", normalized)]
    segments = [segment for segment in segments if segment]
    blocks: list[dict[str, str]] = []
    for index, segment in enumerate(segments):
        blocks.append({"type": "text", "align": "left", "text": segment})
        if index < len(segments) - 1:
            blocks.append({"type": "text", "align": "left"})
    if not segments:
        if raw_text and not raw_text.strip():
            blocks.append({"type": "text", "align": "left"})
        else:
            blocks.append({"type": "text", "align": "left", "text": ""})
    return {"blocks": blocks}


def encode_blocks(blocks: Sequence[Mapping[str, Any]]) -> str:
    return json.dumps({"blocks": list(blocks)}, ensure_ascii=False, separators=(",", ":"))


def encode_scene_text(raw_text: str) -> str:
    return encode_blocks(text_to_blocks(raw_text)["blocks"])


def decode_blocks(text: str) -> list[dict[str, Any]]:
    """Decode a scene's serialized block list; raises ``ValueError`` when it is unusable."""
    payload = json.loads(text)
    if not isinstance(payload, dict) or not isinstance(payload.get("blocks"), list):
        raise ValueError("scene text has no block list")
    return [block for block in payload["blocks"] if isinstance(block, dict)]


def blocks_plain_text(blocks: Iterable[Mapping[str, Any]]) -> str:
    return "\n".join(_as_str(block.get("text")) for block in blocks)


def scene_plain_text(text: str) -> str:
    try:
        return blocks_plain_text(decode_blocks(text))
    except ValueError:
        return ""


def count_words(scenes: Iterable[Scene]) -> int:
    total = 0
    for scene in scenes:
        try:
            blocks = decode_blocks(scene.text)
        except ValueError as exc:
            logger.warning("Word count skipped scene %r: %s", scene.title or scene.code, exc)
            continue
        for block in blocks:
            value = block.get("text")
            if block.get("type", "text") == "text" and isinstance(value, str) and value.strip():
                total += len(value.split())
    return total


# Document helpers -------------------------------------------------------------


def generate_code() -> str:
    return f"{secrets.randbits(32):08x}"


def _epoch_millis(when: datetime) -> int:
    return int(when.timestamp() * 1000)


def new_backup(
    title: str,
    description: str = "",
    code: str | None = None,
    *,
    now: datetime | None = None,
) -> BackupDocument:
    when = now or datetime.now()
    millis = _epoch_millis(when)
    return BackupDocument(
        code=code.strip() if code and code.strip() else generate_code(),
        title=title,
        description=description,
        last_update_date=millis,
        last_backup_date=millis,
        revisions=[
            Revision(
                number=1,
                date=millis,
                statuses=[default_status()],
                book_progresses=[BookProgress(year=when.year, month=when.month, day=when.day)],
            )
        ],
    )


def refresh_progress(document: BackupDocument, now: datetime | None = None) -> None:
    """Stamp ``document`` with ``now`` and record today's word count."""
    when = now or datetime.now()
    millis = _epoch_millis(when)
    revision = document.active
    document.last_update_date = millis
    document.last_backup_date = millis
    revision.date = millis
    word_count = count_words(revision.scenes)
    today = [entry for entry in revision.book_progresses if entry.is_day(when)]
    if today:
        today[0].word_count = word_count
        revision.book_progresses = [
            entry for entry in revision.book_progresses if not entry.is_day(when) or entry is today[0]
        ]
    else:
        revision.book_progresses.append(
            BookProgress(year=when.year, month=when.month, day=when.day, word_count=word_count)
        )


def chapter_title(ranking: int, original: str | None, prefix: str | None, preserve: bool) -> str:
    if preserve and original and original.strip():
        if prefix and not original.lower().startswith(prefix.lower()):
            return f"{prefix}{original}"
        return original
    return f"{prefix or DEFAULT_PREFIX}{ranking}"


def _section_for(scene: Scene, ranking: int, title: str, template: Section | None) -> Section:
    return Section(
        code=f"section{ranking}",
        title=title,
        ranking=ranking,
        synopsis=template.synopsis if template else "",
        section_scenes=[SectionScene(code=scene.code, ranking=1)],
        extra=deepcopy(template.extra) if template else {},
    )


def _sections_by_scene(revision: Revision) -> dict[str, Section]:
    owners: dict[str, Section] = {}
    for section in revision.sections:
        for ref in section.section_scenes:
            owners.setdefault(ref.code, section)
    return owners


def _scenes_from_source(source: object) -> tuple[list[tuple[Scene, Section | None]], BackupDocument | None]:
    if isinstance(source, BackupDocument):
        revision = source.active
        owners = _sections_by_scene(revision)
        return [(deepcopy(scene), owners.get(scene.code)) for scene in revision.scenes], source
    if isinstance(source, ChapterModel):
        source = source.chapters
    items: list[tuple[Scene, Section | None]] = []
    for entry in source:  # type: ignore[union-attr]
        if isinstance(entry, Scene):
            items.append((deepcopy(entry), None))
        elif isinstance(entry, Chapter):
            items.append(
                (Scene(code="", title=entry.title, text=encode_scene_text(entry.content), ranking=0), None)
            )
        else:
            raise ConfigurationError(f"Cannot synchronize item of type {type(entry).__name__}.")
    return items, None


def synchronize(
    source: ChapterModel | BackupDocument | Sequence[Chapter] | Sequence[Scene],
    options: SyncOptions | None = None,
    *,
    title: str | None = None,
    description: str | None = None,
    code: str | None = None,
    base: BackupDocument | None = None,
    now: datetime | None = None,
) -> BackupDocument:
    """Build a canonical backup whose scenes and sections mirror ``source`` in order.

    Rankings start at ``options.start_number`` and codes follow them. When
    ``source`` (or ``base``) is a backup its metadata and statuses carry over;
    otherwise a fresh document is created and ``title`` is required.
    """
    opts = options or SyncOptions()
    if opts.start_number < 1:
        raise ConfigurationError("Start number must be at least 1.")
    if opts.extra_empty_chapters < 0:
        raise ConfigurationError("Extra empty chapters cannot be negative.")
    items, source_document = _scenes_from_source(source)
    template = base or source_document
    if template is not None:
        document = deepcopy(template)
        if not document.revisions:
            raise InvalidDocumentSchemaError("Backup document has no revisions.")
        if title is not None:
            document.title = title
        if description is not None:
            document.description = description
    else:
        document = new_backup(title or "", description or "", code, now=now)
    if not document.title.strip():
        raise ConfigurationError("A project title is required.")
    if not items and opts.extra_empty_chapters == 0:
        raise NoContentFoundError("No chapters to synchronize.")

    scenes: list[Scene] = []
    sections: list[Section] = []
    for index, (scene, owner) in enumerate(items):
        ranking = opts.start_number + index
        scene.ranking = ranking
        scene.code = f"scene{ranking}"
        scene.title = chapter_title(ranking, scene.title, opts.prefix, opts.preserve_titles)
        section_title = scene.title
        if owner is not None and opts.preserve_titles and owner.title.strip():
            section_title = chapter_title(ranking, owner.title, opts.prefix, True)
        scenes.append(scene)
        sections.append(_section_for(scene, ranking, section_title, owner))
    for offset in range(opts.extra_empty_chapters):
        ranking = opts.start_number + len(items) + offset
        scene = Scene(
            code=f"scene{ranking}",
            title=chapter_title(ranking, None, opts.prefix, False),
            text=encode_scene_text(""),
            ranking=ranking,
        )
        scenes.append(scene)
        sections.append(_section_for(scene, ranking, scene.title, None))

    revision = document.active
    revision.scenes = scenes
    revision.sections = sections
    if not revision.statuses:
        revision.statuses = [default_status()]
    refresh_progress(document, now)
    return document


def create_backup(
    chapters: ChapterModel | Sequence[Chapter],
    title: str,
    description: str = "",
    *,
    code: str | None = None,
    options: SyncOptions | None = None,
    now: datetime | None = None,
) -> BackupDocument:
    if not title or not title.strip():
        raise ConfigurationError("A project title is required.")
    return synchronize(chapters, options, title=title.strip(), description=description, code=code, now=now)


def augment(
    base: BackupDocument,
    chapters: ChapterModel | Sequence[Chapter],
    start_number: int | None = None,
    options: SyncOptions | None = None,
    *,
    now: datetime | None = None,
) -> BackupDocument:
    """Append ``chapters`` after the highest ranking in ``base`` without touching existing entries."""
    opts = options or SyncOptions()
    document = deepcopy(base)
    revision = document.active
    floor = revision.max_ranking() + 1
    start = floor if start_number is None else start_number
    if start < floor:
        raise ConfigurationError(
            f"Start number {start} collides with existing chapters (next free ranking is {floor})."
        )
    items, _ = _scenes_from_source(chapters)
    if not items:
        raise NoContentFoundError("No chapters to append.")
    scene_codes = {scene.code for scene in revision.scenes}
    section_codes = {section.code for section in revision.sections}
    for index, (scene, _owner) in enumerate(items):
        ranking = start + index
        scene.code = f"scene{ranking}"
        section_code = f"section{ranking}"
        if scene.code in scene_codes or section_code in section_codes:
            raise ConfigurationError(f"Code {scene.code}/{section_code} already exists in the backup.")
        scene.ranking = ranking
        scene.status = scene.status or DEFAULT_STATUS_CODE
        scene.title = chapter_title(ranking, scene.title, opts.prefix, opts.preserve_titles)
        revision.scenes.append(scene)
        revision.sections.append(_section_for(scene, ranking, scene.title, None))
        scene_codes.add(scene.code)
        section_codes.add(section_code)
    refresh_progress(document, now)
    return document


def collect_covers(documents: Iterable[BackupDocument]) -> list[str]:
    """Distinct base64 covers present in ``documents``, in input order."""
    covers: list[str] = []
    for document in documents:
        if document.cover and document.cover not in covers:
            covers.append(document.cover)
    return covers


def merge(
    documents: Sequence[BackupDocument],
    options: MergeOptions,
    *,
    now: datetime | None = None,
) -> BackupDocument:
    """Concatenate the active revisions of ``documents`` into a new backup ranked from 1."""
    if not options.title or not options.title.strip():
        raise ConfigurationError("Merged project title is required.")
    if not documents:
        raise ConfigurationError("Select at least one backup to merge.")
    covers = collect_covers(documents)
    cover: str | None = None
    if options.cover_index is not None:
        if not 0 <= options.cover_index < len(covers):
            raise ConfigurationError(f"Cover index {options.cover_index} is out of range ({len(covers)} available).")
        cover = covers[options.cover_index]

    statuses: dict[str, Status] = {}
    items: list[tuple[Scene, Section | None]] = []
    for position, document in enumerate(documents, start=1):
        if not document.revisions:
            logger.warning("Skipping backup #%d (%s): no revisions", position, document.title or document.code)
            continue
        revision = document.revisions[0]
        owners = _sections_by_scene(revision)
        for scene in revision.scenes:
            items.append((deepcopy(scene), owners.get(scene.code)))
        for status in revision.statuses:
            if status.code not in statuses:
                statuses[status.code] = deepcopy(status)

    ordered = sorted(statuses.values(), key=lambda status: status.ranking if status.ranking > 0 else float("inf"))
    for rank, status in enumerate(ordered, start=1):
        status.ranking = rank
    if not ordered:
        ordered = [default_status()]

    merged = new_backup(options.title.strip(), options.description, now=now)
    merged.cover = cover
    revision = merged.active
    revision.statuses = ordered
    for index, (scene, owner) in enumerate(items):
        ranking = index + 1
        scene.code = f"scene{ranking}"
        scene.ranking = ranking
        scene.title = chapter_title(ranking, scene.title, options.prefix, options.preserve_titles)
        section_title = scene.title
        if owner is not None and options.preserve_titles and owner.title.strip():
            section_title = chapter_title(ranking, owner.title, options.prefix, True)
        revision.scenes.append(scene)
        revision.sections.append(_section_for(scene, ranking, section_title, owner))
    refresh_progress(merged, now)
    return merged


def backup_to_chapters(document: BackupDocument) -> list[Chapter]:
    scenes = sorted(document.active.scenes, key=lambda scene: scene.ranking)
    return [Chapter(title=scene.title, content=scene_plain_text(scene.text)) for scene in scenes]


# Persistence --------------------------------------------------------------------


def loads_backup(text: str | bytes) -> BackupDocument:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidDocumentSchemaError(f"Backup file is not valid JSON: {exc}") from exc
    return BackupDocument.from_payload(payload)


def load_backup(path: Path) -> BackupDocument:
    return loads_backup(path.read_bytes())


def dumps_backup(document: BackupDocument) -> str:
    return json.dumps(document.to_payload(), ensure_ascii=False, indent=2)


def save_backup(document: BackupDocument, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_backup(document), encoding="utf-8")
    return path


def backup_filename(title: str, fallback: str = "backup") -> str:
    base = re.sub(r"[^A-Za-z0-9_\-\s]", "_", title)
    base = re.sub(r"\s+", "_", base).strip("_")
    return f"{base or fallback}.json"
