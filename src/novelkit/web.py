from __future__ import annotations

import base64
import binascii
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator
from urllib.parse import quote

from fastapi import Body, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response

from .backup import (
    BackupDocument,
    MergeOptions,
    SyncOptions,
    augment,
    backup_filename,
    collect_covers,
    create_backup,
    merge,
)
from .chapter_zip import build_chapter_zip, build_numbered_zip, read_chapter_zip
from .chapters import Chapter
from .config import ToolConfig
from .cover import CoverImage
from .epub import EPUB_MIMETYPE, EpubMetadata, build_epub, extract_epub
from .errors import ConfigurationError, NovelKitError
from .find_replace import Match, SearchOptions, apply_selected, match_context, search
from .organize import export_selection, organize_backups
from .segmenter import AUTO_STRATEGY, CHAPTER_STRATEGIES, detect_strategy, preview_matches, segment

logger = logging.getLogger(__name__)

ZIP_MEDIA_TYPE = "application/zip"
UPLOAD_CHUNK_BYTES = 1024 * 1024


@dataclass(slots=True)
class WebConfig:
    tool_config: ToolConfig = field(default_factory=ToolConfig)
    max_upload_bytes: int = 200 * 1024 * 1024


@contextmanager
def _core_errors() -> Iterator[None]:
    try:
        yield
    except NovelKitError as exc:
        logger.debug("Request rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _require_payload(payload: object) -> dict[str, object]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    return payload


def _optional_str(payload: dict[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{key} must be a string.")
    return value


def _int_field(payload: dict[str, object], key: str, default: int | None) -> int | None:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=400, detail=f"{key} must be an integer.")
    return value


def _chapters_field(payload: dict[str, object]) -> list[Chapter]:
    raw = payload.get("chapters")
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="chapters must be a list.")
    with _core_errors():
        return [Chapter.from_payload(entry) for entry in raw]


def _backup_field(payload: dict[str, object], key: str = "backup") -> BackupDocument:
    raw = payload.get(key)
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail=f"{key} must be a backup object.")
    return BackupDocument.from_payload(raw)


def _sync_options(payload: dict[str, object], config: ToolConfig) -> SyncOptions:
    prefix = _optional_str(payload, "prefix")
    return SyncOptions(
        prefix=prefix if prefix is not None else config.prefix,
        start_number=_int_field(payload, "start_number", 1),
        preserve_titles=bool(payload.get("preserve_titles", False)),
        extra_empty_chapters=_int_field(payload, "extra_empty_chapters", 0),
    )


def _decode_cover(payload: dict[str, object]) -> CoverImage | None:
    data = _optional_str(payload, "cover")
    if not data:
        return None
    if data.lstrip().startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("Cover image is not valid base64.") from exc
    return CoverImage.from_bytes(
        raw,
        filename=_optional_str(payload, "cover_filename"),
        media_type=_optional_str(payload, "cover_media_type"),
    )


def _attachment(data: bytes, media_type: str, filename: str) -> Response:
    disposition = f"attachment; filename*=UTF-8''{quote(filename)}"
    return Response(content=data, media_type=media_type, headers={"Content-Disposition": disposition})


def _upload_suffix(file: UploadFile, allowed: set[str]) -> str:
    suffix = Path(file.filename or "").suffix.lower()
    if suffix not in allowed:
        names = " and ".join(sorted(allowed))
        raise HTTPException(status_code=400, detail=f"Only {names} files are supported.")
    return suffix


async def _read_upload(file: UploadFile, limit: int) -> bytes:
    chunks: list[bytes] = []
    size = 0
    try:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            size += len(chunk)
            if size > limit:
                raise HTTPException(status_code=413, detail="Upload is too large.")
            chunks.append(chunk)
    finally:
        await file.close()
    return b"".join(chunks)


def _chapter_payloads(chapters: list[Chapter]) -> list[dict[str, object]]:
    return [chapter.as_payload() for chapter in chapters]


def create_app(config: WebConfig | None = None) -> FastAPI:
    config = config or WebConfig()
    tool_config = config.tool_config

    app = FastAPI(title="novelkit")
    app.state.config = config

    @app.get("/api/patterns")
    def api_patterns() -> JSONResponse:
        strategies = [
            {"key": strategy.key, "label": strategy.label, "example": strategy.example}
            for strategy in CHAPTER_STRATEGIES.values()
        ]
        templates = [template.as_payload() for template in tool_config.templates]
        return JSONResponse({"strategies": strategies, "templates": templates})

    @app.post("/api/segment")
    def api_segment(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        text = payload.get("text")
        if not isinstance(text, str):
            raise HTTPException(status_code=400, detail="text must be a string.")
        strategy = _optional_str(payload, "strategy") or AUTO_STRATEGY
        custom_regex = _optional_str(payload, "custom_regex")
        cleanup = payload.get("cleanup_rules") or []
        if not isinstance(cleanup, list):
            raise HTTPException(status_code=400, detail="cleanup_rules must be a list.")
        template_name = _optional_str(payload, "template")
        with _core_errors():
            if template_name:
                template = tool_config.template(template_name)
                custom_regex = template.regex
                cleanup = [*template.cleanup_rules, *cleanup]
            if payload.get("preview"):
                return JSONResponse(
                    {"headings": preview_matches(text, strategy, custom_regex=custom_regex)}
                )
            chapters = segment(
                text,
                strategy,
                custom_regex=custom_regex,
                cleanup_rules=cleanup,
                source_name=_optional_str(payload, "source_name"),
            )
        detected = None
        if strategy == AUTO_STRATEGY and not custom_regex:
            found = detect_strategy(text)
            detected = found.key if found else None
        return JSONResponse({"chapters": _chapter_payloads(chapters), "detected_strategy": detected})

    @app.post("/api/archives/chapters")
    async def api_archive_chapters(
        file: UploadFile = File(...),
        encoding: str | None = Form(None),
        clean_titles: bool = Form(False),
    ) -> JSONResponse:
        suffix = _upload_suffix(file, {".zip", ".epub"})
        data = await _read_upload(file, config.max_upload_bytes)
        with _core_errors():
            if suffix == ".epub":
                book = extract_epub(data, max_workers=tool_config.decode_concurrency)
                return JSONResponse(
                    {
                        "chapters": _chapter_payloads(book.chapters),
                        "skipped": book.skipped,
                        "title": book.title,
                        "author": book.author,
                    }
                )
            chapters = read_chapter_zip(
                data,
                tool_config.extension,
                encoding=encoding or tool_config.encoding,
                clean_titles=clean_titles,
                max_workers=tool_config.decode_concurrency,
            )
        return JSONResponse({"chapters": _chapter_payloads(chapters), "skipped": []})

    @app.post("/api/epub")
    def api_epub(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_payload(payload)
        chapters = _chapters_field(payload)
        title = _optional_str(payload, "title") or ""
        with _core_errors():
            metadata = EpubMetadata(
                title=title.strip(),
                author=_optional_str(payload, "author") or tool_config.author,
                language=_optional_str(payload, "language") or tool_config.language,
                cover=_decode_cover(payload),
                markdown=bool(payload.get("markdown", tool_config.markdown)),
            )
            stylesheet = _optional_str(payload, "stylesheet")
            if stylesheet:
                metadata.stylesheet = stylesheet
            data = build_epub(chapters, metadata)
        return _attachment(data, EPUB_MIMETYPE, f"{metadata.title}.epub")

    @app.post("/api/zip")
    def api_zip(payload: dict[str, object] = Body(...)) -> Response:
        payload = _require_payload(payload)
        filename = _optional_str(payload, "filename") or "chapters.zip"
        numbered = _optional_str(payload, "numbered")
        chapters = _chapters_field(payload)
        with _core_errors():
            if numbered is not None:
                data = build_numbered_zip(
                    [chapter.content for chapter in chapters],
                    numbered,
                    start_number=_int_field(payload, "start_number", 1),
                    offset=_int_field(payload, "offset", 0),
                    group_size=_int_field(payload, "group_size", 1),
                )
            else:
                data = build_chapter_zip(chapters, bom=bool(payload.get("bom", False)))
        return _attachment(data, ZIP_MEDIA_TYPE, filename)

    @app.post("/api/backups/create")
    def api_backup_create(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        chapters = _chapters_field(payload)
        title = _optional_str(payload, "title") or ""
        with _core_errors():
            document = create_backup(
                chapters,
                title,
                _optional_str(payload, "description") or "",
                code=_optional_str(payload, "code"),
                options=_sync_options(payload, tool_config),
            )
        return JSONResponse({"backup": document.to_payload(), "filename": backup_filename(title)})

    @app.post("/api/backups/augment")
    def api_backup_augment(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        chapters = _chapters_field(payload)
        with _core_errors():
            base = _backup_field(payload)
            document = augment(
                base,
                chapters,
                _int_field(payload, "start_number", None),
                _sync_options({**payload, "start_number": 1}, tool_config),
            )
        return JSONResponse(
            {"backup": document.to_payload(), "added": len(document.scenes) - len(base.scenes)}
        )

    @app.post("/api/backups/covers")
    def api_backup_covers(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        raw = payload.get("backups")
        if not isinstance(raw, list):
            raise HTTPException(status_code=400, detail="backups must be a list.")
        with _core_errors():
            documents = [BackupDocument.from_payload(entry) for entry in raw]
        return JSONResponse({"covers": collect_covers(documents)})

    @app.post("/api/backups/merge")
    def api_backup_merge(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        raw = payload.get("backups")
        if not isinstance(raw, list):
            raise HTTPException(status_code=400, detail="backups must be a list.")
        title = _optional_str(payload, "title") or ""
        prefix = _optional_str(payload, "prefix")
        with _core_errors():
            documents = [BackupDocument.from_payload(entry) for entry in raw]
            document = merge(
                documents,
                MergeOptions(
                    title=title,
                    description=_optional_str(payload, "description") or "",
                    prefix=prefix if prefix is not None else tool_config.prefix,
                    preserve_titles=bool(payload.get("preserve_titles", False)),
                    cover_index=_int_field(payload, "cover_index", None),
                ),
            )
        return JSONResponse(
            {"backup": document.to_payload(), "filename": backup_filename(title, "merged_backup")}
        )

    @app.post("/api/backups/search")
    def api_backup_search(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        pattern = _optional_str(payload, "pattern") or ""
        scene_codes = payload.get("scene_codes")
        if scene_codes is not None and not isinstance(scene_codes, list):
            raise HTTPException(status_code=400, detail="scene_codes must be a list.")
        with _core_errors():
            document = _backup_field(payload)
            options = SearchOptions(
                is_regex=bool(payload.get("is_regex", False)),
                case_sensitive=bool(payload.get("case_sensitive", False)),
                whole_word=bool(payload.get("whole_word", False)),
            )
            matches = search(document, pattern, options, scene_codes=scene_codes)
        results = []
        for match in matches:
            entry = match.as_payload()
            entry["context"] = list(match_context(document, match))
            results.append(entry)
        return JSONResponse({"matches": results})

    @app.post("/api/backups/replace")
    def api_backup_replace(payload: dict[str, object] = Body(...)) -> JSONResponse:
        payload = _require_payload(payload)
        raw_matches = payload.get("matches")
        if not isinstance(raw_matches, list):
            raise HTTPException(status_code=400, detail="matches must be a list.")
        replacement = _optional_str(payload, "replacement")
        if replacement is None:
            raise HTTPException(status_code=400, detail="replacement is required.")
        with _core_errors():
            document = _backup_field(payload)
            matches = [Match.from_payload(entry) for entry in raw_matches]
            selection = payload.get("selection")
            if selection is None:
                selection = [True] * len(matches)
            if not isinstance(selection, list):
                raise ConfigurationError("selection must be a list of booleans.")
            updated = apply_selected(document, matches, [bool(item) for item in selection], replacement)
        return JSONResponse({"backup": updated.to_payload(), "replaced": sum(bool(item) for item in selection)})

    @app.post("/api/backups/organize")
    async def api_backup_organize(file: UploadFile = File(...)) -> JSONResponse:
        _upload_suffix(file, {".zip"})
        data = await _read_upload(file, config.max_upload_bytes)
        with _core_errors():
            organized = organize_backups(data, max_workers=tool_config.decode_concurrency)
        return JSONResponse(organized.as_payload())

    @app.post("/api/backups/organize/export")
    async def api_backup_organize_export(
        file: UploadFile = File(...),
        paths: list[str] = Form([]),
        latest: bool = Form(False),
        preserve_structure: bool = Form(False),
    ) -> Response:
        _upload_suffix(file, {".zip"})
        data = await _read_upload(file, config.max_upload_bytes)
        with _core_errors():
            selected = list(paths)
            if latest:
                organized = organize_backups(data, max_workers=tool_config.decode_concurrency)
                selected.extend(info.path for info in organized.latest())
            exported = export_selection(data, selected, preserve_structure=preserve_structure)
        return _attachment(exported, ZIP_MEDIA_TYPE, "organized_backup.zip")

    return app
