from __future__ import annotations

import logging
import re
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from .backup import BackupDocument, Scene, blocks_plain_text, decode_blocks, encode_blocks, refresh_progress
from .errors import ConfigurationError, InvalidPatternError

logger = logging.getLogger(__name__)

CONTEXT_RADIUS = 40


@dataclass(frozen=True)
class SearchOptions:
    is_regex: bool = False
    case_sensitive: bool = False
    whole_word: bool = False


@dataclass(frozen=True)
class Match:
    scene_code: str
    index: int
    length: int
    matched_text: str
    scene_title: str = ""

    @property
    def end(self) -> int:
        return self.index + self.length

    def as_payload(self) -> dict[str, object]:
        return {
            "scene_code": self.scene_code,
            "scene_title": self.scene_title,
            "index": self.index,
            "length": self.length,
            "matched_text": self.matched_text,
        }

    @classmethod
    def from_payload(cls, payload: object) -> "Match":
        if not isinstance(payload, dict):
            raise ConfigurationError("Match entry must be an object.")
        try:
            return cls(
                scene_code=str(payload["scene_code"]),
                index=int(payload["index"]),
                length=int(payload["length"]),
                matched_text=str(payload["matched_text"]),
                scene_title=str(payload.get("scene_title", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid match entry: {exc}") from exc


def compile_pattern(pattern: str, options: SearchOptions | None = None) -> re.Pattern[str]:
    opts = options or SearchOptions()
    source = pattern if opts.is_regex else re.escape(pattern)
    if opts.whole_word:
        source = rf"\b(?:{source})\b"
    flags = 0 if opts.case_sensitive else re.IGNORECASE
    try:
        return re.compile(source, flags)
    except re.error as exc:
        raise InvalidPatternError(f"Invalid regular expression {pattern!r}: {exc}") from exc


def _scene_blocks(scene: Scene) -> list[dict[str, Any]] | None:
    try:
        return decode_blocks(scene.text)
    except ValueError as exc:
        logger.warning("Skipping scene %s: %s", scene.code, exc)
        return None


def search(
    document: BackupDocument,
    pattern: str,
    options: SearchOptions | None = None,
    *,
    scene_codes: Iterable[str] | None = None,
) -> list[Match]:
    """Find ``pattern`` in each scene's plain text (blocks joined with newlines)."""
    if not pattern:
        return []
    regex = compile_pattern(pattern, options)
    scope = set(scene_codes) if scene_codes is not None else None
    matches: list[Match] = []
    for scene in document.active.scenes:
        if scope is not None and scene.code not in scope:
            continue
        blocks = _scene_blocks(scene)
        if blocks is None:
            continue
        plain = blocks_plain_text(blocks)
        for found in regex.finditer(plain):
            if found.end() == found.start():
                continue
            matches.append(
                Match(
                    scene_code=scene.code,
                    index=found.start(),
                    length=found.end() - found.start(),
                    matched_text=found.group(0),
                    scene_title=scene.title,
                )
            )
    return matches


def match_context(document: BackupDocument, match: Match, radius: int = CONTEXT_RADIUS) -> tuple[str, str, str]:
    """Return ``(before, matched, after)`` snippets for review listings."""
    for scene in document.active.scenes:
        if scene.code != match.scene_code:
            continue
        blocks = _scene_blocks(scene)
        plain = blocks_plain_text(blocks) if blocks is not None else ""
        before = plain[max(0, match.index - radius) : match.index]
        after = plain[match.end : match.end + radius]
        return before.replace("\n", " "), plain[match.index : match.end], after.replace("\n", " ")
    raise ConfigurationError(f"Scene {match.scene_code} is not part of the document.")


def _block_spans(blocks: Sequence[dict[str, Any]]) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    cursor = 0
    for block in blocks:
        text = block.get("text")
        length = len(text) if isinstance(text, str) else 0
        spans.append((cursor, cursor + length))
        cursor += length + 1
    return spans


def _replace_in_blocks(
    blocks: list[dict[str, Any]],
    matches: Sequence[Match],
    replacement: str,
) -> list[dict[str, Any]]:
    spans = _block_spans(blocks)
    located: list[tuple[int, Match]] = []
    for match in matches:
        owner = next(
            (idx for idx, (start, end) in enumerate(spans) if start <= match.index and match.end <= end),
            None,
        )
        if owner is None:
            break
        located.append((owner, match))
    else:
        for owner, match in located:
            start = spans[owner][0]
            text = blocks[owner]["text"]
            local = match.index - start
            blocks[owner]["text"] = text[:local] + replacement + text[local + match.length :]
        return blocks

    # A match crosses a block boundary: rebuild one block per line.
    plain = blocks_plain_text(blocks)
    for match in matches:
        plain = plain[: match.index] + replacement + plain[match.end :]
    rebuilt: list[dict[str, Any]] = []
    for line in plain.split("\n"):
        block: dict[str, Any] = {"type": "text", "align": "left"}
        if line:
            block["text"] = line
        rebuilt.append(block)
    return rebuilt


def apply_selected(
    document: BackupDocument,
    matches: Sequence[Match],
    selection: Sequence[bool],
    replacement: str,
    *,
    now: datetime | None = None,
) -> BackupDocument:
    """Replace the selected matches and return a new document.

    Replacements run per scene from the highest index down so earlier
    offsets stay valid. ``replacement`` is inserted literally.
    """
    if len(selection) != len(matches):
        raise ConfigurationError(
            f"Selection has {len(selection)} entries but there are {len(matches)} matches."
        )
    chosen: dict[str, list[Match]] = {}
    for match, selected in zip(matches, selection):
        if selected:
            chosen.setdefault(match.scene_code, []).append(match)
    updated = deepcopy(document)
    if not chosen:
        return updated

    scenes = {scene.code: scene for scene in updated.active.scenes}
    for scene_code, scene_matches in chosen.items():
        scene = scenes.get(scene_code)
        if scene is None:
            raise ConfigurationError(f"Scene {scene_code} is not part of the document.")
        try:
            blocks = decode_blocks(scene.text)
        except ValueError as exc:
            raise ConfigurationError(f"Scene {scene_code} text cannot be decoded: {exc}") from exc
        plain = blocks_plain_text(blocks)
        ordered = sorted(scene_matches, key=lambda item: item.index, reverse=True)
        boundary = len(plain)
        for match in ordered:
            if plain[match.index : match.end] != match.matched_text or match.end > boundary:
                raise ConfigurationError(
                    f"Match at {match.index} in {scene_code} is stale or overlaps another match; search again."
                )
            boundary = match.index
        scene.text = encode_blocks(_replace_in_blocks(blocks, ordered, replacement))
    refresh_progress(updated, now)
    return updated


def replace_all(
    document: BackupDocument,
    pattern: str,
    replacement: str,
    options: SearchOptions | None = None,
    *,
    scene_codes: Iterable[str] | None = None,
    now: datetime | None = None,
) -> tuple[BackupDocument, int]:
    matches = search(document, pattern, options, scene_codes=scene_codes)
    updated = apply_selected(document, matches, [True] * len(matches), replacement, now=now)
    return updated, len(matches)
