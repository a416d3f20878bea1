from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Iterable, Sequence

from .chapters import Chapter
from .errors import ConfigurationError, InvalidDocumentSchemaError, InvalidPatternError

logger = logging.getLogger(__name__)

PREFACE_TITLE = "Preface"
FALLBACK_TITLE = "Chapter 1"
DETECT_SAMPLE_LINES = 400
PREVIEW_SCAN_LINES = 500
PREVIEW_LIMIT = 5


@dataclass(frozen=True)
class SplitStrategy:
    """A named chapter-heading matcher applied to each line of the source text."""

    key: str
    label: str
    pattern: re.Pattern[str]
    example: str = ""

    def matches(self, line: str) -> bool:
        return self.pattern.match(line) is not None


def _builtin(key: str, label: str, regex: str, example: str) -> SplitStrategy:
    return SplitStrategy(key=key, label=label, pattern=re.compile(regex, re.IGNORECASE), example=example)


CHAPTER_STRATEGIES: dict[str, SplitStrategy] = {
    strategy.key: strategy
    for strategy in (
        _builtin("chapter", "Chapter N", r"^\s*Chapter\s*([0-9]+)\b.*$", "Chapter 12"),
        _builtin("ch", "Ch. N", r"^\s*Ch(?:apter)?\.?\s*([0-9]+)\b.*$", "Ch. 12"),
        _builtin("chinese", "第N章", r"^\s*第\s*([0-9]+)\s*章[\.。:\s]?.*$", "第12章"),
        _builtin(
            "chinese_numeral",
            "第十二章",
            r"^\s*第\s*([一二三四五六七八九十百千零〇]+)\s*章.*$",
            "第十二章",
        ),
        _builtin(
            "cjk_heading",
            "章/节/回/部/卷",
            r"^\s*(第?\s*[〇一二三四五六七八九十百千万零\d]+\s*[章节回部卷])",
            "第三回",
        ),
        _builtin("titledot", "Title. N", r"^\s*([^\r\n]{1,120})\.\s*\d+\s*$", "The Beginning. 3"),
        _builtin("parenfullwidth", "（N）", r"^\s*（\s*\d+\s*\.?\s*）\s*$", "（3）"),
    )
}
AUTO_STRATEGY = "auto"
CUSTOM_STRATEGY = "custom"


@dataclass(frozen=True)
class CleanupRule:
    find: str
    replace: str = ""

    @classmethod
    def from_payload(cls, payload: object) -> "CleanupRule":
        if isinstance(payload, CleanupRule):
            return payload
        if isinstance(payload, str):
            return cls(find=payload)
        if isinstance(payload, (list, tuple)) and payload:
            replace = payload[1] if len(payload) > 1 and isinstance(payload[1], str) else ""
            return cls(find=str(payload[0]), replace=replace)
        if isinstance(payload, dict):
            find = payload.get("find")
            replace = payload.get("replace")
            return cls(
                find=find if isinstance(find, str) else "",
                replace=replace if isinstance(replace, str) else "",
            )
        raise InvalidDocumentSchemaError(f"Unsupported cleanup rule: {payload!r}")

    def as_payload(self) -> dict[str, str]:
        return {"find": self.find, "replace": self.replace}


@dataclass
class SplitTemplate:
    """A saved custom split configuration."""

    name: str
    regex: str
    cleanup_rules: list[CleanupRule] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: object) -> "SplitTemplate":
        if not isinstance(payload, dict):
            raise InvalidDocumentSchemaError("Split template must be an object.")
        name = payload.get("name")
        regex = payload.get("regex", payload.get("splitRegex"))
        if not isinstance(name, str) or not name.strip():
            raise InvalidDocumentSchemaError("Split template requires a name.")
        if not isinstance(regex, str):
            raise InvalidDocumentSchemaError(f"Split template {name!r} requires a regex.")
        raw_rules = payload.get("cleanup_rules", payload.get("cleanupRules", payload.get("cleanup", []))) or []
        if not isinstance(raw_rules, list):
            raise InvalidDocumentSchemaError(f"Split template {name!r} has invalid cleanup rules.")
        return cls(
            name=name.strip(),
            regex=regex,
            cleanup_rules=[CleanupRule.from_payload(rule) for rule in raw_rules],
        )

    def as_payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "regex": self.regex,
            "cleanup_rules": [rule.as_payload() for rule in self.cleanup_rules],
        }


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def compile_user_regex(regex: str, flags: int = re.IGNORECASE) -> re.Pattern[str]:
    try:
        return re.compile(regex, flags)
    except re.error as exc:
        raise InvalidPatternError(f"Invalid regular expression {regex!r}: {exc}") from exc


def _custom_strategy(regex: str) -> SplitStrategy:
    if not regex or not regex.strip():
        raise ConfigurationError("A custom split pattern must not be empty.")
    return SplitStrategy(
        key=CUSTOM_STRATEGY,
        label="Custom",
        pattern=compile_user_regex(regex, re.IGNORECASE | re.MULTILINE),
    )


def detect_strategy(text: str, sample_lines: int = DETECT_SAMPLE_LINES) -> SplitStrategy | None:
    """Return the first built-in strategy that matches more than one sampled line."""
    lines = normalize_newlines(text).split("\n")[:sample_lines]
    for strategy in CHAPTER_STRATEGIES.values():
        hits = 0
        for line in lines:
            if strategy.matches(line):
                hits += 1
                if hits > 1:
                    return strategy
    return None


def resolve_strategy(
    strategy: str | SplitStrategy = AUTO_STRATEGY,
    custom_regex: str | None = None,
    text: str = "",
) -> SplitStrategy | None:
    if isinstance(strategy, SplitStrategy):
        return strategy
    if custom_regex is not None or strategy == CUSTOM_STRATEGY:
        return _custom_strategy(custom_regex or "")
    if strategy == AUTO_STRATEGY:
        detected = detect_strategy(text)
        if detected is not None:
            logger.debug("Detected chapter headings: %s", detected.label)
        return detected
    try:
        return CHAPTER_STRATEGIES[strategy]
    except KeyError as exc:
        known = ", ".join([AUTO_STRATEGY, *CHAPTER_STRATEGIES, CUSTOM_STRATEGY])
        raise ConfigurationError(f"Unknown split strategy {strategy!r} (expected one of: {known})") from exc


def compile_cleanup_rules(rules: Iterable[object]) -> list[tuple[re.Pattern[str], str]]:
    compiled: list[tuple[re.Pattern[str], str]] = []
    for raw in rules:
        rule = CleanupRule.from_payload(raw)
        if not rule.find:
            continue
        compiled.append((compile_user_regex(rule.find, re.MULTILINE), rule.replace))
    return compiled


def apply_cleanup_rules(text: str, rules: Sequence[tuple[re.Pattern[str], str]]) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(lambda _m, value=replacement: value, text)
    return text


def preview_matches(
    text: str,
    strategy: str | SplitStrategy = AUTO_STRATEGY,
    *,
    custom_regex: str | None = None,
    limit: int = PREVIEW_LIMIT,
    scan_lines: int = PREVIEW_SCAN_LINES,
) -> list[str]:
    """Return up to ``limit`` heading lines the strategy would split on."""
    resolved = resolve_strategy(strategy, custom_regex, text)
    if resolved is None:
        return []
    found: list[str] = []
    for line in normalize_newlines(text).split("\n")[:scan_lines]:
        if resolved.matches(line):
            found.append(line.strip())
            if len(found) >= limit:
                break
    return found


def _fallback_title(source_name: str | None) -> str:
    if source_name:
        stem = PurePath(source_name).stem.strip()
        if stem:
            return stem
    return FALLBACK_TITLE


def segment(
    raw_text: str,
    strategy: str | SplitStrategy = AUTO_STRATEGY,
    *,
    custom_regex: str | None = None,
    cleanup_rules: Iterable[object] = (),
    source_name: str | None = None,
) -> list[Chapter]:
    """Split ``raw_text`` into chapters at lines matched by ``strategy``.

    Text before the first heading becomes a ``Preface`` chapter when it is not
    blank. Without any heading the whole text is returned as one chapter
    titled after ``source_name``.
    """
    rules = compile_cleanup_rules(cleanup_rules)
    text = normalize_newlines(raw_text)
    resolved = resolve_strategy(strategy, custom_regex, text)
    lines = text.split("\n")
    boundaries = [idx for idx, line in enumerate(lines) if resolved is not None and resolved.matches(line)]

    if not boundaries:
        return [Chapter(title=_fallback_title(source_name), content=apply_cleanup_rules(text.strip(), rules))]

    chapters: list[Chapter] = []
    preface = "\n".join(lines[: boundaries[0]]).strip()
    if preface:
        chapters.append(Chapter(title=PREFACE_TITLE, content=apply_cleanup_rules(preface, rules)))
    for pos, start in enumerate(boundaries):
        end = boundaries[pos + 1] if pos + 1 < len(boundaries) else len(lines)
        body = "\n".join(lines[start + 1 : end]).strip()
        chapters.append(Chapter(title=lines[start].strip(), content=apply_cleanup_rules(body, rules)))
    logger.debug("Segmented %d chapter(s) using %s", len(chapters), resolved.label if resolved else "none")
    return chapters


def load_templates(path: Path) -> list[SplitTemplate]:
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidDocumentSchemaError(f"Template file {path} is not valid JSON: {exc}") from exc
    if isinstance(payload, dict):
        payload = payload.get("templates", [])
    if not isinstance(payload, list):
        raise InvalidDocumentSchemaError(f"Template file {path} must contain a list of templates.")
    return [SplitTemplate.from_payload(entry) for entry in payload]


def save_templates(path: Path, templates: Iterable[SplitTemplate]) -> Path:
    items = list(templates)
    for template in items:
        compile_user_regex(template.regex)
        compile_cleanup_rules(template.cleanup_rules)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"templates": [template.as_payload() for template in items]}
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    return path
