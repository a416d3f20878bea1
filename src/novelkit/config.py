from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from .archive import DECODE_CONCURRENCY
from .errors import ConfigurationError, InvalidDocumentSchemaError
from .segmenter import SplitTemplate

CONFIG_ENV = "NOVELKIT_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/novelkit/config.toml")


@dataclass
class ToolConfig:
    language: str = "en"
    author: str = ""
    markdown: bool = False
    prefix: str | None = None
    extension: str = ".txt"
    encoding: str = "auto"
    decode_concurrency: int = DECODE_CONCURRENCY
    templates: list[SplitTemplate] = field(default_factory=list)
    source: Path | None = None

    def template(self, name: str) -> SplitTemplate:
        for template in self.templates:
            if template.name == name:
                return template
        raise ConfigurationError(f"No split template named {name!r}")


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def _section(data: dict[str, object], name: str) -> dict[str, object]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    return value


def load_config(path: Path | None = None) -> ToolConfig:
    """Read ``config.toml``; a missing file yields the defaults."""
    target = path or config_path()
    try:
        with target.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        return ToolConfig()
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid configuration file {target}: {exc}") from exc

    epub = _section(data, "epub")
    backup = _section(data, "backup")
    archive = _section(data, "archive")
    config = ToolConfig(source=target)
    if isinstance(epub.get("language"), str):
        config.language = epub["language"]  # type: ignore[assignment]
    if isinstance(epub.get("author"), str):
        config.author = epub["author"]  # type: ignore[assignment]
    if isinstance(epub.get("markdown"), bool):
        config.markdown = epub["markdown"]  # type: ignore[assignment]
    if isinstance(backup.get("prefix"), str):
        config.prefix = backup["prefix"]  # type: ignore[assignment]
    if isinstance(archive.get("extension"), str):
        config.extension = archive["extension"]  # type: ignore[assignment]
    if isinstance(archive.get("encoding"), str):
        config.encoding = archive["encoding"]  # type: ignore[assignment]
    concurrency = archive.get("decode_concurrency")
    if concurrency is not None:
        if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
            raise ConfigurationError("archive.decode_concurrency must be a positive integer")
        config.decode_concurrency = concurrency

    raw_templates = data.get("templates", [])
    if not isinstance(raw_templates, list):
        raise ConfigurationError("[[templates]] must be an array of tables")
    try:
        config.templates = [SplitTemplate.from_payload(entry) for entry in raw_templates]
    except InvalidDocumentSchemaError as exc:
        raise ConfigurationError(f"Invalid split template in {target}: {exc}") from exc
    return config
