from __future__ import annotations

from pathlib import Path

import pytest

from novelkit.config import CONFIG_ENV, ToolConfig, config_path, load_config
from novelkit.errors import ConfigurationError
from novelkit.segmenter import CleanupRule


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    assert config == ToolConfig()


def test_config_path_honours_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    target = tmp_path / "custom.toml"
    monkeypatch.setenv(CONFIG_ENV, str(target))
    assert config_path() == target


def test_load_config_reads_sections(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text(
        """
[epub]
language = "zh"
author = "Someone"
markdown = true

[backup]
prefix = "Episode "

[archive]
extension = ".text"
encoding = "gbk"
decode_concurrency = 2

[[templates]]
name = "stars"
regex = "^\\\\*\\\\*\\\\*"
cleanup = []

[[templates]]
name = "site"
regex = "^Chapter"
cleanup_rules = [{ find = "Read more at .*", replace = "" }, "ads"]
""",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.language == "zh"
    assert config.author == "Someone"
    assert config.markdown is True
    assert config.prefix == "Episode "
    assert config.extension == ".text"
    assert config.encoding == "gbk"
    assert config.decode_concurrency == 2
    assert config.source == path
    assert [template.name for template in config.templates] == ["stars", "site"]
    assert config.templates[0].regex == r"^\*\*\*"
    assert config.template("site").cleanup_rules == [CleanupRule("Read more at .*", ""), CleanupRule("ads", "")]
    with pytest.raises(ConfigurationError):
        config.template("missing")


def test_load_config_rejects_malformed_files(tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text("[epub\nlanguage = ", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path)

    path.write_text("[archive]\ndecode_concurrency = 0\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path)

    path.write_text('[[templates]]\nname = "nameless regex"\n', encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(path)
