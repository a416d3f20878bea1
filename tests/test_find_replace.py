from __future__ import annotations

from datetime import datetime

import pytest

from novelkit.backup import BackupDocument, create_backup, decode_blocks, encode_blocks, scene_plain_text
from novelkit.chapters import Chapter
from novelkit.errors import ConfigurationError, InvalidPatternError
from novelkit.find_replace import (
    Match,
    SearchOptions,
    apply_selected,
    match_context,
    replace_all,
    search,
)

NOW = datetime(2024, 5, 6, 12, 0, 0)


def _document(*contents: str) -> BackupDocument:
    chapters = [Chapter(f"Part {index}", content) for index, content in enumerate(contents, start=1)]
    return create_backup(chapters, "Search Me", now=NOW)


def test_whole_word_search_reports_offsets() -> None:
    document = _document("The cat sat.", "category")
    matches = search(document, "cat", SearchOptions(whole_word=True))
    assert matches == [Match("scene1", 4, 3, "cat", "Chapter 1")]
    assert search(_document("category"), "cat", SearchOptions(whole_word=True)) == []


def test_search_is_case_insensitive_by_default() -> None:
    document = _document("Cat and CAT and cat.")
    assert len(search(document, "cat")) == 3
    assert [match.matched_text for match in search(document, "cat", SearchOptions(case_sensitive=True))] == ["cat"]


def test_literal_search_escapes_metacharacters() -> None:
    document = _document("Costs $5.00 (five).")
    matches = search(document, "$5.00 (")
    assert len(matches) == 1
    assert matches[0].index == 6


def test_regex_search_across_paragraphs() -> None:
    document = _document("First para.\n\nSecond para.")
    plain = scene_plain_text(document.scenes[0].text)
    assert plain == "First para.\n\nSecond para."
    matches = search(document, r"para\.\s+Second", SearchOptions(is_regex=True))
    assert len(matches) == 1
    assert matches[0].index == 6


def test_invalid_regex_raises_before_scanning() -> None:
    with pytest.raises(InvalidPatternError):
        search(_document("text"), "(", SearchOptions(is_regex=True))


def test_empty_pattern_finds_nothing() -> None:
    assert search(_document("text"), "") == []


def test_search_scope_and_context() -> None:
    document = _document("alpha beta gamma", "beta again")
    scoped = search(document, "beta", scene_codes=["scene2"])
    assert [match.scene_code for match in scoped] == ["scene2"]
    before, hit, after = match_context(document, search(document, "beta")[0], radius=6)
    assert hit == "beta"
    assert before == "alpha "
    assert after == " gamma"


def test_replace_all_leaves_no_matches() -> None:
    document = _document("The cat sat.\n\nAnother cat.", "No felines here.", "cat cat cat")
    updated, count = replace_all(document, "cat", "dog", SearchOptions(whole_word=True), now=NOW)
    assert count == 5
    assert search(updated, "cat", SearchOptions(whole_word=True)) == []
    assert scene_plain_text(updated.scenes[0].text) == "The dog sat.\n\nAnother dog."
    assert scene_plain_text(updated.scenes[2].text) == "dog dog dog"
    assert scene_plain_text(document.scenes[0].text) == "The cat sat.\n\nAnother cat."


def test_apply_selected_only_touches_selected_matches() -> None:
    document = _document("one two one two one")
    matches = search(document, "one")
    updated = apply_selected(document, matches, [True, False, True], "1", now=NOW)
    assert scene_plain_text(updated.scenes[0].text) == "1 two one two 1"


def test_apply_selected_preserves_block_attributes() -> None:
    document = _document("placeholder")
    document.scenes[0].text = encode_blocks(
        [
            {"type": "text", "align": "center", "text": "Title line"},
            {"type": "text", "align": "left"},
            {"type": "text", "align": "right", "text": "Body line", "bold": True},
        ]
    )
    updated = apply_selected(document, search(document, "line"), [True, True], "row", now=NOW)
    blocks = decode_blocks(updated.scenes[0].text)
    assert blocks == [
        {"type": "text", "align": "center", "text": "Title row"},
        {"type": "text", "align": "left"},
        {"type": "text", "align": "right", "text": "Body row", "bold": True},
    ]


def test_apply_selected_rebuilds_blocks_when_match_crosses_boundary() -> None:
    document = _document("First para.\n\nSecond para.")
    matches = search(document, r"para\.\s+Second", SearchOptions(is_regex=True))
    updated = apply_selected(document, matches, [True], "joined", now=NOW)
    assert scene_plain_text(updated.scenes[0].text) == "First joined para."


def test_apply_selected_rejects_bad_input() -> None:
    document = _document("The cat sat.")
    matches = search(document, "cat")
    with pytest.raises(ConfigurationError):
        apply_selected(document, matches, [True, True], "dog")
    stale = [Match("scene1", 0, 3, "cat", "Chapter 1")]
    with pytest.raises(ConfigurationError):
        apply_selected(document, stale, [True], "dog")
    missing = [Match("scene9", 4, 3, "cat")]
    with pytest.raises(ConfigurationError):
        apply_selected(document, missing, [True], "dog")


def test_apply_selected_updates_word_count() -> None:
    document = _document("a b c")
    updated = apply_selected(document, search(document, "b"), [True], "x y", now=NOW)
    assert updated.active.book_progresses[-1].word_count == 4


def test_whole_word_applies_to_every_regex_alternative() -> None:
    options = SearchOptions(is_regex=True, whole_word=True)
    assert search(_document("catalog hotdogs"), "cat|dog", options) == []
    matches = search(_document("A cat and a dog."), "cat|dog", options)
    assert [match.matched_text for match in matches] == ["cat", "dog"]
