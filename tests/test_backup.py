from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from novelkit.backup import (
    BackupDocument,
    MergeOptions,
    Scene,
    Status,
    SyncOptions,
    augment,
    backup_filename,
    backup_to_chapters,
    count_words,
    create_backup,
    decode_blocks,
    encode_scene_text,
    load_backup,
    loads_backup,
    merge,
    save_backup,
    scene_plain_text,
    synchronize,
    text_to_blocks,
)
from novelkit.chapters import Chapter, ChapterModel
from novelkit.errors import ConfigurationError, InvalidDocumentSchemaError, NoContentFoundError

NOW = datetime(2024, 5, 6, 12, 0, 0)
LATER = datetime(2024, 5, 6, 18, 30, 0)
NEXT_DAY = datetime(2024, 5, 7, 9, 0, 0)


def _chapters(count: int, offset: int = 0) -> list[Chapter]:
    return [
        Chapter(f"Title {index}", f"Words of chapter {index}.")
        for index in range(offset + 1, offset + count + 1)
    ]


def _assert_consistent(document: BackupDocument) -> None:
    scene_codes = [scene.code for scene in document.scenes]
    section_codes = [section.code for section in document.sections]
    assert len(set(scene_codes)) == len(scene_codes)
    assert len(set(section_codes)) == len(section_codes)
    for section in document.sections:
        assert len(section.section_scenes) == 1
        assert section.section_scenes[0].code in scene_codes


def test_text_to_blocks_alternates_paragraphs_and_separators() -> None:
    blocks = text_to_blocks("First para.\n\n\nSecond para.\n")["blocks"]
    assert blocks == [
        {"type": "text", "align": "left", "text": "First para."},
        {"type": "text", "align": "left"},
        {"type": "text", "align": "left", "text": "Second para."},
    ]


def test_text_to_blocks_edge_cases() -> None:
    assert text_to_blocks("")["blocks"] == [{"type": "text", "align": "left", "text": ""}]
    assert text_to_blocks("   \n\n ")["blocks"] == [{"type": "text", "align": "left"}]


def test_encode_scene_text_is_compact_json() -> None:
    encoded = encode_scene_text("Hé")
    assert encoded == '{"blocks":[{"type":"text","align":"left","text":"Hé"}]}'
    assert scene_plain_text(encoded) == "Hé"


def test_count_words_skips_undecodable_scenes(caplog: pytest.LogCaptureFixture) -> None:
    scenes = [
        Scene(code="scene1", title="A", text=encode_scene_text("one two three\n\nfour"), ranking=1),
        Scene(code="scene2", title="B", text="not json", ranking=2),
    ]
    with caplog.at_level("WARNING", logger="novelkit.backup"):
        assert count_words(scenes) == 4
    assert "B" in caplog.text


def test_create_backup_numbers_from_start() -> None:
    document = create_backup(_chapters(3), "My Novel", options=SyncOptions(start_number=5), now=NOW)
    assert [scene.code for scene in document.scenes] == ["scene5", "scene6", "scene7"]
    assert [section.code for section in document.sections] == ["section5", "section6", "section7"]
    assert [scene.title for scene in document.scenes] == ["Chapter 5", "Chapter 6", "Chapter 7"]
    assert [scene.ranking for scene in document.scenes] == [5, 6, 7]
    assert document.version == 4
    assert len(document.code) == 8
    int(document.code, 16)
    _assert_consistent(document)


def test_create_backup_preserves_titles_with_prefix() -> None:
    chapters = [Chapter("Prologue", "a"), Chapter("Part 2", "b"), Chapter("  ", "c")]
    document = create_backup(
        chapters,
        "Novel",
        options=SyncOptions(prefix="Part ", preserve_titles=True),
        now=NOW,
    )
    assert [scene.title for scene in document.scenes] == ["Part Prologue", "Part 2", "Part 3"]


def test_create_backup_requires_title_and_content() -> None:
    with pytest.raises(ConfigurationError):
        create_backup(_chapters(1), "   ", now=NOW)
    with pytest.raises(NoContentFoundError):
        create_backup([], "Empty", now=NOW)
    with pytest.raises(ConfigurationError):
        create_backup(_chapters(1), "Novel", options=SyncOptions(start_number=0), now=NOW)


def test_create_backup_adds_extra_empty_chapters() -> None:
    document = create_backup(
        _chapters(2),
        "Novel",
        options=SyncOptions(extra_empty_chapters=2),
        now=NOW,
    )
    assert [scene.code for scene in document.scenes] == ["scene1", "scene2", "scene3", "scene4"]
    assert scene_plain_text(document.scenes[-1].text) == ""


def test_progress_keeps_one_entry_per_day() -> None:
    document = create_backup(_chapters(2), "Novel", now=NOW)
    assert len(document.active.book_progresses) == 1
    assert document.active.book_progresses[0].word_count == 8

    extended = augment(document, _chapters(1, offset=2), now=LATER)
    progress = extended.active.book_progresses
    assert len(progress) == 1
    assert progress[0].word_count == 12

    tomorrow = synchronize(extended, now=NEXT_DAY)
    assert [(entry.day, entry.word_count) for entry in tomorrow.active.book_progresses] == [(6, 12), (7, 12)]
    assert tomorrow.last_update_date == int(NEXT_DAY.timestamp() * 1000)


def test_synchronize_from_model_follows_model_order() -> None:
    model = ChapterModel.from_chapters(_chapters(3))
    model.reorder(["chap-3", "chap-1", "chap-2"])
    document = synchronize(model, SyncOptions(preserve_titles=True, prefix=""), title="Novel", now=NOW)
    assert [scene.title for scene in document.scenes] == ["Title 3", "Title 1", "Title 2"]
    assert [scene.code for scene in document.scenes] == ["scene1", "scene2", "scene3"]


def test_synchronize_existing_backup_keeps_metadata_and_synopsis() -> None:
    document = create_backup(_chapters(2), "Novel", "About it", now=NOW)
    document.sections[1].synopsis = "Important"
    document.active.scenes.reverse()
    resynced = synchronize(document, now=LATER)
    assert resynced.title == "Novel"
    assert resynced.description == "About it"
    assert resynced.code == document.code
    assert [scene.code for scene in resynced.scenes] == ["scene1", "scene2"]
    assert resynced.sections[0].synopsis == "Important"
    assert document.scenes[0].code == "scene2"


def test_augment_appends_after_highest_ranking() -> None:
    base = create_backup(_chapters(3), "Novel", now=NOW)
    extended = augment(base, _chapters(2, offset=3), now=LATER)
    assert [scene.code for scene in extended.scenes] == ["scene1", "scene2", "scene3", "scene4", "scene5"]
    assert extended.scenes[:3] == base.scenes
    assert [section.ranking for section in extended.sections] == [1, 2, 3, 4, 5]
    assert len(base.scenes) == 3
    _assert_consistent(extended)


def test_augment_with_explicit_start_leaves_gap() -> None:
    base = create_backup(_chapters(3), "Novel", now=NOW)
    extended = augment(base, _chapters(1), start_number=10, now=LATER)
    assert extended.scenes[-1].code == "scene10"
    assert extended.scenes[-1].title == "Chapter 10"


def test_augment_rejects_colliding_start() -> None:
    base = create_backup(_chapters(3), "Novel", now=NOW)
    with pytest.raises(ConfigurationError):
        augment(base, _chapters(1), start_number=3, now=LATER)
    with pytest.raises(NoContentFoundError):
        augment(base, [], now=LATER)


def _with_statuses(document: BackupDocument, statuses: list[Status]) -> BackupDocument:
    document.active.statuses = statuses
    return document


def test_merge_concatenates_and_dedupes_statuses() -> None:
    first = _with_statuses(
        create_backup(_chapters(2), "Part One", now=NOW),
        [Status("1", "Todo", ranking=1), Status("2", "Done", ranking=2)],
    )
    second = _with_statuses(
        create_backup(_chapters(3, offset=2), "Part Two", now=NOW),
        [Status("1", "Draft", ranking=1), Status("3", "Review", ranking=3)],
    )
    merged = merge([first, second], MergeOptions(title="Complete"), now=LATER)
    assert merged.title == "Complete"
    assert merged.code not in {first.code, second.code}
    assert [scene.code for scene in merged.scenes] == [f"scene{index}" for index in range(1, 6)]
    assert [scene.plain_text for scene in merged.scenes][2] == "Words of chapter 3."
    statuses = merged.active.statuses
    assert [(status.code, status.title, status.ranking) for status in statuses] == [
        ("1", "Todo", 1),
        ("2", "Done", 2),
        ("3", "Review", 3),
    ]
    _assert_consistent(merged)


def test_merge_uses_default_status_and_selected_cover() -> None:
    first = _with_statuses(create_backup(_chapters(1), "A", now=NOW), [])
    second = _with_statuses(create_backup(_chapters(1), "B", now=NOW), [])
    first.cover = "Zmlyc3Q="
    second.cover = "c2Vjb25k"
    merged = merge([first, second], MergeOptions(title="AB", cover_index=1), now=NOW)
    assert merged.cover == "c2Vjb25k"
    assert [(status.code, status.title, status.color) for status in merged.active.statuses] == [
        ("1", "Todo", -2697255)
    ]
    without_cover = merge([first, second], MergeOptions(title="AB"), now=NOW)
    assert without_cover.cover is None


def test_merge_validates_options() -> None:
    document = create_backup(_chapters(1), "A", now=NOW)
    with pytest.raises(ConfigurationError):
        merge([document], MergeOptions(title=" "), now=NOW)
    with pytest.raises(ConfigurationError):
        merge([], MergeOptions(title="Empty"), now=NOW)
    with pytest.raises(ConfigurationError):
        merge([document], MergeOptions(title="A", cover_index=0), now=NOW)


def test_loads_backup_preserves_unknown_keys(tmp_path: Path) -> None:
    document = create_backup(_chapters(2), "Novel", now=NOW)
    payload = document.to_payload()
    payload["app_theme"] = "dark"
    payload["revisions"][0]["scenes"][0]["word_goal"] = 500
    payload["revisions"][0]["custom"] = {"a": 1}
    path = tmp_path / "novel.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    loaded = load_backup(path)
    saved = save_backup(loaded, tmp_path / "copy.json")
    reloaded = json.loads(saved.read_text(encoding="utf-8"))
    assert reloaded == payload


def test_loads_backup_rejects_bad_documents() -> None:
    with pytest.raises(InvalidDocumentSchemaError):
        loads_backup("{not json")
    with pytest.raises(InvalidDocumentSchemaError):
        loads_backup(json.dumps({"title": "x", "revisions": []}))
    with pytest.raises(InvalidDocumentSchemaError):
        loads_backup(json.dumps({"title": "x", "revisions": [{"sections": []}]}))


def test_backup_to_chapters_orders_by_ranking() -> None:
    document = create_backup(_chapters(3), "Novel", now=NOW)
    document.active.scenes.reverse()
    chapters = backup_to_chapters(document)
    assert [chapter.title for chapter in chapters] == ["Chapter 1", "Chapter 2", "Chapter 3"]
    assert chapters[0].content == "Words of chapter 1."
    assert decode_blocks(document.scenes[0].text)[0]["text"] == "Words of chapter 3."


def test_backup_filename_sanitizes_title() -> None:
    assert backup_filename("My Novel: Part 1") == "My_Novel__Part_1.json"
    assert backup_filename("???", "merged_backup") == "merged_backup.json"
