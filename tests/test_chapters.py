from __future__ import annotations

from pathlib import Path

import pytest

from novelkit.chapters import Chapter, ChapterModel
from novelkit.errors import (
    ChapterNotFoundError,
    ConfigurationError,
    InvalidOffsetError,
    InvalidPermutationError,
    NoPreviousChapterError,
)


def _model() -> ChapterModel:
    return ChapterModel.from_chapters(
        [
            Chapter("One", "first body"),
            Chapter("Two", "second body"),
            Chapter("Three", "third body"),
        ]
    )


def test_model_assigns_stable_ids() -> None:
    model = _model()
    assert model.ids == ["chap-1", "chap-2", "chap-3"]
    assert not model.dirty


def test_split_at_inserts_new_chapter_after_source() -> None:
    model = _model()
    new_chapter = model.split_at("chap-1", 5)
    assert model.get("chap-1").content == "first"
    assert new_chapter.content == " body"
    assert new_chapter.title == "Chapter 2"
    assert model.index_of(new_chapter.id) == 1
    assert len(model) == 4
    assert model.dirty


def test_split_at_accepts_both_ends() -> None:
    model = _model()
    tail = model.split_at("chap-2", len("second body"))
    assert tail.content == ""
    head = model.split_at("chap-3", 0)
    assert model.get("chap-3").content == ""
    assert head.content == "third body"


@pytest.mark.parametrize("offset", [-1, 11])
def test_split_at_rejects_offsets_outside_content(offset: int) -> None:
    model = _model()
    with pytest.raises(InvalidOffsetError):
        model.split_at("chap-1", offset)
    assert len(model) == 3


def test_merge_up_joins_with_blank_line() -> None:
    model = _model()
    model.select("chap-2")
    previous = model.merge_up("chap-2")
    assert previous.id == "chap-1"
    assert previous.content == "first body\n\nsecond body"
    assert model.ids == ["chap-1", "chap-3"]
    assert model.selected_id == "chap-1"


def test_merge_up_first_chapter_raises() -> None:
    model = _model()
    with pytest.raises(NoPreviousChapterError):
        model.merge_up("chap-1")


def test_merge_selected_absorbs_titles_and_content() -> None:
    model = _model()
    target = model.merge_selected(["chap-3", "chap-1"])
    assert target.id == "chap-1"
    assert target.content == "first body\n\n\nThree\n\nthird body"
    assert model.ids == ["chap-1", "chap-2"]


def test_merge_selected_needs_two_chapters() -> None:
    model = _model()
    with pytest.raises(ConfigurationError):
        model.merge_selected(["chap-1"])


def test_reorder_keeps_ids() -> None:
    model = _model()
    model.select("chap-3")
    model.reorder(["chap-3", "chap-1", "chap-2"])
    assert [chapter.title for chapter in model] == ["Three", "One", "Two"]
    assert model.selected is not None
    assert model.selected.title == "Three"


@pytest.mark.parametrize(
    "order",
    [
        ["chap-1", "chap-2"],
        ["chap-1", "chap-1", "chap-2"],
        ["chap-1", "chap-2", "chap-9"],
    ],
)
def test_reorder_rejects_non_permutations(order: list[str]) -> None:
    model = _model()
    with pytest.raises(InvalidPermutationError):
        model.reorder(order)
    assert model.ids == ["chap-1", "chap-2", "chap-3"]


def test_retitle_and_set_content_check_existence() -> None:
    model = _model()
    model.retitle("chap-2", "")
    model.set_content("chap-2", "")
    assert model.get("chap-2").title == ""
    with pytest.raises(ChapterNotFoundError):
        model.retitle("chap-9", "Nope")
    with pytest.raises(KeyError):
        model.set_content("chap-9", "Nope")


def test_delete_clears_selection() -> None:
    model = _model()
    model.select("chap-2")
    removed = model.delete("chap-2")
    assert removed.title == "Two"
    assert model.selected_id is None
    assert model.selected is None


def test_add_and_move() -> None:
    model = _model()
    added = model.add("Interlude", "…", after="chap-1")
    assert model.index_of(added.id) == 1
    assert added.id == "chap-4"
    model.move(added.id, 3)
    assert model.ids[-1] == added.id
    with pytest.raises(InvalidOffsetError):
        model.move(added.id, 4)


def test_batch_rename_substitutes_numbers() -> None:
    model = _model()
    model.batch_rename(pattern="Part {n}", start_number=3)
    assert [chapter.title for chapter in model] == ["Part 3", "Part 4", "Part 5"]
    model.batch_rename(["chap-3", "chap-2"], pattern="Ep ")
    assert [chapter.title for chapter in model] == ["Part 3", "Ep 1", "Ep 2"]


def test_session_round_trip(tmp_path: Path) -> None:
    model = _model()
    model.select("chap-2")
    model.delete("chap-3")
    path = model.save_session(tmp_path / "session.json")
    restored = ChapterModel.load_session(path)
    assert restored.ids == ["chap-1", "chap-2"]
    assert restored.selected_id == "chap-2"
    assert restored.dirty
    assert restored.add().id == "chap-4"
