import pytest

from src.profile_state import (
    Canonical,
    DraftNew,
    DraftRevision,
    is_draft,
    is_publicly_visible,
    original_id_of,
    state_from_columns,
    state_from_row,
    state_to_columns,
)


@pytest.mark.parametrize(
    "columns, expected",
    [
        ((False, None, True), Canonical(published=True)),
        ((0, None, 0), Canonical(published=False)),
        ((True, None, False), DraftNew()),
        ((1, 7, 1), DraftRevision(original_id=7)),
    ],
)
def test_state_from_columns(columns, expected):
    assert state_from_columns(*columns) == expected


def test_drafts_are_stored_unpublished():
    assert state_to_columns(DraftRevision(original_id=3)) == {
        "is_draft": True,
        "original_profile_id": 3,
        "published": False,
    }
    assert state_to_columns(DraftNew())["published"] is False


def test_columns_survive_a_write_and_read():
    for state in (Canonical(True), Canonical(False), DraftNew(), DraftRevision(12)):
        assert state_from_row(state_to_columns(state)) == state


def test_visibility_and_labels():
    assert is_publicly_visible(Canonical(published=True))
    assert not is_publicly_visible(Canonical(published=False))
    assert not is_publicly_visible(DraftNew())
    assert is_draft(DraftRevision(1)) and not is_draft(Canonical(True))
    assert original_id_of(DraftRevision(5)) == 5
    assert original_id_of(DraftNew()) is None
    assert DraftNew().label == "draft-new"
    assert Canonical(published=False).label == "canonical-unpublished"
