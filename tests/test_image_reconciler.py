import pytest

from src.errors import ValidationError
from src.image_pipeline import ImageVariant, ProcessedImage
from src.image_reconciler import ImageRef, ImageSubmission, StoredImage, plan_reconciliation


def stored(image_id: int, position: int) -> StoredImage:
    base = f"profiles/img{image_id}"
    return StoredImage(
        id=image_id,
        position=position,
        image=ProcessedImage(
            thumbnail=ImageVariant(f"https://media.test/{base}_thumb.webp", None, f"{base}_thumb.webp"),
            medium=ImageVariant(f"https://media.test/{base}.webp", None, f"{base}.webp"),
            high_quality=ImageVariant(f"https://media.test/{base}_large.webp", None, f"{base}_large.webp"),
        ),
    )


EXISTING = [stored(1, 0), stored(2, 1), stored(3, 2)]


def key(image: StoredImage) -> str:
    return image.medium_storage_key


def test_resubmitting_current_order_changes_nothing():
    order = [ImageRef.existing(key(image), image.position) for image in EXISTING]
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=order))

    assert plan.unchanged
    assert plan.removed == []
    assert plan.upload_indexes == []
    assert [(entry.existing.id, entry.position) for entry in plan.final] == [(1, 0), (2, 1), (3, 2)]


def test_drop_one_add_one_renormalizes_positions():
    order = [
        ImageRef.existing(key(EXISTING[2]), 0),
        ImageRef.new(0, 5),
        ImageRef.existing(key(EXISTING[0]), 9),
    ]
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=order, uploads=[b"x"]))

    assert [entry.position for entry in plan.final] == [0, 1, 2]
    assert plan.final[0].existing.id == 3
    assert plan.final[1].upload_index == 0
    assert plan.final[2].existing.id == 1
    assert [image.id for image in plan.removed] == [2]


def test_equal_positions_keep_submitted_order():
    order = [
        ImageRef.existing(key(EXISTING[1]), 1),
        ImageRef.existing(key(EXISTING[0]), 1),
        ImageRef.existing(key(EXISTING[2]), 0),
    ]
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=order))
    assert [entry.existing.id for entry in plan.final] == [3, 2, 1]


def test_untouched_submission_keeps_everything():
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=False, order=[]))
    assert plan.unchanged
    assert plan.removed == []
    assert [entry.existing.id for entry in plan.final] == [1, 2, 3]


def test_touched_empty_order_clears_the_set():
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=[]))
    assert plan.final == []
    assert [image.id for image in plan.removed] == [1, 2, 3]


def test_missing_order_appends_uploads_after_existing():
    plan = plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=None, uploads=[b"a", b"b"]))
    assert [entry.existing.id if entry.existing else f"new{entry.upload_index}" for entry in plan.final] == [
        1,
        2,
        3,
        "new0",
        "new1",
    ]
    assert plan.removed == []


def test_positions_are_renormalized_even_without_other_changes():
    gappy = [stored(1, 0), stored(2, 4), stored(3, 9)]
    order = [ImageRef.existing(key(image), image.position) for image in gappy]
    plan = plan_reconciliation(gappy, ImageSubmission(touched=True, order=order))
    assert not plan.unchanged
    assert [entry.position for entry in plan.final] == [0, 1, 2]


def test_foreign_keys_and_missing_uploads_are_rejected():
    with pytest.raises(ValidationError):
        plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=[ImageRef.existing("profiles/other.webp", 0)]))
    with pytest.raises(ValidationError):
        plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=[ImageRef.new(2, 0)], uploads=[b"x"]))


def test_repeated_keys_and_uploads_are_rejected():
    twice = [ImageRef.existing(key(EXISTING[0]), 0), ImageRef.existing(key(EXISTING[0]), 1)]
    with pytest.raises(ValidationError) as excinfo:
        plan_reconciliation(EXISTING, ImageSubmission(touched=True, order=twice))
    assert excinfo.value.errors["image_order"] == [f"Image {key(EXISTING[0])} is listed twice"]

    with pytest.raises(ValidationError):
        plan_reconciliation(
            EXISTING,
            ImageSubmission(touched=True, order=[ImageRef.new(0, 0), ImageRef.new(0, 1)], uploads=[b"x"]),
        )
