import pytest
from sqlalchemy import text

from conftest import make_image_bytes, profile_input, uploads
from src import db
from src.errors import NotFoundError, PermissionDeniedError, ProfileExistsError, StorageError, ValidationError
from src.image_reconciler import ImageRef, ImageSubmission
from src.profile_service import create_profile, get_profile, list_profiles, update_profile
from src.profile_state import Canonical, DraftNew, DraftRevision
from src.profile_tags import list_tag_options


def _count(sql: str, **params) -> int:
    with db.readonly_session_scope() as session:
        return int(session.execute(text(sql), params).scalar_one())


def _published_canonical(admin, owner, bucket, *colors):
    return create_profile(admin, profile_input(user_id=owner.user_id, published=True), uploads(*colors))


def test_non_admin_create_is_a_first_time_draft(owner, bucket):
    record = create_profile(owner, profile_input(published=True), uploads((1, 2, 3)))

    assert record.state == DraftNew()
    assert record.is_draft and not record.published
    assert record.user_id == owner.user_id
    assert [image.position for image in record.images] == [0]
    assert len(bucket.objects) == 3


def test_admin_create_is_canonical_and_can_target_another_user(admin, owner, bucket):
    record = create_profile(admin, profile_input(user_id=owner.user_id, published=True))
    assert record.state == Canonical(published=True)
    assert record.user_id == owner.user_id

    unpublished = create_profile(admin, profile_input())
    assert unpublished.state == Canonical(published=False)
    assert unpublished.user_id == admin.user_id


def test_second_create_points_to_the_existing_profile(owner, bucket):
    first = create_profile(owner, profile_input())
    with pytest.raises(ProfileExistsError) as excinfo:
        create_profile(owner, profile_input(), uploads((9, 9, 9)))
    assert excinfo.value.profile_id == first.id
    assert bucket.objects == {}


def test_non_admin_cannot_create_for_someone_else(owner, other_user, bucket):
    with pytest.raises(PermissionDeniedError):
        create_profile(owner, profile_input(user_id=other_user.user_id))


def test_create_rejects_unknown_tag_ids(owner, bucket):
    with pytest.raises(ValidationError) as excinfo:
        create_profile(owner, profile_input(tags={"languages": [9999]}))
    assert "languages" in excinfo.value.errors


def test_create_stores_tags(owner, bucket):
    english = next(option for option in list_tag_options("languages") if option["name"] == "English")
    record = create_profile(owner, profile_input(tags={"languages": [english["id"]]}))
    assert record.tags["languages"] == [{"id": english["id"], "name": "English"}]
    assert record.tags["services"] == []


def test_failed_upload_creates_no_row(owner, bucket):
    bucket.fail_uploads_matching.add("_thumb")
    with pytest.raises(StorageError):
        create_profile(owner, profile_input(), uploads((1, 1, 1)))
    assert _count("SELECT COUNT(*) FROM profiles") == 0
    assert bucket.objects == {}


def test_owner_edit_of_published_profile_forks_a_draft(admin, owner, bucket):
    canonical = _published_canonical(admin, owner, bucket, (10, 10, 10), (20, 20, 20))
    canonical_keys = [image.medium_storage_key for image in canonical.images]

    draft = update_profile(
        canonical.id,
        owner,
        profile_input(name="Alice v2", published=False),
        ImageSubmission(touched=True, order=[ImageRef.existing(canonical_keys[1], 0)]),
    )

    assert draft.id != canonical.id
    assert draft.state == DraftRevision(original_id=canonical.id)
    assert draft.original_profile_id == canonical.id
    assert canonical.original_profile_id is None
    assert draft.name == "Alice v2"
    assert [image.medium_storage_key for image in draft.images] == [canonical_keys[1]]

    after = get_profile(canonical.id)
    assert after.name == "Alice"
    assert after.published
    assert [image.medium_storage_key for image in after.images] == canonical_keys
    assert bucket.deleted == []


def test_second_owner_edit_updates_the_same_draft(admin, owner, bucket):
    canonical = _published_canonical(admin, owner, bucket, (10, 10, 10))
    first = update_profile(canonical.id, owner, profile_input(name="v2"))
    second = update_profile(canonical.id, owner, profile_input(name="v3"))

    assert second.id == first.id
    assert second.name == "v3"
    assert _count("SELECT COUNT(*) FROM profiles WHERE original_profile_id = :id", id=canonical.id) == 1


def test_untouched_fork_copies_the_canonical_images(admin, owner, bucket):
    canonical = _published_canonical(admin, owner, bucket, (10, 10, 10), (20, 20, 20))
    draft = update_profile(canonical.id, owner, profile_input(name="v2"), ImageSubmission(touched=False))
    assert [image.medium_storage_key for image in draft.images] == [
        image.medium_storage_key for image in canonical.images
    ]


def test_owner_edit_of_unpublished_profile_is_in_place(owner, bucket):
    record = create_profile(owner, profile_input(), uploads((1, 1, 1), (2, 2, 2)))
    keys = [image.medium_storage_key for image in record.images]

    updated = update_profile(
        record.id,
        owner,
        profile_input(name="Renamed", published=True),
        ImageSubmission(touched=True, order=[ImageRef.existing(keys[1], 0)]),
    )

    assert updated.id == record.id
    assert updated.state == DraftNew()
    assert updated.name == "Renamed"
    assert [image.medium_storage_key for image in updated.images] == [keys[1]]
    assert _count("SELECT COUNT(*) FROM profiles") == 1
    assert not any(name.startswith(keys[0][: -len(".webp")]) for name in bucket.objects)


def test_missing_image_fields_leave_images_intact(owner, bucket):
    record = create_profile(owner, profile_input(), uploads((1, 1, 1), (2, 2, 2)))
    updated = update_profile(record.id, owner, profile_input(description="New text"), None)

    assert [image.id for image in updated.images] == [image.id for image in record.images]
    assert len(bucket.objects) == 6


def test_admin_edits_in_place_and_toggles_published(admin, owner, bucket):
    canonical = _published_canonical(admin, owner, bucket, (10, 10, 10))
    updated = update_profile(canonical.id, admin, profile_input(name="Admin fix", published=False))

    assert updated.id == canonical.id
    assert updated.state == Canonical(published=False)
    assert _count("SELECT COUNT(*) FROM profiles WHERE is_draft = :yes", yes=True) == 0


def test_non_admin_cannot_change_published_in_place(admin, owner, bucket):
    record = create_profile(admin, profile_input(user_id=owner.user_id, published=False))
    updated = update_profile(record.id, owner, profile_input(published=True))
    assert updated.state == Canonical(published=False)


def test_strangers_cannot_edit(owner, other_user, bucket):
    record = create_profile(owner, profile_input())
    with pytest.raises(PermissionDeniedError):
        update_profile(record.id, other_user, profile_input())
    with pytest.raises(NotFoundError):
        update_profile(record.id + 100, owner, profile_input())


def test_failed_upload_during_update_changes_nothing(owner, bucket):
    record = create_profile(owner, profile_input(), uploads((1, 1, 1)))
    before = set(bucket.objects)
    bucket.fail_uploads_matching.add("_large")
    submission = ImageSubmission(
        touched=True,
        order=[ImageRef.new(0, 0)],
        uploads=[make_image_bytes(color=(5, 5, 5))],
    )

    with pytest.raises(StorageError):
        update_profile(record.id, owner, profile_input(name="Changed"), submission)

    after = get_profile(record.id, owner)
    assert after.name == "Alice"
    assert [image.id for image in after.images] == [image.id for image in record.images]
    assert set(bucket.objects) == before


def test_visibility_rules(admin, owner, other_user, bucket):
    draft = create_profile(owner, profile_input())
    published = _published_canonical(admin, other_user, bucket, (1, 1, 1))

    assert [record.id for record in list_profiles(None)] == [published.id]
    assert {record.id for record in list_profiles(owner, include_drafts=True)} == {draft.id, published.id}
    assert [record.id for record in list_profiles(admin)] == [published.id]
    assert {record.id for record in list_profiles(admin, include_drafts=True)} == {draft.id, published.id}

    with pytest.raises(NotFoundError):
        get_profile(draft.id, None)
    with pytest.raises(NotFoundError):
        get_profile(draft.id, other_user)
    assert get_profile(draft.id, owner).id == draft.id
    assert get_profile(draft.id, admin).id == draft.id
