from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from src.db import readonly_session_scope, session_scope
from src.errors import NotFoundError, PermissionDeniedError, ProfileExistsError, StateError, ValidationError
from src.identity import Identity
from src.image_reconciler import (
    ImageSubmission,
    StoredImage,
    discard_uploads,
    load_stored_images,
    materialize_uploads,
    plan_reconciliation,
    release_unreferenced_blobs,
    write_image_set,
)
from src.profile_state import (
    Canonical,
    DraftNew,
    DraftRevision,
    ProfileState,
    is_publicly_visible,
    original_id_of,
    state_from_row,
    state_to_columns,
)
from src.profile_tags import read_profile_tags, replace_profile_tags, validate_tag_ids
from src.profile_validation import ProfileInput

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = (
    "id, user_id, name, age, price, description, address, latitude, longitude, "
    "published, is_draft, original_profile_id, created_at, updated_at"
)


def _timestamp(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


@dataclass
class ProfileRecord:
    id: int
    user_id: int
    name: str
    age: int
    price: float
    description: str
    address: str
    latitude: float
    longitude: float
    state: ProfileState
    created_at: Any = None
    updated_at: Any = None
    images: List[StoredImage] = field(default_factory=list)
    tags: Dict[str, List[Dict[str, object]]] = field(default_factory=dict)

    @property
    def published(self) -> bool:
        return is_publicly_visible(self.state)

    @property
    def is_draft(self) -> bool:
        return not isinstance(self.state, Canonical)

    @property
    def original_profile_id(self) -> Optional[int]:
        return original_id_of(self.state)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ProfileRecord":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            name=row["name"],
            age=int(row["age"]),
            price=float(row["price"]),
            description=row["description"],
            address=row["address"],
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            state=state_from_row(row),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "age": self.age,
            "price": self.price,
            "description": self.description,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "published": self.published,
            "is_draft": self.is_draft,
            "original_profile_id": self.original_profile_id,
            "state": self.state.label,
            "created_at": _timestamp(self.created_at),
            "updated_at": _timestamp(self.updated_at),
            "images": [
                dict(image.image.as_columns(), id=image.id, position=image.position) for image in self.images
            ],
            "tags": self.tags,
        }


def load_profile_row(session: Session, profile_id: int) -> Mapping[str, Any]:
    row = session.execute(
        text(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = :id"),
        {"id": profile_id},
    ).mappings().one_or_none()
    if row is None:
        raise NotFoundError(f"Profile {profile_id} not found")
    return row


def load_records(session: Session, rows: Sequence[Mapping[str, Any]]) -> List[ProfileRecord]:
    records = [ProfileRecord.from_row(row) for row in rows]
    if not records:
        return records
    ids = [record.id for record in records]
    image_rows = session.execute(
        text(
            """
            SELECT *
            FROM profile_images
            WHERE profile_id IN :ids
            ORDER BY profile_id, position, id
            """
        ).bindparams(bindparam("ids", expanding=True)),
        {"ids": ids},
    ).mappings().all()
    images_by_profile: Dict[int, List[StoredImage]] = {}
    for row in image_rows:
        images_by_profile.setdefault(int(row["profile_id"]), []).append(StoredImage.from_row(row))
    tags = read_profile_tags(session, ids)
    for record in records:
        record.images = images_by_profile.get(record.id, [])
        record.tags = tags.get(record.id, {})
    return records


def load_record(session: Session, profile_id: int) -> ProfileRecord:
    return load_records(session, [load_profile_row(session, profile_id)])[0]


def owner_profile_id(session: Session, user_id: int) -> Optional[int]:
    """The owner's canonical profile, or their first submission when none is canonical yet."""
    return session.execute(
        text(
            """
            SELECT id FROM profiles
            WHERE user_id = :user_id
              AND (is_draft = :no OR original_profile_id IS NULL)
            ORDER BY is_draft, id
            LIMIT 1
            """
        ),
        {"user_id": user_id, "no": False},
    ).scalar_one_or_none()


def pending_revision_id(session: Session, original_id: int) -> Optional[int]:
    return session.execute(
        text(
            """
            SELECT id FROM profiles
            WHERE original_profile_id = :original_id AND is_draft = :yes
            ORDER BY id
            LIMIT 1
            """
        ),
        {"original_id": original_id, "yes": True},
    ).scalar_one_or_none()


def _user_exists(session: Session, user_id: int) -> bool:
    return session.execute(text("SELECT 1 FROM users WHERE id = :id"), {"id": user_id}).first() is not None


def _insert_profile(session: Session, user_id: int, data: ProfileInput, state: ProfileState) -> int:
    params = dict(data.scalar_columns(), user_id=user_id, **state_to_columns(state))
    return int(
        session.execute(
            text(
                """
                INSERT INTO profiles (
                    user_id, name, age, price, description, address, latitude, longitude,
                    published, is_draft, original_profile_id
                )
                VALUES (
                    :user_id, :name, :age, :price, :description, :address, :latitude, :longitude,
                    :published, :is_draft, :original_profile_id
                )
                RETURNING id
                """
            ),
            params,
        ).scalar_one()
    )


def _update_profile_row(session: Session, profile_id: int, data: ProfileInput, state: ProfileState) -> None:
    params = dict(data.scalar_columns(), id=profile_id, **state_to_columns(state))
    session.execute(
        text(
            """
            UPDATE profiles
            SET name = :name,
                age = :age,
                price = :price,
                description = :description,
                address = :address,
                latitude = :latitude,
                longitude = :longitude,
                published = :published,
                is_draft = :is_draft,
                original_profile_id = :original_profile_id,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
            """
        ),
        params,
    )


def create_profile(identity: Identity, data: ProfileInput, images: Optional[ImageSubmission] = None) -> ProfileRecord:
    """
    Create the owner's profile. Admins create canonical rows (optionally for
    another user via ``data.user_id``); everybody else creates a first-time draft.
    """
    images = images or ImageSubmission()
    owner_id = identity.user_id
    if data.user_id is not None and data.user_id != identity.user_id:
        if not identity.is_admin:
            raise PermissionDeniedError()
        owner_id = data.user_id

    state: ProfileState = Canonical(published=bool(data.published)) if identity.is_admin else DraftNew()

    with readonly_session_scope() as session:
        if not _user_exists(session, owner_id):
            raise ValidationError({"user_id": [f"User {owner_id} not found"]})
        existing_id = owner_profile_id(session, owner_id)
        if existing_id is not None:
            raise ProfileExistsError(existing_id)
        validate_tag_ids(session, data.tags)

    plan = plan_reconciliation([], images)
    processed = materialize_uploads(plan, images.uploads)
    try:
        with session_scope() as session:
            existing_id = owner_profile_id(session, owner_id)
            if existing_id is not None:
                raise ProfileExistsError(existing_id)
            profile_id = _insert_profile(session, owner_id, data, state)
            replace_profile_tags(session, profile_id, data.tags)
            write_image_set(session, profile_id, plan, processed)
    except Exception:
        discard_uploads(processed, context="create_profile.rollback")
        raise

    logger.info(
        "profile.create profile_id=%s user_id=%s state=%s by=%s images=%s",
        profile_id,
        owner_id,
        state.label,
        identity.user_id,
        len(plan.final),
    )
    with readonly_session_scope() as session:
        return load_record(session, profile_id)


@dataclass(frozen=True)
class _EditTarget:
    """Where an update lands: the row to write and the rows its image plan was computed against."""

    profile_id: Optional[int]
    state: ProfileState
    image_source_id: int
    expected_state: ProfileState


def _resolve_edit_target(session: Session, row: Mapping[str, Any], identity: Identity, data: ProfileInput) -> _EditTarget:
    profile_id = int(row["id"])
    state = state_from_row(row)

    if identity.is_admin:
        if isinstance(state, Canonical) and data.published is not None:
            new_state: ProfileState = Canonical(published=data.published)
        else:
            new_state = state
        return _EditTarget(profile_id, new_state, profile_id, state)

    if isinstance(state, Canonical) and state.published:
        draft_id = pending_revision_id(session, profile_id)
        revision = DraftRevision(original_id=profile_id)
        if draft_id is not None:
            return _EditTarget(int(draft_id), revision, int(draft_id), revision)
        return _EditTarget(None, revision, profile_id, state)

    return _EditTarget(profile_id, state, profile_id, state)


def update_profile(
    profile_id: int,
    identity: Identity,
    data: ProfileInput,
    images: Optional[ImageSubmission] = None,
) -> ProfileRecord:
    """
    Apply an edit. Admins and owners of unpublished or draft rows edit in place.
    An owner editing a published canonical profile writes a revision draft
    instead (creating it on first edit), leaving the canonical row untouched.
    """
    images = images or ImageSubmission()

    with readonly_session_scope() as session:
        row = load_profile_row(session, profile_id)
        if not identity.is_admin and int(row["user_id"]) != identity.user_id:
            raise PermissionDeniedError()
        validate_tag_ids(session, data.tags)
        target = _resolve_edit_target(session, row, identity, data)
        existing_images = load_stored_images(session, target.image_source_id)
    owner_id = int(row["user_id"])

    plan = plan_reconciliation(existing_images, images)
    processed = materialize_uploads(plan, images.uploads)
    removed_keys: List[str] = []
    try:
        with session_scope() as session:
            current = load_profile_row(session, target.image_source_id)
            if state_from_row(current) != target.expected_state:
                raise StateError("Profile changed while saving; reload and try again.")
            if target.profile_id is None:
                written_id = _insert_profile(session, owner_id, data, target.state)
                write_image_set(session, written_id, plan, processed, source_profile_id=target.image_source_id)
            else:
                written_id = target.profile_id
                _update_profile_row(session, written_id, data, target.state)
                removed_keys = write_image_set(session, written_id, plan, processed)
            replace_profile_tags(session, written_id, data.tags)
    except Exception:
        discard_uploads(processed, context="update_profile.rollback")
        raise

    release_unreferenced_blobs(removed_keys, context="update_profile")
    logger.info(
        "profile.update profile_id=%s target=%s written_id=%s by=%s images_touched=%s",
        profile_id,
        "draft" if isinstance(target.state, DraftRevision) and written_id != profile_id else "in_place",
        written_id,
        identity.user_id,
        plan.touched,
    )
    with readonly_session_scope() as session:
        return load_record(session, written_id)


def _visible_to(record: ProfileRecord, viewer: Optional[Identity]) -> bool:
    if record.published:
        return True
    if viewer is None:
        return False
    return viewer.is_admin or viewer.user_id == record.user_id


def get_profile(profile_id: int, viewer: Optional[Identity] = None) -> ProfileRecord:
    with readonly_session_scope() as session:
        record = load_record(session, profile_id)
    if not _visible_to(record, viewer):
        # Hidden rows look the same as missing ones.
        raise NotFoundError(f"Profile {profile_id} not found")
    return record


def list_profiles(viewer: Optional[Identity] = None, *, include_drafts: bool = False) -> List[ProfileRecord]:
    """
    Visitors see published canonical profiles. With ``include_drafts`` an owner
    also gets every row they own; admins see all canonical rows, and drafts too
    when ``include_drafts`` is set.
    """
    params: Dict[str, Any] = {"yes": True, "no": False}
    if viewer is not None and viewer.is_admin:
        where = "1 = 1" if include_drafts else "is_draft = :no"
    elif viewer is not None and include_drafts:
        where = "(is_draft = :no AND published = :yes) OR user_id = :user_id"
        params["user_id"] = viewer.user_id
    else:
        where = "is_draft = :no AND published = :yes"

    with readonly_session_scope() as session:
        rows = session.execute(
            text(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE {where} ORDER BY id"),
            params,
        ).mappings().all()
        return load_records(session, rows)
