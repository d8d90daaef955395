"""
Administrator transitions over the profile lifecycle.

Row changes for one action commit in a single transaction. Blob trios of image
rows removed by the action are released afterwards, and only when no remaining
row still references them (a revision draft shares keys with its canonical
profile until it is approved or rejected).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from src.db import readonly_session_scope, session_scope
from src.errors import PermissionDeniedError, StateError
from src.identity import Identity, require_admin
from src.image_reconciler import release_unreferenced_blobs
from src.profile_service import (
    PROFILE_COLUMNS,
    ProfileRecord,
    load_profile_row,
    load_record,
    load_records,
    owner_profile_id,
)
from src.profile_state import Canonical, DraftNew, DraftRevision, is_draft, state_from_row, state_to_columns
from src.profile_tags import copy_profile_tags

logger = logging.getLogger(__name__)


def _image_keys(session: Session, profile_ids: List[int]) -> List[str]:
    if not profile_ids:
        return []
    return list(
        session.execute(
            text("SELECT medium_storage_key FROM profile_images WHERE profile_id IN :ids").bindparams(
                bindparam("ids", expanding=True)
            ),
            {"ids": profile_ids},
        ).scalars().all()
    )


def _delete_profiles(session: Session, profile_ids: List[int]) -> None:
    if not profile_ids:
        return
    # Join rows and image rows go with the profile through ON DELETE CASCADE.
    session.execute(
        text("DELETE FROM profiles WHERE id IN :ids").bindparams(bindparam("ids", expanding=True)),
        {"ids": profile_ids},
    )


def _draft_ids_of(session: Session, original_id: int) -> List[int]:
    return [
        int(value)
        for value in session.execute(
            text("SELECT id FROM profiles WHERE original_profile_id = :original_id ORDER BY id"),
            {"original_id": original_id},
        ).scalars().all()
    ]


def approve_draft(identity: Identity, draft_id: int) -> ProfileRecord:
    """
    Merge a revision draft into its canonical profile: scalar fields, tags and the
    image set are overwritten from the draft, ``published`` is kept, and the draft
    row is removed.
    """
    require_admin(identity)
    with session_scope() as session:
        draft = load_profile_row(session, draft_id)
        state = state_from_row(draft)
        if isinstance(state, DraftNew):
            raise StateError(
                f"Profile {draft_id} is a first submission with no original to merge into; approve it as a new profile."
            )
        if not isinstance(state, DraftRevision):
            raise StateError(f"Profile {draft_id} is not a draft.")
        canonical_id = state.original_id
        canonical = load_profile_row(session, canonical_id)

        replaced_keys = _image_keys(session, [canonical_id])
        session.execute(
            text("DELETE FROM profile_images WHERE profile_id = :profile_id"),
            {"profile_id": canonical_id},
        )
        session.execute(
            text("UPDATE profile_images SET profile_id = :canonical_id WHERE profile_id = :draft_id"),
            {"canonical_id": canonical_id, "draft_id": draft_id},
        )
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
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :id
                """
            ),
            {
                "id": canonical_id,
                "name": draft["name"],
                "age": draft["age"],
                "price": draft["price"],
                "description": draft["description"],
                "address": draft["address"],
                "latitude": draft["latitude"],
                "longitude": draft["longitude"],
            },
        )
        copy_profile_tags(session, draft_id, canonical_id)
        _delete_profiles(session, [draft_id])

    release_unreferenced_blobs(replaced_keys, context="approve_draft")
    logger.info(
        "moderation.approve draft_id=%s canonical_id=%s state=%s by=%s",
        draft_id,
        canonical_id,
        state_from_row(canonical).label,
        identity.user_id,
    )
    with readonly_session_scope() as session:
        return load_record(session, canonical_id)


def approve_new_profile(identity: Identity, draft_id: int, published: bool = True) -> ProfileRecord:
    """Promote a first submission to the owner's canonical profile."""
    require_admin(identity)
    with session_scope() as session:
        draft = load_profile_row(session, draft_id)
        state = state_from_row(draft)
        if isinstance(state, DraftRevision):
            raise StateError(f"Profile {draft_id} is a revision of profile {state.original_id}; approve it as a draft.")
        if not isinstance(state, DraftNew):
            raise StateError(f"Profile {draft_id} is not a draft.")
        existing_id = owner_profile_id(session, int(draft["user_id"]))
        if existing_id is not None and int(existing_id) != draft_id:
            raise StateError(f"User already has canonical profile {existing_id}.")
        session.execute(
            text(
                """
                UPDATE profiles
                SET published = :published, is_draft = :is_draft, original_profile_id = :original_profile_id,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :id
                """
            ),
            dict(state_to_columns(Canonical(published=published)), id=draft_id),
        )
    logger.info("moderation.approve_new profile_id=%s published=%s by=%s", draft_id, published, identity.user_id)
    with readonly_session_scope() as session:
        return load_record(session, draft_id)


def reject_draft(identity: Identity, draft_id: int) -> Dict[str, Any]:
    require_admin(identity)
    with session_scope() as session:
        draft = load_profile_row(session, draft_id)
        state = state_from_row(draft)
        if not is_draft(state):
            raise StateError(f"Profile {draft_id} is not a draft.")
        keys = _image_keys(session, [draft_id])
        _delete_profiles(session, [draft_id])

    report = release_unreferenced_blobs(keys, context="reject_draft")
    logger.info("moderation.reject draft_id=%s kind=%s by=%s", draft_id, state.label, identity.user_id)
    return {"deleted_id": draft_id, "released": report.succeeded, "release_failed": [key for key, _ in report.failed]}


def delete_profile(identity: Identity, profile_id: int) -> Dict[str, Any]:
    """Delete a profile; deleting a canonical row removes its pending drafts first."""
    with session_scope() as session:
        row = load_profile_row(session, profile_id)
        if not identity.is_admin and int(row["user_id"]) != identity.user_id:
            raise PermissionDeniedError()
        state = state_from_row(row)
        draft_ids = _draft_ids_of(session, profile_id) if isinstance(state, Canonical) else []
        keys = _image_keys(session, draft_ids + [profile_id])
        _delete_profiles(session, draft_ids)
        _delete_profiles(session, [profile_id])

    report = release_unreferenced_blobs(keys, context="delete_profile")
    logger.info(
        "profile.delete profile_id=%s drafts=%s by=%s",
        profile_id,
        draft_ids,
        identity.user_id,
    )
    return {
        "deleted_id": profile_id,
        "deleted_drafts": draft_ids,
        "released": report.succeeded,
        "release_failed": [key for key, _ in report.failed],
    }


def set_published(identity: Identity, profile_id: int, published: bool) -> ProfileRecord:
    require_admin(identity)
    with session_scope() as session:
        row = load_profile_row(session, profile_id)
        if not isinstance(state_from_row(row), Canonical):
            raise StateError(f"Profile {profile_id} is a draft; only canonical profiles can be published.")
        session.execute(
            text("UPDATE profiles SET published = :published, updated_at = CURRENT_TIMESTAMP WHERE id = :id"),
            {"published": bool(published), "id": profile_id},
        )
    logger.info("moderation.publish profile_id=%s published=%s by=%s", profile_id, published, identity.user_id)
    with readonly_session_scope() as session:
        return load_record(session, profile_id)


def list_pending_drafts(identity: Identity) -> List[Dict[str, Any]]:
    require_admin(identity)
    with readonly_session_scope() as session:
        rows = session.execute(
            text(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE is_draft = :yes ORDER BY updated_at, id"),
            {"yes": True},
        ).mappings().all()
        records = load_records(session, rows)
    drafts = []
    for record in records:
        payload = record.as_dict()
        payload["kind"] = "revision" if isinstance(record.state, DraftRevision) else "new"
        drafts.append(payload)
    return drafts

