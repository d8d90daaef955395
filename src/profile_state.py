"""
Lifecycle state of a profile row.

Rows persist the state as two columns (``is_draft`` and ``original_profile_id``)
plus ``published``. Every call site interprets them through this module instead
of re-deriving the meaning from the raw flags.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Union


@dataclass(frozen=True)
class Canonical:
    """The single publicly referenceable profile of an owner."""

    published: bool

    @property
    def label(self) -> str:
        return "canonical-published" if self.published else "canonical-unpublished"


@dataclass(frozen=True)
class DraftNew:
    """First submission of an owner, waiting for its initial approval."""

    label = "draft-new"


@dataclass(frozen=True)
class DraftRevision:
    """Pending edit of a published profile that still exists, untouched, at ``original_id``."""

    original_id: int
    label = "draft-revision"


ProfileState = Union[Canonical, DraftNew, DraftRevision]


def _as_bool(value: object) -> bool:
    # SQLite hands booleans back as 0/1.
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes"}
    return bool(value)


def state_from_columns(is_draft: object, original_profile_id: object, published: object) -> ProfileState:
    if not _as_bool(is_draft):
        return Canonical(published=_as_bool(published))
    if original_profile_id in (None, "", 0):
        return DraftNew()
    return DraftRevision(original_id=int(original_profile_id))


def state_from_row(row: Mapping[str, object]) -> ProfileState:
    return state_from_columns(row.get("is_draft"), row.get("original_profile_id"), row.get("published"))


def state_to_columns(state: ProfileState) -> dict[str, object]:
    """
    Persisted representation of ``state``. Drafts are stored unpublished, their
    flag carries no visibility meaning.
    """
    if isinstance(state, Canonical):
        return {"is_draft": False, "original_profile_id": None, "published": bool(state.published)}
    if isinstance(state, DraftRevision):
        return {"is_draft": True, "original_profile_id": int(state.original_id), "published": False}
    if isinstance(state, DraftNew):
        return {"is_draft": True, "original_profile_id": None, "published": False}
    raise TypeError(f"Unknown profile state: {state!r}")


def is_draft(state: ProfileState) -> bool:
    return isinstance(state, (DraftNew, DraftRevision))


def is_publicly_visible(state: ProfileState) -> bool:
    return isinstance(state, Canonical) and state.published


def original_id_of(state: ProfileState) -> Optional[int]:
    return state.original_id if isinstance(state, DraftRevision) else None
