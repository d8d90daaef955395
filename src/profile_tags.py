from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from src.db import readonly_session_scope, session_scope
from src.errors import NotFoundError, ValidationError
from src.marketplace_schema import TAG_CATEGORIES

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_DATA: Dict[str, Sequence[str]] = {
    "languages": ("English", "Spanish", "French", "Germany", "Italian"),
    "payment_methods": ("Cash", "Card", "Bizum"),
    "nationalities": (
        "N/A", "African *", "Asian *", "American", "Argentinian", "Austrian", "Belarusian",
        "Brazilian", "British", "Bulgarian", "Chilean", "Chinese", "Colombian", "Czech",
        "Ecuadorian", "French", "German", "Greek", "Hungarian", "Italian", "Japanese",
        "Mexican", "Polish", "Portuguese", "Puerto Rican", "Romanian", "Russian", "Spanish",
        "Turkish", "Ukrainian", "Venezuelan",
    ),
    "ethnicities": ("N/A", "African", "Asian", "Eastern European (Slavic)", "Latina", "European"),
    "services": ("Girlfriend Experience", "Event Companion", "Romantic Night"),
}


def _category(category: str) -> tuple[str, str, str]:
    try:
        return TAG_CATEGORIES[category]
    except KeyError:
        raise NotFoundError(f"Unknown tag category: {category}") from None


def validate_tag_ids(session: Session, tags: Mapping[str, Sequence[int]]) -> None:
    errors: Dict[str, List[str]] = {}
    for category, ids in tags.items():
        if not ids:
            continue
        reference_table, _, _ = _category(category)
        found = set(
            session.execute(
                text(f"SELECT id FROM {reference_table} WHERE id IN :ids").bindparams(
                    bindparam("ids", expanding=True)
                ),
                {"ids": list(ids)},
            ).scalars().all()
        )
        unknown = [tag_id for tag_id in ids if tag_id not in found]
        if unknown:
            errors[category] = [f"Unknown {category} id: {tag_id}" for tag_id in unknown]
    if errors:
        raise ValidationError(errors)


def replace_profile_tags(session: Session, profile_id: int, tags: Mapping[str, Sequence[int]]) -> None:
    """Set-replace every tag category of a profile. Missing categories become empty."""
    for category, (_, join_table, join_column) in TAG_CATEGORIES.items():
        session.execute(
            text(f"DELETE FROM {join_table} WHERE profile_id = :profile_id"),
            {"profile_id": profile_id},
        )
        ids = list(dict.fromkeys(tags.get(category) or ()))
        if ids:
            session.execute(
                text(f"INSERT INTO {join_table} (profile_id, {join_column}) VALUES (:profile_id, :tag_id)"),
                [{"profile_id": profile_id, "tag_id": tag_id} for tag_id in ids],
            )


def copy_profile_tags(session: Session, source_profile_id: int, target_profile_id: int) -> None:
    replace_profile_tags(session, target_profile_id, read_profile_tag_ids(session, source_profile_id))


def read_profile_tag_ids(session: Session, profile_id: int) -> Dict[str, List[int]]:
    tags: Dict[str, List[int]] = {}
    for category, (_, join_table, join_column) in TAG_CATEGORIES.items():
        tags[category] = [
            int(value)
            for value in session.execute(
                text(
                    f"SELECT {join_column} FROM {join_table} WHERE profile_id = :profile_id ORDER BY {join_column}"
                ),
                {"profile_id": profile_id},
            ).scalars().all()
        ]
    return tags


def read_profile_tags(session: Session, profile_ids: Sequence[int]) -> Dict[int, Dict[str, List[Dict[str, object]]]]:
    """Tags of several profiles grouped by profile id then category, as ``{id, name}`` items."""
    result: Dict[int, Dict[str, List[Dict[str, object]]]] = {
        int(profile_id): {category: [] for category in TAG_CATEGORIES} for profile_id in profile_ids
    }
    if not profile_ids:
        return result
    for category, (reference_table, join_table, join_column) in TAG_CATEGORIES.items():
        rows = session.execute(
            text(
                f"""
                SELECT j.profile_id, r.id, r.name
                FROM {join_table} j
                JOIN {reference_table} r ON r.id = j.{join_column}
                WHERE j.profile_id IN :profile_ids
                ORDER BY r.name
                """
            ).bindparams(bindparam("profile_ids", expanding=True)),
            {"profile_ids": [int(profile_id) for profile_id in profile_ids]},
        ).mappings().all()
        for row in rows:
            result[int(row["profile_id"])][category].append({"id": int(row["id"]), "name": row["name"]})
    return result


def list_tag_options(category: str) -> List[Dict[str, object]]:
    reference_table, _, _ = _category(category)
    with readonly_session_scope() as session:
        rows = session.execute(text(f"SELECT id, name FROM {reference_table} ORDER BY name")).mappings().all()
    return [{"id": int(row["id"]), "name": row["name"]} for row in rows]


def seed_reference_data(data: Mapping[str, Sequence[str]] = DEFAULT_REFERENCE_DATA) -> Dict[str, int]:
    """Insert missing reference names. Existing rows are kept. Returns the inserted count per category."""
    inserted: Dict[str, int] = {}
    with session_scope() as session:
        for category, names in data.items():
            reference_table, _, _ = _category(category)
            count = 0
            for name in names:
                result = session.execute(
                    text(f"INSERT INTO {reference_table} (name) VALUES (:name) ON CONFLICT (name) DO NOTHING"),
                    {"name": name},
                )
                count += max(result.rowcount or 0, 0)
            inserted[category] = count
            logger.info("reference.seed category=%s inserted=%s", category, count)
    return inserted
