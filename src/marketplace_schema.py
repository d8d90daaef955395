from __future__ import annotations

import logging
from typing import Dict, Tuple

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    false,
    func,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer(), "sqlite")

users = Table(
    "users",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
)

profiles = Table(
    "profiles",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("user_id", IdType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("age", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("description", Text, nullable=False),
    Column("address", Text, nullable=False),
    Column("latitude", Float, nullable=False),
    Column("longitude", Float, nullable=False),
    Column("published", Boolean, nullable=False, server_default=false()),
    Column("is_draft", Boolean, nullable=False, server_default=false()),
    Column(
        "original_profile_id",
        IdType,
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
)

profile_images = Table(
    "profile_images",
    metadata,
    Column("id", IdType, primary_key=True, autoincrement=True),
    Column("profile_id", IdType, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("thumbnail_url", Text, nullable=False),
    Column("thumbnail_cdn_url", Text, nullable=True),
    Column("thumbnail_storage_key", Text, nullable=False),
    Column("medium_url", Text, nullable=False),
    Column("medium_cdn_url", Text, nullable=True),
    Column("medium_storage_key", Text, nullable=False),
    Column("high_quality_url", Text, nullable=False),
    Column("high_quality_cdn_url", Text, nullable=True),
    Column("high_quality_storage_key", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Index("idx_profile_images_profile_position", "profile_id", "position"),
    Index("idx_profile_images_medium_key", "medium_storage_key"),
)

# category -> (reference table, join table, join column)
TAG_CATEGORIES: Dict[str, Tuple[str, str, str]] = {
    "languages": ("languages", "profile_languages", "language_id"),
    "payment_methods": ("payment_methods", "profile_payment_methods", "payment_method_id"),
    "nationalities": ("nationalities", "profile_nationalities", "nationality_id"),
    "ethnicities": ("ethnicities", "profile_ethnicities", "ethnicity_id"),
    "services": ("services", "profile_services", "service_id"),
}

for _reference_table, _join_table, _join_column in TAG_CATEGORIES.values():
    Table(
        _reference_table,
        metadata,
        Column("id", IdType, primary_key=True, autoincrement=True),
        Column("name", String(120), nullable=False, unique=True),
    )
    Table(
        _join_table,
        metadata,
        Column("profile_id", IdType, ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True),
        Column(_join_column, IdType, ForeignKey(f"{_reference_table}.id", ondelete="RESTRICT"), primary_key=True),
    )


def ensure_marketplace_schema(engine: Engine) -> None:
    """Create any missing marketplace tables. Existing tables are left untouched."""
    metadata.create_all(engine, checkfirst=True)
    logger.info("schema.bootstrap tables=%s", len(metadata.tables))
