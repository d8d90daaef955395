"""Create the profile marketplace schema.

Revision ID: 001_init_marketplace
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "001_init_marketplace"
down_revision = None
branch_labels = None
depends_on = None

# category reference table -> (join table, join column)
TAG_TABLES = (
    ("languages", "profile_languages", "language_id"),
    ("payment_methods", "profile_payment_methods", "payment_method_id"),
    ("nationalities", "profile_nationalities", "nationality_id"),
    ("ethnicities", "profile_ethnicities", "ethnicity_id"),
    ("services", "profile_services", "service_id"),
)


def _timestamp(name):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.current_timestamp(), nullable=False)


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("role", sa.String(16), nullable=False, server_default="user"),
        _timestamp("created_at"),
    )

    op.create_table(
        "profiles",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("age", sa.Integer, nullable=False),
        sa.Column("price", sa.Float, nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("address", sa.Text, nullable=False),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("published", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_draft", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "original_profile_id",
            sa.BigInteger,
            sa.ForeignKey("profiles.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    tiers = ("thumbnail", "medium", "high_quality")
    image_columns = []
    for tier in tiers:
        image_columns.extend(
            [
                sa.Column(f"{tier}_url", sa.Text, nullable=False),
                sa.Column(f"{tier}_cdn_url", sa.Text, nullable=True),
                sa.Column(f"{tier}_storage_key", sa.Text, nullable=False),
            ]
        )
    op.create_table(
        "profile_images",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("profile_id", sa.BigInteger, sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        *image_columns,
        _timestamp("created_at"),
    )
    op.create_index("idx_profile_images_profile_position", "profile_images", ["profile_id", "position"])
    op.create_index("idx_profile_images_medium_key", "profile_images", ["medium_storage_key"])

    for reference_table, join_table, join_column in TAG_TABLES:
        op.create_table(
            reference_table,
            sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(120), nullable=False, unique=True),
        )
        op.create_table(
            join_table,
            sa.Column("profile_id", sa.BigInteger, sa.ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                join_column,
                sa.BigInteger,
                sa.ForeignKey(f"{reference_table}.id", ondelete="RESTRICT"),
                primary_key=True,
            ),
        )


def downgrade():
    for reference_table, join_table, _ in reversed(TAG_TABLES):
        op.drop_table(join_table)
        op.drop_table(reference_table)
    op.drop_index("idx_profile_images_medium_key", table_name="profile_images")
    op.drop_index("idx_profile_images_profile_position", table_name="profile_images")
    op.drop_table("profile_images")
    op.drop_table("profiles")
    op.drop_table("users")
