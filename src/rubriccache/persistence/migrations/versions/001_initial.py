"""Initial schema for rubric-cache.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates tables for:
- cache_settings: master cache version and security salt
- namespace_versions: per-namespace version counters
- source_hashes: last content hash per backing-store source
- user_states: last observed identity attributes per user
- role_changes: bounded role change history
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "cache_settings",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "namespace_versions",
        sa.Column("namespace", sa.String(255), primary_key=True),
        sa.Column("version", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "source_hashes",
        sa.Column("source_id", sa.String(255), primary_key=True),
        sa.Column("hash", sa.String(128), nullable=False),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "user_states",
        sa.Column("user_id", sa.String(320), primary_key=True),
        sa.Column("attributes", sa.LargeBinary(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_user_states_last_seen_at", "user_states", ["last_seen_at"])

    op.create_table(
        "role_changes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(320), nullable=False),
        sa.Column("old_role", sa.String(128), nullable=True),
        sa.Column("new_role", sa.String(128), nullable=False),
        sa.Column("master_version", sa.String(128), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_role_changes_user_changed",
        "role_changes",
        ["user_id", "changed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_role_changes_user_changed", table_name="role_changes")
    op.drop_table("role_changes")
    op.drop_index("ix_user_states_last_seen_at", table_name="user_states")
    op.drop_table("user_states")
    op.drop_table("source_hashes")
    op.drop_table("namespace_versions")
    op.drop_table("cache_settings")
