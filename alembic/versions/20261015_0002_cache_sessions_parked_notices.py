"""Add durable result cache, owner sessions and parked completion notices."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261015_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "result_cache_entries",
        sa.Column("fingerprint", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("fingerprint"),
    )
    op.create_index(
        "ix_result_cache_entries_expires_at",
        "result_cache_entries",
        ["expires_at"],
    )

    op.create_table(
        "owner_sessions",
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("current_action", sa.String(), nullable=False),
        sa.Column("action_data_json", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index(
        "ix_owner_sessions_last_activity_at",
        "owner_sessions",
        ["last_activity_at"],
    )

    op.create_table(
        "parked_notices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("external_task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_parked_notices_external_task_id",
        "parked_notices",
        ["external_task_id"],
    )


def downgrade() -> None:
    op.drop_table("parked_notices")
    op.drop_table("owner_sessions")
    op.drop_table("result_cache_entries")
