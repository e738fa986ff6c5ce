"""icm initial schema

Revision ID: 5c2e9a1f7d40
Revises:
Create Date: 2026-10-19 10:12:41.318205
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "5c2e9a1f7d40"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("system_settings"):
        op.create_table(
            "system_settings",
            sa.Column("key", sa.String(length=191), primary_key=True, nullable=False),
            sa.Column("value", sa.String(), nullable=False, server_default=""),
            sa.Column("updated_by", sa.String(length=128), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
    else:
        cols = {c["name"] for c in insp.get_columns("system_settings")}
        if "updated_by" not in cols:
            op.add_column("system_settings", sa.Column("updated_by", sa.String(length=128), nullable=True))

    # job_type sin UNIQUE: ensure_row() deduplica de forma defensiva
    op.create_table(
        "icm_update_state",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False, server_default="idle"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("progress", _json(), nullable=False),
        sa.Column("error", _json(), nullable=True),
    )
    op.create_index("ix_icm_update_state_job_type_state", "icm_update_state", ["job_type", "state"])

    op.create_table(
        "icm_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("data_type", sa.String(length=16), nullable=False),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_hours", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("pair_counts", _json(), nullable=False),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_icm_snapshots_type_captured_at", "icm_snapshots", ["data_type", "captured_at"])
    op.create_index("ix_icm_snapshots_type_version", "icm_snapshots", ["data_type", "version"])


def downgrade() -> None:
    op.drop_index("ix_icm_snapshots_type_version", table_name="icm_snapshots")
    op.drop_index("ix_icm_snapshots_type_captured_at", table_name="icm_snapshots")
    op.drop_table("icm_snapshots")
    op.drop_index("ix_icm_update_state_job_type_state", table_name="icm_update_state")
    op.drop_table("icm_update_state")
    op.drop_table("system_settings")
