"""Create deal sync tables.

Revision ID: 001_deal_sync_tables
Revises:
Create Date: 2026-10-19

Creates three tables:
- deals_cache: Flattened CRM deals, unique per deal_id (upsert target)
- deals_sync_log: One row per sync run with counters and duration
- sync_locks: Expiring lease rows preventing overlapping runs
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_deal_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── deals_cache table ───────────────────────────────────────────────

    op.create_table(
        "deals_cache",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("deal_id", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False, server_default=""),
        sa.Column("value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(10), nullable=False, server_default="BRL"),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("stage_id", sa.String(50), nullable=True),
        sa.Column("closing_date", sa.Date(), nullable=True),
        sa.Column("created_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_field_value", sa.Text(), nullable=True),
        sa.Column("custom_field_id", sa.String(20), nullable=True),
        sa.Column("estado", sa.Text(), nullable=True),
        sa.Column("quantidade_de_pares", sa.Text(), nullable=True),
        sa.Column("vendedor", sa.Text(), nullable=True),
        sa.Column("designer", sa.Text(), nullable=True),
        sa.Column("utm_source", sa.Text(), nullable=True),
        sa.Column("utm_medium", sa.Text(), nullable=True),
        sa.Column("custom_field_54", sa.Text(), nullable=True),
        sa.Column("contact_id", sa.String(50), nullable=True),
        sa.Column("organization_id", sa.String(50), nullable=True),
        sa.Column("api_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_synced_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="synced"),
        sa.Column("sync_error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("deal_id", name="uq_deals_cache_deal_id"),
    )
    op.create_index("ix_deals_cache_closing_date", "deals_cache", ["closing_date"])
    op.create_index("ix_deals_cache_sync_status", "deals_cache", ["sync_status"])

    # ── deals_sync_log table ────────────────────────────────────────────

    op.create_table(
        "deals_sync_log",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "sync_started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("sync_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("deals_processed", sa.Integer(), server_default="0"),
        sa.Column("deals_added", sa.Integer(), server_default="0"),
        sa.Column("deals_updated", sa.Integer(), server_default="0"),
        sa.Column("deals_deleted", sa.Integer(), server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sync_duration_seconds", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_deals_sync_log_started_at", "deals_sync_log", ["sync_started_at"]
    )

    # ── sync_locks table ────────────────────────────────────────────────

    op.create_table(
        "sync_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("holder", sa.String(64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("sync_locks")
    op.drop_index("ix_deals_sync_log_started_at", table_name="deals_sync_log")
    op.drop_table("deals_sync_log")
    op.drop_index("ix_deals_cache_sync_status", table_name="deals_cache")
    op.drop_index("ix_deals_cache_closing_date", table_name="deals_cache")
    op.drop_table("deals_cache")
