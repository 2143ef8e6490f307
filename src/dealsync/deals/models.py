"""Deal sync persistence models.

Three SQLAlchemy models on the shared declarative Base:
- DealCacheModel: Flattened deal rows, unique per deal_id (upsert target)
- DealSyncLogModel: One row per sync run (running -> completed | failed)
- SyncLockModel: Lease rows guarding against overlapping runs
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsync.core.database import Base


class DealCacheModel(Base):
    """One CRM deal joined with its allow-listed custom fields.

    deal_id is the conflict key for upserts; the surrogate id is never
    exposed to the CRM.
    """

    __tablename__ = "deals_cache"
    __table_args__ = (
        Index("ix_deals_cache_closing_date", "closing_date"),
        Index("ix_deals_cache_sync_status", "sync_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    deal_id: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(
        String(10), nullable=False, default="BRL", server_default=text("'BRL'")
    )
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    stage_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    closing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    custom_field_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_field_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    estado: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantidade_de_pares: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendedor: Mapped[str | None] = mapped_column(Text, nullable=True)
    designer: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_source: Mapped[str | None] = mapped_column(Text, nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_field_54: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organization_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    api_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="synced", server_default=text("'synced'")
    )
    sync_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DealSyncLogModel(Base):
    """Audit row for one sync run.

    Inserted as ``running`` before any fetch and updated exactly once to
    ``completed`` or ``failed``. A process crash leaves the row ``running``.
    """

    __tablename__ = "deals_sync_log"
    __table_args__ = (
        Index("ix_deals_sync_log_started_at", "sync_started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    sync_started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    sync_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="running", server_default=text("'running'")
    )
    deals_processed: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    deals_added: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    deals_updated: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    deals_deleted: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncLockModel(Base):
    """Lease held by the running sync.

    A row whose expires_at is in the past is free to be taken over, so a
    crashed holder blocks new runs for at most the lease TTL.
    """

    __tablename__ = "sync_locks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
