"""Ledger event log and the monitor's durable cursor."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON
import ulid

from ..database import Base
from .types import UTCDateTime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    FAILED = "failed"
    RETRY = "retry"


class LedgerEvent(Base):
    """One escrow contract event as fetched from the ledger gateway."""

    __tablename__ = "ledger_events"

    __table_args__ = (
        sa.UniqueConstraint("tx_ref", "log_index", name="uq_ledger_events_tx_log"),
        sa.Index("ix_ledger_events_booking_order", "booking_id", "block_number", "log_index"),
        sa.Index("ix_ledger_events_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"),
        nullable=False,
        default=dict,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LedgerEventStatus.RECEIVED.value
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now_utc)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def event_key(self) -> str:
        """Stable identifier used for replay detection and history records."""
        return f"{self.tx_ref}:{self.log_index}"


class LedgerCursor(Base):
    """Position of the last ledger block fully ingested by a monitor."""

    __tablename__ = "ledger_cursors"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_now_utc, onupdate=_now_utc
    )
