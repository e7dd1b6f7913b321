# backend/escrowbook/models/event_outbox.py
"""
Booking status outbox.

Rows are written in the same transaction as the booking change they
describe and drained afterwards by the outbox dispatcher. The idempotency key
(``booking.status_changed:{booking_id}:{version}``) makes a replayed enqueue
land on the existing row.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

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


class EventOutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EventOutbox(Base):
    """One downstream notification waiting for (or done with) delivery."""

    __tablename__ = "event_outbox"

    __table_args__ = (
        sa.UniqueConstraint("idempotency_key", name="uq_event_outbox_idempotency_key"),
        sa.Index("ix_event_outbox_due", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    # Booking id for status events
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(
        JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventOutboxStatus.PENDING.value
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=_now_utc, onupdate=_now_utc
    )

    def __repr__(self) -> str:
        return (
            f"<EventOutbox {self.event_type} aggregate={self.aggregate_id} "
            f"status={self.status} attempts={self.attempt_count}>"
        )
