# backend/escrowbook/models/booking.py
"""
Booking model for the escrow booking core.

A booking reserves one slot of an offering for a customer. Status is
written only through the booking state machine; every accepted change
bumps ``version`` and appends a BookingTransition row. Bookings are never
deleted: completed, rejected and cancelled are terminal states kept for
audit.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, FrozenSet

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Free offering, awaiting provider
    PENDING_PAYMENT = "pending_payment"  # Priced offering, awaiting escrow deposit
    PAID = "paid"  # Deposit confirmed on the ledger
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Statuses that hold a slot and must be respected by availability
COMMITTED_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {
        BookingStatus.PENDING_PAYMENT,
        BookingStatus.PAID,
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
    }
)

# A free booking awaiting the provider also keeps others off its slot
SLOT_HOLDING_STATUSES: FrozenSet[BookingStatus] = COMMITTED_STATUSES | {BookingStatus.PENDING}

TERMINAL_STATUSES: FrozenSet[BookingStatus] = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
)


class Booking(Base):
    """Slot reservation between a provider and a customer."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    offering_id = Column(String(26), ForeignKey("offerings.id"), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False)
    customer_id = Column(String(64), nullable=False, index=True)

    # Timing, stored in UTC
    scheduled_start = Column(UTCDateTime(), nullable=False)
    scheduled_end = Column(UTCDateTime(), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    version = Column(Integer, nullable=False, default=1)
    # True when the latest transition came from the scheduler or ledger monitor
    auto_transition = Column(Boolean, nullable=False, default=False)

    ledger_tx_ref = Column(String(128), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime(), nullable=False, default=_now_utc)
    completed_at = Column(UTCDateTime(), nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    reminder_sent_at = Column(UTCDateTime(), nullable=True)

    offering = relationship("Offering")
    transitions = relationship(
        "BookingTransition",
        back_populates="booking",
        order_by="BookingTransition.sequence",
        cascade="all, delete-orphan",
    )
    escrow = relationship(
        "EscrowRecord", back_populates="booking", uselist=False, cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'pending_payment', 'paid', 'confirmed', "
            "'in_progress', 'completed', 'rejected', 'cancelled')",
            name="ck_bookings_status",
        ),
        CheckConstraint("duration_minutes > 0", name="ck_bookings_duration_positive"),
        CheckConstraint("buffer_minutes >= 0", name="ck_bookings_buffer_non_negative"),
        CheckConstraint("version >= 1", name="ck_bookings_version_positive"),
        Index("ix_bookings_provider_start", "provider_id", "scheduled_start"),
        Index("ix_bookings_status_start", "status", "scheduled_start"),
        Index("ix_bookings_status_end", "status", "scheduled_end"),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if self.scheduled_end is None and self.scheduled_start and self.duration_minutes:
            self.scheduled_end = self.scheduled_start + timedelta(minutes=self.duration_minutes)
        logger.info(
            f"Creating booking for customer {self.customer_id} with provider {self.provider_id}"
        )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: customer={self.customer_id}, provider={self.provider_id}, "
            f"start={self.scheduled_start}, status={self.status}, v={self.version}>"
        )

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_STATUSES

    @property
    def is_committed(self) -> bool:
        return self.status_enum in COMMITTED_STATUSES

    @property
    def is_funded(self) -> bool:
        """True once the ledger has confirmed a deposit for this booking."""
        return self.escrow is not None and self.escrow.status != "none"


class BookingTransition(Base):
    """Immutable history row for one accepted status change."""

    __tablename__ = "booking_transitions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Equals the booking version produced by this transition
    sequence = Column(Integer, nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor_role = Column(String(20), nullable=False)
    actor_id = Column(String(64), nullable=True)
    auto = Column(Boolean, nullable=False, default=False)
    triggering_event_id = Column(String(160), nullable=True)
    reason = Column(Text, nullable=True)
    occurred_at = Column(UTCDateTime(), nullable=False, default=_now_utc)

    booking = relationship("Booking", back_populates="transitions")

    __table_args__ = (Index("uq_booking_transitions_seq", "booking_id", "sequence", unique=True),)
