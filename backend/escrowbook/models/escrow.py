# backend/escrowbook/models/escrow.py
"""Local mirror of the ledger-side escrow for a priced booking."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import Column, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import relationship

from ..database import Base
from .types import UTCDateTime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EscrowStatus(str, Enum):
    NONE = "none"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class EscrowRecord(Base):
    """
    Escrow state as last confirmed by the ledger.

    Only the event monitor moves ``status``. The ``pending_*`` columns record
    the most recent call submitted by this service that the ledger has not
    confirmed yet.
    """

    __tablename__ = "escrow_records"

    booking_id = Column(String(26), ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True)
    status = Column(String(20), nullable=False, default=EscrowStatus.NONE.value, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee_fraction = Column(Numeric(5, 4), nullable=False, default=Decimal("0"))

    # Idempotent replay guard: key of the last ledger event applied
    last_event_id = Column(String(160), nullable=True)
    funded_tx_ref = Column(String(128), nullable=True)

    pending_operation = Column(String(32), nullable=True)
    pending_tx_ref = Column(String(128), nullable=True)
    pending_since = Column(UTCDateTime(), nullable=True)

    # Settlement breakdown reported by the ledger
    released_amount = Column(Numeric(12, 2), nullable=True)
    platform_fee_amount = Column(Numeric(12, 2), nullable=True)
    refunded_amount = Column(Numeric(12, 2), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime(), nullable=False, default=_now_utc, onupdate=_now_utc)

    booking = relationship("Booking", back_populates="escrow")

    def mark_pending(self, operation: str, tx_ref: str, at: datetime) -> None:
        self.pending_operation = operation
        self.pending_tx_ref = tx_ref
        self.pending_since = at

    def clear_pending(self) -> None:
        self.pending_operation = None
        self.pending_tx_ref = None
        self.pending_since = None
