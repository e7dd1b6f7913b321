# backend/escrowbook/models/offering.py
"""
Offering and its weekly schedule.

An offering belongs to one provider and carries a strongly-typed weekly
window set (one row per weekday) plus date-keyed exceptions that disable
or override a single date. Times are wall-clock times in the offering's
timezone.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import ulid

from ..database import Base
from .types import UTCDateTime


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Offering(Base):
    """A bookable service published by a provider."""

    __tablename__ = "offerings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    provider_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    duration_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=15)
    min_lead_minutes = Column(Integer, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")

    # Zero price means a free offering that never touches escrow
    price = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    platform_fee_fraction = Column(Numeric(5, 4), nullable=False, default=Decimal("0.1000"))

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime(), nullable=False, default=_now_utc)
    updated_at = Column(UTCDateTime(), nullable=False, default=_now_utc, onupdate=_now_utc)

    schedule_days = relationship(
        "OfferingScheduleDay",
        back_populates="offering",
        cascade="all, delete-orphan",
        order_by="OfferingScheduleDay.weekday",
    )
    schedule_exceptions = relationship(
        "OfferingScheduleException",
        back_populates="offering",
        cascade="all, delete-orphan",
        order_by="OfferingScheduleException.exception_date",
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_offerings_duration_positive"),
        CheckConstraint("buffer_minutes >= 0", name="ck_offerings_buffer_non_negative"),
        CheckConstraint("price >= 0", name="ck_offerings_price_non_negative"),
        CheckConstraint(
            "platform_fee_fraction >= 0 AND platform_fee_fraction < 1",
            name="ck_offerings_fee_fraction_range",
        ),
    )

    @property
    def is_priced(self) -> bool:
        return self.price is not None and Decimal(self.price) > 0

    def __repr__(self) -> str:
        return (
            f"<Offering {self.id}: provider={self.provider_id}, "
            f"duration={self.duration_minutes}m, price={self.price}>"
        )


class OfferingScheduleDay(Base):
    """Recurring window for one weekday (0=Monday)."""

    __tablename__ = "offering_schedule_days"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    offering_id = Column(
        String(26), ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    weekday = Column(Integer, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    offering = relationship("Offering", back_populates="schedule_days")

    __table_args__ = (
        UniqueConstraint("offering_id", "weekday", name="uq_offering_schedule_day"),
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_schedule_day_weekday"),
    )


class OfferingScheduleException(Base):
    """
    Date-specific override.

    ``enabled=False`` disables the date entirely. ``enabled=True`` with a
    start/end replaces the weekday window for that date.
    """

    __tablename__ = "offering_schedule_exceptions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    offering_id = Column(
        String(26), ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exception_date = Column(Date, nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    reason = Column(String(255), nullable=True)

    offering = relationship("Offering", back_populates="schedule_exceptions")

    __table_args__ = (
        UniqueConstraint("offering_id", "exception_date", name="uq_offering_schedule_exception"),
    )
