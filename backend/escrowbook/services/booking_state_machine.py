# backend/escrowbook/services/booking_state_machine.py
"""
Booking State Machine

The only writer of booking status. Every change goes through
``apply_transition`` which:

- Treats a request for the current status as a no-op
- Rejects a stale ``expected_version`` with StaleVersion
- Rejects edges outside the lifecycle table with InvalidTransition
- Rejects actors the edge does not allow with InsufficientPermission
- Bumps the version with a compare-and-set update, appends a history row
  and queues a ``booking.status_changed`` outbox event in one transaction

Funded bookings only reach completed or cancelled on the strength of a
confirmed ledger event, so those edges are reserved for the ledger actor
while escrow holds funds.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import ActorRole
from ..core.exceptions import (
    InsufficientPermission,
    InvalidTransition,
    NotFoundException,
    StaleVersion,
)
from ..events.booking_events import BookingStatusChanged
from ..events.publisher import EventPublisher
from ..models.booking import SLOT_HOLDING_STATUSES, Booking, BookingStatus
from ..models.escrow import EscrowStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .cache_service import CacheService, get_cache_service

logger = logging.getLogger(__name__)

S = BookingStatus
R = ActorRole

# (from, to) -> roles allowed to request the edge
TRANSITIONS: Dict[Tuple[BookingStatus, BookingStatus], FrozenSet[ActorRole]] = {
    (S.PENDING, S.CONFIRMED): frozenset({R.PROVIDER}),
    (S.PENDING, S.REJECTED): frozenset({R.PROVIDER}),
    (S.PENDING, S.CANCELLED): frozenset({R.CUSTOMER, R.ADMIN, R.LEDGER}),
    (S.PENDING_PAYMENT, S.PAID): frozenset({R.LEDGER}),
    (S.PENDING_PAYMENT, S.CANCELLED): frozenset({R.CUSTOMER, R.ADMIN, R.LEDGER}),
    (S.PAID, S.CONFIRMED): frozenset({R.PROVIDER, R.LEDGER}),
    (S.PAID, S.CANCELLED): frozenset({R.LEDGER}),
    (S.CONFIRMED, S.IN_PROGRESS): frozenset({R.SCHEDULER, R.LEDGER}),
    (S.CONFIRMED, S.CANCELLED): frozenset({R.ADMIN, R.LEDGER}),
    (S.IN_PROGRESS, S.COMPLETED): frozenset({R.SCHEDULER, R.LEDGER}),
    (S.IN_PROGRESS, S.CANCELLED): frozenset({R.ADMIN, R.LEDGER}),
}

# Edges that move money once escrow holds funds
SETTLEMENT_TARGETS: FrozenSet[BookingStatus] = frozenset({S.COMPLETED, S.CANCELLED})


def allowed_targets(status: BookingStatus) -> FrozenSet[BookingStatus]:
    return frozenset(target for (source, target) in TRANSITIONS if source == status)


def is_valid_walk(statuses: Iterable[BookingStatus]) -> bool:
    """True if consecutive statuses are all lifecycle edges."""
    sequence = list(statuses)
    return all((a, b) in TRANSITIONS for a, b in zip(sequence, sequence[1:]))


@dataclass
class TransitionResult:
    booking: Booking
    previous_status: BookingStatus
    new_status: BookingStatus
    changed: bool

    @property
    def version(self) -> int:
        return int(self.booking.version)

    @property
    def touches_slot(self) -> bool:
        return self.changed and (
            self.previous_status in SLOT_HOLDING_STATUSES
            or self.new_status in SLOT_HOLDING_STATUSES
        )


class BookingStateMachine(BaseService):
    """Validates and applies booking status transitions."""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        cache: Optional[CacheService] = None,
    ):
        super().__init__(db, clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.escrow_repository = RepositoryFactory.create_escrow_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        self.cache = cache or get_cache_service()

    @BaseService.measure_operation("apply_transition")
    def apply_transition(
        self,
        booking_id: str,
        target: BookingStatus,
        actor: Actor,
        expected_version: int,
        *,
        triggering_event_id: Optional[str] = None,
        reason: Optional[str] = None,
        ledger_tx_ref: Optional[str] = None,
    ) -> TransitionResult:
        """Apply one transition in its own transaction."""
        with self.transaction():
            result = self.apply_in_transaction(
                booking_id,
                target,
                actor,
                expected_version,
                triggering_event_id=triggering_event_id,
                reason=reason,
                ledger_tx_ref=ledger_tx_ref,
            )
        self.after_commit(result)
        return result

    def apply_in_transaction(
        self,
        booking_id: str,
        target: BookingStatus,
        actor: Actor,
        expected_version: int,
        *,
        triggering_event_id: Optional[str] = None,
        reason: Optional[str] = None,
        ledger_tx_ref: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply a transition inside a transaction owned by the caller.

        The caller must commit and then call ``after_commit`` with the result.
        """
        target = BookingStatus(target)
        booking = self.booking_repository.get_by_id_fresh(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")

        current = booking.status_enum
        if current == target:
            return TransitionResult(booking, current, target, changed=False)

        if booking.version != expected_version:
            prometheus_metrics.record_transition_rejected("stale_version")
            raise StaleVersion(booking_id, expected_version, int(booking.version))

        if (current, target) not in TRANSITIONS:
            prometheus_metrics.record_transition_rejected("invalid_transition")
            raise InvalidTransition(booking_id, current.value, target.value)

        now = self.clock.now()
        self._authorize(booking, current, target, actor)
        self._check_timing(booking, current, target, actor, now)

        values = {
            "status": target.value,
            "auto_transition": actor.role.is_automated,
            "updated_at": now,
        }
        if ledger_tx_ref:
            values["ledger_tx_ref"] = ledger_tx_ref
        if target == S.COMPLETED:
            values["completed_at"] = now
        if target == S.CANCELLED:
            values["cancelled_at"] = now
            if reason:
                values["cancellation_reason"] = reason

        if not self.booking_repository.compare_and_set_status(booking_id, expected_version, values):
            fresh = self.booking_repository.get_by_id_fresh(booking_id)
            actual = int(fresh.version) if fresh is not None else -1
            prometheus_metrics.record_transition_rejected("stale_version")
            raise StaleVersion(booking_id, expected_version, actual)

        new_version = expected_version + 1
        self.booking_repository.add_transition(
            booking_id=booking_id,
            sequence=new_version,
            from_status=current.value,
            to_status=target.value,
            actor_role=actor.role.value,
            actor_id=actor.id,
            auto=actor.role.is_automated,
            triggering_event_id=triggering_event_id,
            reason=reason,
            occurred_at=now,
        )
        self.publisher.publish(
            BookingStatusChanged(
                booking_id=booking_id,
                previous_status=current.value,
                new_status=target.value,
                actor=actor.label,
                occurred_at=now,
                version=new_version,
                triggering_event_id=triggering_event_id,
            ),
            aggregate_id=booking_id,
            at=now,
        )
        self.db.refresh(booking)
        prometheus_metrics.record_transition(current.value, target.value, actor.role.value)
        self.logger.info(
            "Booking transition applied",
            extra={
                "booking_id": booking_id,
                "from_status": current.value,
                "to_status": target.value,
                "actor": actor.label,
                "version": new_version,
                "triggering_event_id": triggering_event_id,
            },
        )
        return TransitionResult(booking, current, target, changed=True)

    def after_commit(self, result: TransitionResult) -> None:
        """Drop cached month availability when a slot was taken or released."""
        if result.touches_slot:
            self.cache.invalidate_provider_availability(str(result.booking.provider_id))

    def _authorize(
        self,
        booking: Booking,
        current: BookingStatus,
        target: BookingStatus,
        actor: Actor,
    ) -> None:
        allowed = TRANSITIONS[(current, target)]
        details = {
            "booking_id": booking.id,
            "from_status": current.value,
            "to_status": target.value,
            "actor": actor.role.value,
        }
        if actor.role not in allowed:
            prometheus_metrics.record_transition_rejected("insufficient_permission")
            raise InsufficientPermission(
                f"{actor.role.value} may not move a booking from {current.value} to {target.value}",
                details=details,
            )

        if actor.role == R.PROVIDER and not actor.is_party(booking.provider_id):
            prometheus_metrics.record_transition_rejected("insufficient_permission")
            raise InsufficientPermission("Only the booking's provider may do this", details=details)
        if actor.role == R.CUSTOMER and not actor.is_party(booking.customer_id):
            prometheus_metrics.record_transition_rejected("insufficient_permission")
            raise InsufficientPermission("Only the booking's customer may do this", details=details)

        escrow = self.escrow_repository.get_for_booking(booking.id)
        funded = escrow is not None and escrow.status == EscrowStatus.FUNDED.value
        if funded and target in SETTLEMENT_TARGETS and actor.role != R.LEDGER:
            prometheus_metrics.record_transition_rejected("insufficient_permission")
            raise InsufficientPermission(
                "Funded bookings settle only through a confirmed escrow ledger event",
                details=details,
            )

    def _check_timing(
        self,
        booking: Booking,
        current: BookingStatus,
        target: BookingStatus,
        actor: Actor,
        now: datetime,
    ) -> None:
        # Ledger events report what already happened on chain
        if actor.role != R.SCHEDULER:
            return
        if target == S.IN_PROGRESS and now < booking.scheduled_start:
            raise InvalidTransition(
                booking.id, current.value, target.value, reason="Booking has not started yet"
            )
        if target == S.COMPLETED:
            due = booking.scheduled_end + timedelta(minutes=settings.completion_grace_minutes)
            if now < due:
                raise InvalidTransition(
                    booking.id,
                    current.value,
                    target.value,
                    reason="Completion grace period has not elapsed",
                )
