# backend/escrowbook/services/booking_service.py
"""
Booking Service for the escrow booking core

Handles all booking-related business logic including:
- Creating bookings with a commit-time slot recheck under the provider lock
- Provider accept/decline and customer/admin cancellation
- Routing money-moving actions through the escrow adapter
- Booking reads with party-only visibility
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.booking_lock import provider_slot_lock
from ..core.clock import Clock
from ..core.enums import ActorRole, LedgerOperation, SlotUnavailableReason
from ..core.exceptions import (
    BusinessRuleException,
    ChainCallFailed,
    InsufficientPermission,
    NotFoundException,
    SlotUnavailable,
    StaleVersion,
    ValidationException,
)
from ..core.timezone_utils import utc_to_local
from ..events.booking_events import BookingStatusChanged
from ..events.publisher import EventPublisher
from ..integrations.escrow_ledger_client import EscrowLedgerClient
from ..models.booking import Booking, BookingStatus, BookingTransition
from ..models.escrow import EscrowRecord, EscrowStatus
from ..models.offering import Offering
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import BookingCreate
from .availability_service import AvailabilityService
from .base import BaseService
from .booking_state_machine import BookingStateMachine
from .cache_service import CacheService, get_cache_service
from .calendar_service import CalendarService
from .conflict_checker import ConflictChecker, Interval, overlaps
from .escrow_service import EscrowService, PendingTransaction

logger = logging.getLogger(__name__)


@dataclass
class BookingActionResult:
    booking: Booking
    pending_transaction: Optional[PendingTransaction] = None


class BookingService(BaseService):
    """Service layer for booking operations."""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        escrow_client: Optional[EscrowLedgerClient] = None,
        calendar_service: Optional[CalendarService] = None,
        cache: Optional[CacheService] = None,
    ):
        super().__init__(db, clock)
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.escrow_repository = RepositoryFactory.create_escrow_repository(db)
        self.publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        self.cache = cache or get_cache_service()
        self.calendar_service = calendar_service or CalendarService()
        self.availability = AvailabilityService(
            db, clock=self.clock, calendar_service=self.calendar_service, cache=self.cache
        )
        self.conflict_checker = ConflictChecker(db, clock=self.clock)
        self.state_machine = BookingStateMachine(db, clock=self.clock, cache=self.cache)
        self._escrow_client = escrow_client
        self._escrow_service: Optional[EscrowService] = None

    @property
    def escrow_service(self) -> EscrowService:
        if self._escrow_service is None:
            self._escrow_service = EscrowService(
                self.db, client=self._escrow_client, clock=self.clock
            )
        return self._escrow_service

    # Creation

    @BaseService.measure_operation("create_booking")
    def create_booking(self, data: BookingCreate, actor: Actor) -> BookingActionResult:
        """
        Create a booking for the calling customer.

        The slot is rechecked against the live booking table while holding
        the provider lock, so two requests for the same slot cannot both
        commit. Priced bookings start in pending_payment with an escrow
        record; free bookings start in pending.
        """
        if actor.role != ActorRole.CUSTOMER or not actor.id:
            raise InsufficientPermission("Only customers can create bookings")

        offering = self.availability.get_offering(data.offering_id)
        if not offering.is_active:
            raise ValidationException(
                "This offering is not accepting bookings", code="OFFERING_INACTIVE"
            )
        provider_id = str(offering.provider_id)
        if actor.id == provider_id:
            raise InsufficientPermission("Providers cannot book their own offering")

        start = data.scheduled_start
        end = start + timedelta(minutes=int(offering.duration_minutes))
        local_date = utc_to_local(start, offering.timezone).date()
        windows = self.availability.schedule_windows(offering, local_date)
        self._check_grid(offering, start, windows)

        # External calendars are slow and advisory; check them before taking the lock
        busy = self.calendar_service.get_busy_intervals(
            provider_id, start, end, fallback_timezone=offering.timezone, use_cache=False
        )
        if any(overlaps((start, end), b.interval) for b in busy):
            raise SlotUnavailable(
                "The provider is busy at this time",
                reason="calendar_conflict",
            )

        with provider_slot_lock(provider_id):
            with self.transaction():
                self.conflict_checker.recheck_slot(offering, start, end, windows)
                booking = self._insert_booking(offering, actor, start)

        self.cache.invalidate_provider_availability(provider_id)
        self.log_operation(
            "create_booking",
            booking_id=booking.id,
            provider_id=provider_id,
            customer_id=actor.id,
            status=booking.status,
        )

        pending: Optional[PendingTransaction] = None
        if offering.is_priced and data.auto_deposit:
            try:
                pending = self.escrow_service.deposit(str(booking.id), actor)
            except ChainCallFailed as exc:
                # Booking stays in pending_payment; the deposit can be retried
                self.logger.warning(
                    "Deposit submission failed after booking creation",
                    extra={"booking_id": booking.id, "error": exc.message},
                )

        return BookingActionResult(self._reload(str(booking.id)), pending)

    def _check_grid(
        self, offering: Offering, start: datetime, windows: Sequence[Interval]
    ) -> None:
        step = timedelta(minutes=int(offering.duration_minutes))
        for window_start, window_end in windows:
            if window_start <= start < window_end and (start - window_start) % step == timedelta(0):
                return
        if any(w_start <= start < w_end for w_start, w_end in windows):
            raise ValidationException(
                "Bookings must start on the offering's slot grid",
                code="SLOT_NOT_ALIGNED",
                details={"scheduled_start": start.isoformat()},
            )
        raise SlotUnavailable(
            "This slot is outside the provider's service hours", reason="no_service_hours"
        )

    def _insert_booking(self, offering: Offering, actor: Actor, start: datetime) -> Booking:
        now = self.clock.now()
        status = BookingStatus.PENDING_PAYMENT if offering.is_priced else BookingStatus.PENDING
        booking = Booking(
            offering_id=offering.id,
            provider_id=offering.provider_id,
            customer_id=actor.id,
            scheduled_start=start,
            duration_minutes=offering.duration_minutes,
            buffer_minutes=offering.buffer_minutes,
            status=status.value,
            version=1,
            auto_transition=False,
            created_at=now,
            updated_at=now,
        )
        self.repository.add(booking)

        self.repository.add_transition(
            booking_id=booking.id,
            sequence=1,
            from_status=None,
            to_status=status.value,
            actor_role=actor.role.value,
            actor_id=actor.id,
            auto=False,
            occurred_at=now,
        )
        if offering.is_priced:
            self.escrow_repository.add(
                EscrowRecord(
                    booking_id=booking.id,
                    status=EscrowStatus.NONE.value,
                    amount=offering.price,
                    platform_fee_fraction=offering.platform_fee_fraction,
                )
            )
        self.publisher.publish(
            BookingStatusChanged(
                booking_id=str(booking.id),
                previous_status=None,
                new_status=status.value,
                actor=actor.label,
                occurred_at=now,
                version=1,
            ),
            aggregate_id=str(booking.id),
            at=now,
        )
        self.db.flush()
        return booking

    # Reads

    def get_booking(self, booking_id: str, actor: Actor) -> Booking:
        booking = self._reload(booking_id)
        self._ensure_visible(booking, actor)
        return booking

    def get_history(self, booking_id: str, actor: Actor) -> List[BookingTransition]:
        self.get_booking(booking_id, actor)
        return self.repository.get_history(booking_id)

    def list_bookings(self, actor: Actor, statuses: Optional[List[BookingStatus]] = None) -> List[Booking]:
        if not actor.id:
            return []
        return self.repository.list_for_party(actor.id, statuses)

    # Actions

    @BaseService.measure_operation("accept_booking")
    def accept_booking(self, booking_id: str, actor: Actor, expected_version: int) -> BookingActionResult:
        """
        Provider confirms a booking.

        A pending booking is checked against every other slot-holding booking
        of the provider before it is confirmed.
        """
        booking = self._reload(booking_id)
        with provider_slot_lock(str(booking.provider_id)):
            with self.transaction():
                result = self.state_machine.apply_in_transaction(
                    booking_id, BookingStatus.CONFIRMED, actor, expected_version
                )
                if result.changed and result.previous_status == BookingStatus.PENDING:
                    self._ensure_slot_still_free(result.booking)
        self.state_machine.after_commit(result)
        return BookingActionResult(result.booking)

    def _ensure_slot_still_free(self, booking: Booking) -> None:
        conflicts = self.conflict_checker.find_conflicts(
            str(booking.provider_id),
            booking.scheduled_start,
            booking.scheduled_end,
            int(booking.buffer_minutes or 0),
            exclude_booking_id=str(booking.id),
        )
        if conflicts:
            raise SlotUnavailable(
                reason=SlotUnavailableReason.BOOKED.value,
                details={"booking_id": booking.id, "conflicting_booking_id": conflicts[0].id},
            )

    @BaseService.measure_operation("decline_booking")
    def decline_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> BookingActionResult:
        """
        Provider declines a booking.

        An unfunded pending booking is rejected directly. A paid booking is
        refunded through emergency cancellation and becomes cancelled only
        once the ledger confirms it.
        """
        booking = self._reload(booking_id)
        if booking.status_enum == BookingStatus.PAID:
            if actor.role != ActorRole.PROVIDER or not actor.is_party(booking.provider_id):
                raise InsufficientPermission("Only the booking's provider may decline it")
            self._check_version(booking, expected_version)
            pending = self.escrow_service.emergency_cancel(
                booking_id, actor, reason=reason or "declined by provider"
            )
            return BookingActionResult(self._reload(booking_id), pending)

        result = self.state_machine.apply_transition(
            booking_id, BookingStatus.REJECTED, actor, expected_version, reason=reason
        )
        return BookingActionResult(result.booking)

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
    ) -> BookingActionResult:
        """
        Cancel a booking.

        Unfunded bookings are cancelled directly when the actor may do so.
        Funded bookings go through emergency cancellation; their status only
        changes when the refund event arrives.
        """
        booking = self._reload(booking_id)
        escrow = self.escrow_repository.get_for_booking(booking_id)
        if escrow is not None and escrow.status == EscrowStatus.FUNDED.value and not booking.is_terminal:
            self._check_version(booking, expected_version)
            pending = self.escrow_service.emergency_cancel(booking_id, actor, reason=reason)
            return BookingActionResult(self._reload(booking_id), pending)
        if (
            escrow is not None
            and booking.status_enum == BookingStatus.PENDING_PAYMENT
            and escrow.pending_operation == LedgerOperation.DEPOSIT.value
        ):
            # Funds may still land; cancel through the ledger once they do
            raise BusinessRuleException(
                "A deposit for this booking is still being confirmed",
                code="DEPOSIT_IN_FLIGHT",
                details={"booking_id": booking_id, "tx_ref": escrow.pending_tx_ref},
            )

        result = self.state_machine.apply_transition(
            booking_id, BookingStatus.CANCELLED, actor, expected_version, reason=reason
        )
        return BookingActionResult(result.booking)

    @BaseService.measure_operation("complete_booking")
    def complete_booking(self, booking_id: str, actor: Actor) -> BookingActionResult:
        """Ask the ledger to release escrow; the booking completes on confirmation."""
        self.get_booking(booking_id, actor)
        pending = self.escrow_service.complete(booking_id, actor)
        return BookingActionResult(self._reload(booking_id), pending)

    @BaseService.measure_operation("submit_deposit")
    def submit_deposit(
        self, booking_id: str, actor: Actor, amount: Optional[Decimal] = None
    ) -> BookingActionResult:
        pending = self.escrow_service.deposit(booking_id, actor, amount=amount)
        return BookingActionResult(self._reload(booking_id), pending)

    # Helpers

    def _reload(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id_fresh(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        # Escrow relationship is read by responses; make sure it is current
        self.escrow_repository.get_for_booking(booking_id)
        return booking

    def _ensure_visible(self, booking: Booking, actor: Actor) -> None:
        if actor.role == ActorRole.ADMIN:
            return
        if actor.is_party(booking.customer_id) or actor.is_party(booking.provider_id):
            return
        raise InsufficientPermission(
            "You do not have access to this booking", details={"booking_id": booking.id}
        )

    def _check_version(self, booking: Booking, expected_version: int) -> None:
        if int(booking.version) != expected_version:
            raise StaleVersion(str(booking.id), expected_version, int(booking.version))
