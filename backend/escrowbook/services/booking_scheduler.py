# backend/escrowbook/services/booking_scheduler.py
"""
Booking Scheduler

Time-driven side of the booking lifecycle. Each tick:

(a) confirmed bookings whose start has passed move to in_progress
(b) in_progress bookings past end + grace are completed. Free bookings
    complete directly; funded bookings request escrow completion and wait
    for the ledger event
(c) confirmed bookings entering the reminder window get one reminder event
(d) completion calls the ledger has not confirmed in time are reported

Every booking is handled on its own. StaleVersion means another actor got
there first and is skipped; any other failure is logged and the batch goes
on. Ticks are safe to repeat.
"""

from dataclasses import dataclass, field
from datetime import timedelta
import logging
import time
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    ChainCallFailed,
    DomainException,
    InsufficientPermission,
    RepositoryException,
    StaleVersion,
)
from ..core.periodic import PeriodicRunner
from ..database import SessionLocal
from ..events.booking_events import BookingReminderDue
from ..events.publisher import EventPublisher
from ..integrations.escrow_ledger_client import EscrowLedgerClient
from ..models.booking import Booking, BookingStatus
from ..models.escrow import EscrowStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .booking_state_machine import BookingStateMachine
from .cache_service import CacheService, get_cache_service
from .escrow_service import EscrowService

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    started: int = 0
    completed: int = 0
    completion_requested: int = 0
    reminders: int = 0
    stale_completions: int = 0
    skipped: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class BookingScheduler:
    """Single owned scheduler instance with explicit start/stop."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Optional[Clock] = None,
        escrow_client: Optional[EscrowLedgerClient] = None,
        cache: Optional[CacheService] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or system_clock
        self.escrow_client = escrow_client
        self.cache = cache or get_cache_service()
        self._runner = PeriodicRunner(
            "booking-scheduler",
            self.tick,
            interval_seconds or settings.scheduler_tick_seconds,
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    def start(self) -> None:
        self._runner.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._runner.stop(timeout)

    @property
    def running(self) -> bool:
        return self._runner.running

    def tick(self) -> TickResult:
        started_at = time.monotonic()
        result = TickResult()
        db = self._session_factory()
        try:
            state_machine = BookingStateMachine(db, clock=self.clock, cache=self.cache)
            self._start_due(db, state_machine, result)
            self._complete_due(db, state_machine, result)
            self._send_reminders(db, result)
            self._report_stale_completions(db, result)
        finally:
            db.close()
            prometheus_metrics.observe_scheduler_tick(time.monotonic() - started_at)

        self.logger.info(
            "Scheduler tick finished",
            extra={
                "started": result.started,
                "completed": result.completed,
                "completion_requested": result.completion_requested,
                "reminders": result.reminders,
                "stale_completions": result.stale_completions,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
        return result

    # (a)
    def _start_due(self, db: Session, state_machine: BookingStateMachine, result: TickResult) -> None:
        repo = RepositoryFactory.create_booking_repository(db)
        for booking in repo.get_due_to_start(self.clock.now()):
            if self._advance(state_machine, booking, BookingStatus.IN_PROGRESS, "start", result):
                result.started += 1

    # (b)
    def _complete_due(
        self, db: Session, state_machine: BookingStateMachine, result: TickResult
    ) -> None:
        repo = RepositoryFactory.create_booking_repository(db)
        escrow_repo = RepositoryFactory.create_escrow_repository(db)
        cutoff = self.clock.now() - timedelta(minutes=settings.completion_grace_minutes)

        for booking in repo.get_due_to_complete(cutoff):
            escrow = escrow_repo.get_for_booking(booking.id)
            if escrow is not None and escrow.status == EscrowStatus.FUNDED.value:
                self._request_escrow_completion(db, booking, escrow.pending_operation, result)
                continue
            if self._advance(state_machine, booking, BookingStatus.COMPLETED, "complete", result):
                result.completed += 1

    def _request_escrow_completion(
        self,
        db: Session,
        booking: Booking,
        pending_operation: Optional[str],
        result: TickResult,
    ) -> None:
        if pending_operation == "complete":
            result.skipped += 1
            prometheus_metrics.record_scheduler_booking("complete", "skipped")
            return
        try:
            EscrowService(db, client=self.escrow_client, clock=self.clock).complete(
                str(booking.id), Actor.scheduler()
            )
        except InsufficientPermission as exc:
            # Expected until the ledger grants completion to the platform signer
            result.skipped += 1
            prometheus_metrics.record_scheduler_booking("complete", "denied")
            self.logger.info(
                "Escrow completion awaits the customer",
                extra={"booking_id": booking.id, "reason": exc.message},
            )
            return
        except ChainCallFailed as exc:
            result.failed += 1
            result.errors[str(booking.id)] = exc.message
            prometheus_metrics.record_scheduler_booking("complete", "failed")
            self.logger.error(
                "Escrow completion call failed",
                extra={"booking_id": booking.id, "error": exc.message},
            )
            return
        result.completion_requested += 1
        prometheus_metrics.record_scheduler_booking("complete", "escrow_requested")

    # (c)
    def _send_reminders(self, db: Session, result: TickResult) -> None:
        repo = RepositoryFactory.create_booking_repository(db)
        publisher = EventPublisher(RepositoryFactory.create_event_outbox_repository(db))
        now = self.clock.now()
        window_start = now + timedelta(minutes=settings.reminder_window_start_minutes)
        window_end = now + timedelta(minutes=settings.reminder_window_end_minutes)

        for booking in repo.get_needing_reminder(window_start, window_end):
            try:
                if not repo.mark_reminder_sent(booking.id, now):
                    db.rollback()
                    continue
                publisher.publish(
                    BookingReminderDue(
                        booking_id=str(booking.id),
                        provider_id=str(booking.provider_id),
                        customer_id=str(booking.customer_id),
                        scheduled_start=booking.scheduled_start,
                    ),
                    aggregate_id=str(booking.id),
                    at=now,
                )
                db.commit()
            except Exception as exc:
                db.rollback()
                result.failed += 1
                result.errors[str(booking.id)] = str(exc)
                prometheus_metrics.record_scheduler_booking("reminder", "failed")
                self.logger.error(
                    "Failed to queue booking reminder",
                    extra={"booking_id": booking.id, "error": str(exc)},
                )
                continue
            result.reminders += 1
            prometheus_metrics.record_scheduler_booking("reminder", "advanced")

    # (d)
    def _report_stale_completions(self, db: Session, result: TickResult) -> None:
        repo = RepositoryFactory.create_booking_repository(db)
        older_than = self.clock.now() - timedelta(minutes=settings.completion_stale_minutes)
        for booking in repo.get_stale_completions(older_than):
            result.stale_completions += 1
            self.logger.warning(
                "Escrow completion submitted but not confirmed",
                extra={
                    "booking_id": booking.id,
                    "tx_ref": booking.escrow.pending_tx_ref if booking.escrow else None,
                    "pending_since": (
                        booking.escrow.pending_since.isoformat()
                        if booking.escrow and booking.escrow.pending_since
                        else None
                    ),
                },
            )

    def _advance(
        self,
        state_machine: BookingStateMachine,
        booking: Booking,
        target: BookingStatus,
        step: str,
        result: TickResult,
    ) -> bool:
        try:
            transition = state_machine.apply_transition(
                str(booking.id), target, Actor.scheduler(), int(booking.version)
            )
        except StaleVersion:
            result.skipped += 1
            prometheus_metrics.record_scheduler_booking(step, "skipped")
            return False
        except (DomainException, RepositoryException) as exc:
            result.failed += 1
            result.errors[str(booking.id)] = str(exc)
            prometheus_metrics.record_scheduler_booking(step, "failed")
            self.logger.warning(
                "Scheduler could not advance booking",
                extra={"booking_id": booking.id, "target": target.value, "error": str(exc)},
            )
            return False
        outcome = "advanced" if transition.changed else "skipped"
        prometheus_metrics.record_scheduler_booking(step, outcome)
        if not transition.changed:
            result.skipped += 1
        return transition.changed
