# backend/escrowbook/services/ledger_event_monitor.py
"""
Ledger Event Monitor

Reconciles local booking state with confirmed escrow outcomes. Each poll:

1. Pages contract events from the gateway starting after the durable
   cursor, records them in the ledger event log (insert-or-ignore on
   tx_ref + log_index) and advances the cursor in the same transaction
2. Processes open events in ledger emission order, one transaction per
   event: update the escrow mirror, then drive the booking to the status
   the event implies with actor = ledger

Events for one booking are applied strictly in order. If one of them has
to wait (stale version or database trouble), later events for that booking
wait too; other bookings proceed. Unknown bookings and malformed events are
logged and dropped.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.enums import LedgerEventKind
from ..core.exceptions import (
    ChainCallFailed,
    EventUnresolvable,
    InsufficientPermission,
    InvalidTransition,
    RepositoryException,
    ServiceException,
    StaleVersion,
)
from ..core.periodic import PeriodicRunner
from ..database import SessionLocal
from ..integrations.escrow_ledger_client import EscrowLedgerClient
from ..models.booking import BookingStatus
from ..models.escrow import EscrowRecord, EscrowStatus
from ..models.ledger_event import LedgerEvent, LedgerEventStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .booking_state_machine import BookingStateMachine, TransitionResult
from .cache_service import CacheService, get_cache_service
from .escrow_service import build_ledger_client

logger = logging.getLogger(__name__)

# Forward path a completion event walks when earlier steps never happened
_COMPLETION_PATH = [
    BookingStatus.PAID,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
]

# Outcome for events that stay open for the next poll
_DEFERRED = "deferred"


@dataclass
class PollResult:
    fetched: int = 0
    recorded: int = 0
    cursor: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def completion_steps(current: BookingStatus) -> List[BookingStatus]:
    """Statuses a completion event moves through from ``current``."""
    if current in _COMPLETION_PATH:
        return _COMPLETION_PATH[_COMPLETION_PATH.index(current) + 1 :]
    return [BookingStatus.COMPLETED]


class LedgerEventMonitor:
    """Durable consumer of escrow contract events."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client: Optional[EscrowLedgerClient] = None,
        clock: Optional[Clock] = None,
        cache: Optional[CacheService] = None,
        cursor_name: Optional[str] = None,
        batch_size: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self.client = client or build_ledger_client()
        self.clock = clock or system_clock
        self.cache = cache or get_cache_service()
        self.cursor_name = cursor_name or settings.ledger_cursor_name
        self.batch_size = batch_size or settings.ledger_event_batch_size
        self._runner = PeriodicRunner(
            "ledger-event-monitor",
            self.poll_once,
            interval_seconds or settings.ledger_monitor_interval_seconds,
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    # Lifecycle

    def start(self) -> None:
        self._runner.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._runner.stop(timeout)

    @property
    def running(self) -> bool:
        return self._runner.running

    # Polling

    def poll_once(self) -> PollResult:
        """Ingest one page of events and process everything still open."""
        result = PollResult()
        db = self._session_factory()
        try:
            try:
                self._ingest(db, result)
            except ChainCallFailed as exc:
                # Already-recorded events can still be processed
                self.logger.warning(
                    "Ledger event fetch failed",
                    extra={"cursor": self.cursor_name, "error": exc.message},
                )
            self._process_open(db, result)
        finally:
            db.close()

        if result.fetched or result.outcomes:
            self.logger.info(
                "Ledger poll finished",
                extra={
                    "fetched": result.fetched,
                    "recorded": result.recorded,
                    "cursor": result.cursor,
                    "outcomes": result.outcomes,
                },
            )
        return result

    def _ingest(self, db: Session, result: PollResult) -> None:
        repo = RepositoryFactory.create_ledger_event_repository(db)
        cursor = repo.get_cursor(self.cursor_name)
        result.cursor = cursor

        page = self.client.fetch_events(cursor + 1, self.batch_size)
        raw_events = page.get("events") or []
        result.fetched = len(raw_events)
        max_block = cursor

        try:
            for raw in raw_events:
                try:
                    kind = str(raw["kind"])
                    tx_ref = str(raw["tx_ref"])
                    block_number = int(raw["block_number"])
                    log_index = int(raw["log_index"])
                except (KeyError, TypeError, ValueError) as exc:
                    self.logger.warning(
                        "Dropping malformed ledger event",
                        extra={"event": str(raw)[:500], "error": str(exc)},
                    )
                    prometheus_metrics.record_ledger_event("unknown", LedgerEventStatus.DROPPED.value)
                    continue

                max_block = max(max_block, block_number)
                if block_number <= cursor:
                    continue
                booking_id = raw.get("booking_id")
                data = raw.get("data")
                inserted = repo.record(
                    kind=kind,
                    booking_id=str(booking_id) if booking_id is not None else None,
                    tx_ref=tx_ref,
                    block_number=block_number,
                    log_index=log_index,
                    data=data if isinstance(data, dict) else {},
                    received_at=self.clock.now(),
                )
                if inserted:
                    result.recorded += 1

            if len(raw_events) >= self.batch_size:
                # The last block of a full page may continue on the next page
                new_cursor = max(cursor, max_block - 1)
            else:
                latest = page.get("latest_block")
                new_cursor = max(cursor, max_block, int(latest) if latest is not None else cursor)

            repo.save_cursor(self.cursor_name, new_cursor)
            db.commit()
        except Exception:
            db.rollback()
            raise

        result.cursor = new_cursor
        prometheus_metrics.set_ledger_cursor(self.cursor_name, new_cursor)

    def _process_open(self, db: Session, result: PollResult) -> None:
        repo = RepositoryFactory.create_ledger_event_repository(db)
        blocked: Set[str] = set()
        for event in repo.list_open(limit=self.batch_size * 5):
            group = event.booking_id or event.event_key
            if group in blocked:
                continue
            outcome = self.process_event(db, event)
            result.count(outcome)
            if outcome in (LedgerEventStatus.RETRY.value, _DEFERRED):
                blocked.add(group)

    # Per-event processing

    def process_event(self, db: Session, event: LedgerEvent) -> str:
        """Apply one recorded event. Returns the outcome label."""
        repo = RepositoryFactory.create_ledger_event_repository(db)
        booking_repo = RepositoryFactory.create_booking_repository(db)
        escrow_repo = RepositoryFactory.create_escrow_repository(db)
        key = event.event_key

        try:
            kind = LedgerEventKind(event.kind)
        except ValueError:
            return self._drop(db, event, EventUnresolvable(key, f"unknown event kind {event.kind}"))

        booking = booking_repo.get_by_id_fresh(event.booking_id) if event.booking_id else None
        if booking is None:
            return self._drop(db, event, EventUnresolvable(key, "unknown booking"))
        escrow = escrow_repo.get_for_booking(booking.id)
        if escrow is None:
            return self._drop(db, event, EventUnresolvable(key, "booking has no escrow"))

        if escrow.last_event_id == key or self._already_applied(kind, escrow, booking.status_enum):
            return self._finish(db, event, kind, LedgerEventStatus.DUPLICATE)

        state_machine = BookingStateMachine(db, clock=self.clock, cache=self.cache)
        stale_attempts = 0
        while True:
            try:
                results = self._apply(db, state_machine, event, kind)
                break
            except StaleVersion as exc:
                stale_attempts += 1
                if stale_attempts < 2:
                    continue
                self.logger.warning(
                    "Ledger event hit a concurrent update twice; will retry next poll",
                    extra={"event_id": key, "booking_id": event.booking_id, "error": exc.message},
                )
                return self._finish(db, event, kind, LedgerEventStatus.RETRY, error=exc.message)
            except (InvalidTransition, InsufficientPermission) as exc:
                self.logger.warning(
                    "Ledger event does not fit the booking lifecycle; flagged for review",
                    extra={"event_id": key, "booking_id": event.booking_id, "error": exc.message},
                )
                return self._finish(
                    db, event, kind, LedgerEventStatus.FAILED, error=exc.message, mirror=True
                )
            except (ServiceException, RepositoryException) as exc:
                self.logger.error(
                    "Ledger event processing failed; left open",
                    extra={"event_id": key, "booking_id": event.booking_id, "error": str(exc)},
                )
                prometheus_metrics.record_ledger_event(kind.value, _DEFERRED)
                return _DEFERRED
            except EventUnresolvable as exc:
                return self._drop(db, event, exc)

        for transition in results:
            state_machine.after_commit(transition)
        prometheus_metrics.record_ledger_event(kind.value, LedgerEventStatus.PROCESSED.value)
        self.logger.info(
            "Ledger event applied",
            extra={
                "event_id": key,
                "kind": kind.value,
                "booking_id": event.booking_id,
                "transitions": [t.new_status.value for t in results if t.changed],
            },
        )
        return LedgerEventStatus.PROCESSED.value

    def _apply(
        self,
        db: Session,
        state_machine: BookingStateMachine,
        event: LedgerEvent,
        kind: LedgerEventKind,
    ) -> List[TransitionResult]:
        repo = RepositoryFactory.create_ledger_event_repository(db)
        booking_repo = RepositoryFactory.create_booking_repository(db)
        escrow_repo = RepositoryFactory.create_escrow_repository(db)
        actor = Actor.ledger()
        results: List[TransitionResult] = []

        with state_machine.transaction():
            escrow = escrow_repo.get_for_booking(event.booking_id)
            booking = booking_repo.get_by_id_fresh(event.booking_id)
            if escrow is None or booking is None:
                raise EventUnresolvable(event.event_key, "booking or escrow disappeared")
            self._update_mirror(escrow, kind, event)
            db.flush()

            if kind == LedgerEventKind.FUNDED:
                targets = [BookingStatus.PAID]
            elif kind == LedgerEventKind.SERVICE_COMPLETED:
                targets = completion_steps(booking.status_enum)
            else:
                targets = [BookingStatus.CANCELLED]

            for target in targets:
                transition = state_machine.apply_in_transaction(
                    str(booking.id),
                    target,
                    actor,
                    int(booking.version),
                    triggering_event_id=event.event_key,
                    reason=(event.data or {}).get("reason"),
                    ledger_tx_ref=event.tx_ref,
                )
                booking = transition.booking
                results.append(transition)

            repo.mark(event, LedgerEventStatus.PROCESSED, at=self.clock.now())
        return results

    def _already_applied(
        self, kind: LedgerEventKind, escrow: EscrowRecord, status: BookingStatus
    ) -> bool:
        """A different event already produced this outcome (double delivery upstream)."""
        if kind == LedgerEventKind.FUNDED:
            return escrow.status != EscrowStatus.NONE.value and status != BookingStatus.PENDING_PAYMENT
        if kind == LedgerEventKind.SERVICE_COMPLETED:
            return escrow.status == EscrowStatus.RELEASED.value and status == BookingStatus.COMPLETED
        return status == BookingStatus.CANCELLED and escrow.status != EscrowStatus.FUNDED.value

    def _update_mirror(self, escrow: EscrowRecord, kind: LedgerEventKind, event: LedgerEvent) -> None:
        data = event.data or {}
        if kind == LedgerEventKind.FUNDED:
            if escrow.status == EscrowStatus.NONE.value:
                escrow.status = EscrowStatus.FUNDED.value
                escrow.funded_tx_ref = event.tx_ref
            if escrow.pending_operation == "deposit":
                escrow.clear_pending()

        elif kind == LedgerEventKind.SERVICE_COMPLETED:
            if escrow.status == EscrowStatus.FUNDED.value:
                amount = Decimal(escrow.amount)
                fee = _decimal(data.get("platform_fee"))
                if fee is None:
                    fee = (amount * Decimal(escrow.platform_fee_fraction)).quantize(Decimal("0.01"))
                released = _decimal(data.get("provider_amount"))
                escrow.status = EscrowStatus.RELEASED.value
                escrow.platform_fee_amount = fee
                escrow.released_amount = released if released is not None else amount - fee
            escrow.clear_pending()

        else:
            if escrow.status == EscrowStatus.FUNDED.value:
                refunded = _decimal(data.get("customer_amount"))
                escrow.status = EscrowStatus.REFUNDED.value
                escrow.refunded_amount = refunded if refunded is not None else escrow.amount
            escrow.cancellation_reason = data.get("reason") or escrow.cancellation_reason
            escrow.clear_pending()

        escrow.last_event_id = event.event_key
        escrow.updated_at = self.clock.now()

    def _drop(self, db: Session, event: LedgerEvent, error: EventUnresolvable) -> str:
        self.logger.warning(
            "Dropping unresolvable ledger event",
            extra={"event_id": error.event_key, "booking_id": event.booking_id, "reason": error.reason},
        )
        try:
            kind = LedgerEventKind(event.kind)
        except ValueError:
            kind = None
        return self._finish(db, event, kind, LedgerEventStatus.DROPPED, error=error.message)

    def _finish(
        self,
        db: Session,
        event: LedgerEvent,
        kind: Optional[LedgerEventKind],
        status: LedgerEventStatus,
        *,
        error: Optional[str] = None,
        mirror: bool = False,
    ) -> str:
        """Record a terminal (or retry) status for ``event`` in its own transaction."""
        repo = RepositoryFactory.create_ledger_event_repository(db)
        try:
            if mirror and kind is not None and event.booking_id:
                # Keep the confirmed money movement even if the booking cannot follow
                escrow = RepositoryFactory.create_escrow_repository(db).get_for_booking(
                    event.booking_id
                )
                if escrow is not None and escrow.last_event_id != event.event_key:
                    self._update_mirror(escrow, kind, event)
            repo.mark(event, status, error=error, at=self.clock.now())
            db.commit()
        except Exception:
            db.rollback()
            raise
        prometheus_metrics.record_ledger_event(kind.value if kind else event.kind, status.value)
        return status.value

    # Reporting

    def status(self) -> Dict[str, Any]:
        """Cursor position and event log counts."""
        db = self._session_factory()
        try:
            repo = RepositoryFactory.create_ledger_event_repository(db)
            counts = {s.value: repo.count_by_status(s) for s in LedgerEventStatus}
            return {
                "cursor_name": self.cursor_name,
                "cursor": repo.get_cursor(self.cursor_name),
                "running": self.running,
                "events": counts,
                "checked_at": self.clock.now().isoformat(),
            }
        finally:
            db.close()
