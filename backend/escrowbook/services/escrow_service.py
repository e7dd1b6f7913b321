# backend/escrowbook/services/escrow_service.py
"""
Escrow Settlement Service

Issues deposit, complete and emergency-cancel calls against the escrow
ledger and returns a pending-transaction handle. Calls never change booking
status; the ledger event monitor applies the confirmed outcome later.

Authorization is deny-by-default:

- deposit: the booking's customer, while the booking awaits payment
- complete: the booking's customer at any time once funded, or the
  platform signer after scheduled end + grace, and only when the ledger
  has granted completion to the platform
- emergency cancel: a party to the booking or an admin, once funded
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import random
import time
from typing import Any, Callable, Dict, NoReturn, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import ActorRole, LedgerOperation, LedgerSigner
from ..core.exceptions import (
    ChainCallFailed,
    InsufficientPermission,
    NotFoundException,
    ValidationException,
)
from ..integrations.escrow_ledger_client import EscrowLedgerClient
from ..models.booking import Booking, BookingStatus
from ..models.escrow import EscrowRecord, EscrowStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

_COMPLETABLE_STATUSES = frozenset(
    {BookingStatus.PAID, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS}
)


@dataclass
class PendingTransaction:
    """Handle for a ledger call whose outcome has not been observed yet."""

    booking_id: str
    operation: LedgerOperation
    tx_ref: str
    signer: LedgerSigner
    submitted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "operation": self.operation.value,
            "tx_ref": self.tx_ref,
            "signer": self.signer.value,
            "submitted_at": self.submitted_at.isoformat(),
        }


def build_ledger_client() -> EscrowLedgerClient:
    return EscrowLedgerClient(
        base_url=settings.ledger_base_url,
        api_key=settings.ledger_api_key,
        timeout=settings.ledger_timeout_seconds,
    )


class EscrowService(BaseService):
    """Escrow settlement adapter."""

    def __init__(
        self,
        db: Session,
        client: Optional[EscrowLedgerClient] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(db, clock)
        self.client = client or build_ledger_client()
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.escrow_repository = RepositoryFactory.create_escrow_repository(db)
        self._sleep = sleep

    # Operations

    @BaseService.measure_operation("escrow_deposit")
    def deposit(
        self, booking_id: str, actor: Actor, amount: Optional[Decimal] = None
    ) -> PendingTransaction:
        booking, escrow = self._load(booking_id)
        if actor.role != ActorRole.CUSTOMER or not actor.is_party(booking.customer_id):
            self._deny(LedgerOperation.DEPOSIT, booking, actor, "Only the booking's customer may deposit")
        if booking.status_enum != BookingStatus.PENDING_PAYMENT:
            self._deny(
                LedgerOperation.DEPOSIT,
                booking,
                actor,
                f"Deposits are only accepted while pending payment (booking is {booking.status})",
            )
        if escrow.status != EscrowStatus.NONE.value:
            self._deny(LedgerOperation.DEPOSIT, booking, actor, "Escrow is already funded")
        if amount is not None and Decimal(str(amount)) != Decimal(escrow.amount):
            raise ValidationException(
                f"Deposit amount must be {escrow.amount}",
                code="DEPOSIT_AMOUNT_MISMATCH",
                details={"expected": str(escrow.amount), "received": str(amount)},
            )

        return self._submit(
            LedgerOperation.DEPOSIT,
            booking,
            escrow,
            LedgerSigner.CUSTOMER,
            body={"amount": str(escrow.amount)},
        )

    @BaseService.measure_operation("escrow_complete")
    def complete(self, booking_id: str, actor: Actor) -> PendingTransaction:
        booking, escrow = self._load(booking_id)
        if booking.status_enum not in _COMPLETABLE_STATUSES or escrow.status != EscrowStatus.FUNDED.value:
            self._deny(
                LedgerOperation.COMPLETE,
                booking,
                actor,
                "Only funded, active bookings can be completed",
            )
        signer = self._completion_signer(booking, actor)
        return self._submit(LedgerOperation.COMPLETE, booking, escrow, signer)

    @BaseService.measure_operation("escrow_emergency_cancel")
    def emergency_cancel(
        self, booking_id: str, actor: Actor, reason: Optional[str] = None
    ) -> PendingTransaction:
        booking, escrow = self._load(booking_id)
        is_party = (actor.role == ActorRole.CUSTOMER and actor.is_party(booking.customer_id)) or (
            actor.role == ActorRole.PROVIDER and actor.is_party(booking.provider_id)
        )
        if not (is_party or actor.role == ActorRole.ADMIN):
            self._deny(
                LedgerOperation.EMERGENCY_CANCEL,
                booking,
                actor,
                "Only a party to the booking or an admin may cancel it",
            )
        if booking.is_terminal or escrow.status != EscrowStatus.FUNDED.value:
            self._deny(
                LedgerOperation.EMERGENCY_CANCEL,
                booking,
                actor,
                "Emergency cancellation requires funded escrow on an open booking",
            )
        return self._submit(
            LedgerOperation.EMERGENCY_CANCEL,
            booking,
            escrow,
            LedgerSigner.PLATFORM,
            body={"reason": reason or f"cancelled by {actor.role.value}"},
        )

    # Helpers

    def _load(self, booking_id: str) -> Tuple[Booking, EscrowRecord]:
        booking = self.booking_repository.get_by_id_fresh(booking_id)
        if booking is None:
            raise NotFoundException(f"Booking {booking_id} not found", code="BOOKING_NOT_FOUND")
        escrow = self.escrow_repository.get_for_booking(booking_id)
        if escrow is None:
            raise ValidationException(
                "Booking has no escrow; the offering is free",
                code="NO_ESCROW",
                details={"booking_id": booking_id},
            )
        return booking, escrow

    def _completion_signer(self, booking: Booking, actor: Actor) -> LedgerSigner:
        if actor.role == ActorRole.CUSTOMER and actor.is_party(booking.customer_id):
            return LedgerSigner.CUSTOMER

        if actor.role in (ActorRole.SCHEDULER, ActorRole.ADMIN):
            if not settings.ledger_platform_completion_enabled:
                self._deny(
                    LedgerOperation.COMPLETE,
                    booking,
                    actor,
                    "The ledger has not granted completion to the platform signer",
                )
            opens_at = booking.scheduled_end + timedelta(minutes=settings.completion_grace_minutes)
            if self.clock.now() < opens_at:
                self._deny(
                    LedgerOperation.COMPLETE,
                    booking,
                    actor,
                    "Platform completion opens after the grace period",
                )
            return LedgerSigner.PLATFORM

        self._deny(LedgerOperation.COMPLETE, booking, actor, "Actor may not complete this booking")

    def _deny(self, operation: LedgerOperation, booking: Booking, actor: Actor, message: str) -> NoReturn:
        prometheus_metrics.record_ledger_call(operation.value, "denied")
        self.logger.warning(
            "Escrow call denied",
            extra={
                "booking_id": booking.id,
                "operation": operation.value,
                "actor": actor.label,
                "reason": message,
            },
        )
        raise InsufficientPermission(
            message,
            details={"booking_id": booking.id, "operation": operation.value, "actor": actor.role.value},
        )

    def _submit(
        self,
        operation: LedgerOperation,
        booking: Booking,
        escrow: EscrowRecord,
        signer: LedgerSigner,
        body: Optional[Dict[str, Any]] = None,
    ) -> PendingTransaction:
        if escrow.pending_operation == operation.value and escrow.pending_tx_ref:
            self.logger.info(
                "Escrow call already pending; returning existing handle",
                extra={"booking_id": booking.id, "operation": operation.value},
            )
            return PendingTransaction(
                booking_id=str(booking.id),
                operation=operation,
                tx_ref=str(escrow.pending_tx_ref),
                signer=signer,
                submitted_at=escrow.pending_since or self.clock.now(),
            )

        # Network call happens outside any database transaction
        tx_ref = self._call_with_retry(operation, str(booking.id), signer, body)
        submitted_at = self.clock.now()

        with self.transaction():
            fresh = self.escrow_repository.get_for_booking(booking.id)
            if fresh is not None:
                fresh.mark_pending(operation.value, tx_ref, submitted_at)

        self.logger.info(
            "Escrow call submitted",
            extra={
                "booking_id": booking.id,
                "operation": operation.value,
                "signer": signer.value,
                "tx_ref": tx_ref,
            },
        )
        return PendingTransaction(
            booking_id=str(booking.id),
            operation=operation,
            tx_ref=tx_ref,
            signer=signer,
            submitted_at=submitted_at,
        )

    def _call_with_retry(
        self,
        operation: LedgerOperation,
        booking_id: str,
        signer: LedgerSigner,
        body: Optional[Dict[str, Any]],
    ) -> str:
        max_attempts = settings.ledger_max_attempts
        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                tx_ref = self.client.submit(operation, booking_id, signer=signer, body=body)
            except InsufficientPermission:
                prometheus_metrics.record_ledger_call(
                    operation.value, "denied", time.monotonic() - started
                )
                raise
            except ChainCallFailed as exc:
                elapsed = time.monotonic() - started
                if not exc.retryable or attempt >= max_attempts:
                    prometheus_metrics.record_ledger_call(operation.value, "failed", elapsed)
                    self.logger.error(
                        "Escrow call failed",
                        extra={
                            "booking_id": booking_id,
                            "operation": operation.value,
                            "attempts": attempt,
                            "error": exc.message,
                        },
                    )
                    raise
                prometheus_metrics.record_ledger_call(operation.value, "retry", elapsed)
                delay = settings.ledger_retry_base_seconds * (2 ** (attempt - 1))
                delay += random.uniform(0, settings.ledger_retry_base_seconds)
                self.logger.warning(
                    "Retrying escrow call",
                    extra={
                        "booking_id": booking_id,
                        "operation": operation.value,
                        "attempt": attempt,
                        "delay": round(delay, 2),
                    },
                )
                self._sleep(delay)
                continue
            prometheus_metrics.record_ledger_call(
                operation.value, "submitted", time.monotonic() - started
            )
            return tx_ref
