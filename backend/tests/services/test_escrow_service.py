from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from conftest import CUSTOMER_ID, NOW, OTHER_CUSTOMER_ID, PROVIDER_ID
import pytest

from escrowbook.core.actor import Actor
from escrowbook.core.config import settings
from escrowbook.core.enums import ActorRole, LedgerOperation, LedgerSigner
from escrowbook.core.exceptions import ChainCallFailed, InsufficientPermission, ValidationException
from escrowbook.models.booking import BookingStatus
from escrowbook.models.escrow import EscrowStatus
from escrowbook.repositories.booking_repository import BookingRepository
from escrowbook.repositories.escrow_repository import EscrowRepository
from escrowbook.services.escrow_service import EscrowService

CUSTOMER = Actor(ActorRole.CUSTOMER, CUSTOMER_ID)
PROVIDER = Actor(ActorRole.PROVIDER, PROVIDER_ID)
ADMIN = Actor(ActorRole.ADMIN, "admin-1")

START = NOW + timedelta(days=1)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(unit_db, ledger_client, clock, sleeps) -> EscrowService:
    return EscrowService(unit_db, client=ledger_client, clock=clock, sleep=sleeps.append)


@pytest.fixture
def priced_offering(make_offering):
    return make_offering(price=Decimal("50.00"))


class TestDeposit:
    def test_customer_deposit_submits_customer_signed_call(
        self, service, gateway, priced_offering, make_booking, unit_db
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        pending = service.deposit(booking.id, CUSTOMER)

        assert pending.operation == LedgerOperation.DEPOSIT
        assert pending.signer == LedgerSigner.CUSTOMER
        assert pending.tx_ref == "0xtx1"
        assert gateway.calls[0]["path"] == f"/escrow/bookings/{booking.id}/deposit"
        assert gateway.calls[0]["body"] == {"signer": "customer", "amount": "50.00"}
        assert gateway.calls[0]["idempotency_key"] == f"{booking.id}:deposit"

        escrow = EscrowRepository(unit_db).get_for_booking(booking.id)
        assert escrow.pending_operation == "deposit"
        assert escrow.pending_tx_ref == "0xtx1"

    def test_deposit_never_changes_booking_status(
        self, service, priced_offering, make_booking, unit_db
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        service.deposit(booking.id, CUSTOMER)

        fresh = BookingRepository(unit_db).get_by_id_fresh(booking.id)
        assert fresh.status == "pending_payment"
        assert fresh.version == 1

    def test_pending_deposit_returns_existing_handle(
        self, service, gateway, priced_offering, make_booking
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        first = service.deposit(booking.id, CUSTOMER)
        second = service.deposit(booking.id, CUSTOMER)

        assert second.tx_ref == first.tx_ref
        assert len(gateway.calls) == 1

    def test_amount_must_match_escrow(self, service, gateway, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        with pytest.raises(ValidationException) as exc_info:
            service.deposit(booking.id, CUSTOMER, amount=Decimal("49.99"))

        assert exc_info.value.code == "DEPOSIT_AMOUNT_MISMATCH"
        assert gateway.calls == []

    def test_other_customer_cannot_deposit(self, service, gateway, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        with pytest.raises(InsufficientPermission):
            service.deposit(booking.id, Actor(ActorRole.CUSTOMER, OTHER_CUSTOMER_ID))
        assert gateway.calls == []

    def test_deposit_rejected_once_paid(self, service, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PAID, escrow_status=EscrowStatus.FUNDED
        )

        with pytest.raises(InsufficientPermission):
            service.deposit(booking.id, CUSTOMER)

    def test_free_booking_has_no_escrow(self, service, make_offering, make_booking) -> None:
        booking = make_booking(make_offering(), START, BookingStatus.PENDING)

        with pytest.raises(ValidationException) as exc_info:
            service.deposit(booking.id, CUSTOMER)

        assert exc_info.value.code == "NO_ESCROW"


class TestRetries:
    def test_transient_failures_are_retried_with_backoff(
        self, service, gateway, priced_offering, make_booking, sleeps
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )
        gateway.submit_failures = [503, 429]

        pending = service.deposit(booking.id, CUSTOMER)

        assert pending.tx_ref == "0xtx1"
        assert len(gateway.calls) == 3
        assert len(sleeps) == 2
        # Every retry reuses the same idempotency key
        assert {call["idempotency_key"] for call in gateway.calls} == {f"{booking.id}:deposit"}

    def test_gives_up_after_max_attempts(
        self, service, gateway, priced_offering, make_booking, unit_db
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )
        gateway.submit_failures = [503] * 10

        with pytest.raises(ChainCallFailed) as exc_info:
            service.deposit(booking.id, CUSTOMER)

        assert exc_info.value.retryable
        assert len(gateway.calls) == settings.ledger_max_attempts
        assert EscrowRepository(unit_db).get_for_booking(booking.id).pending_operation is None

    def test_validation_failure_is_not_retried(
        self, service, gateway, priced_offering, make_booking
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )
        gateway.submit_failures = [400]

        with pytest.raises(ChainCallFailed) as exc_info:
            service.deposit(booking.id, CUSTOMER)

        assert not exc_info.value.retryable
        assert exc_info.value.upstream_status == 400
        assert len(gateway.calls) == 1

    def test_gateway_403_maps_to_permission_error(
        self, service, gateway, priced_offering, make_booking
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )
        gateway.submit_failures = [403]

        with pytest.raises(InsufficientPermission):
            service.deposit(booking.id, CUSTOMER)
        assert len(gateway.calls) == 1


class TestComplete:
    def test_customer_may_complete_any_time_once_funded(
        self, service, gateway, priced_offering, make_booking
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.CONFIRMED, escrow_status=EscrowStatus.FUNDED
        )

        pending = service.complete(booking.id, CUSTOMER)

        assert pending.signer == LedgerSigner.CUSTOMER
        assert gateway.calls[0]["body"] == {"signer": "customer"}

    def test_platform_completion_denied_without_grant(
        self, service, gateway, priced_offering, make_booking, clock
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED
        )
        clock.set(START + timedelta(hours=2))

        with pytest.raises(InsufficientPermission):
            service.complete(booking.id, Actor.scheduler())
        assert gateway.calls == []

    def test_platform_completion_opens_after_grace(
        self, service, gateway, priced_offering, make_booking, clock, monkeypatch
    ) -> None:
        monkeypatch.setattr(settings, "ledger_platform_completion_enabled", True)
        booking = make_booking(
            priced_offering, START, BookingStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED
        )
        clock.set(START + timedelta(minutes=30 + settings.completion_grace_minutes - 1))

        with pytest.raises(InsufficientPermission):
            service.complete(booking.id, Actor.scheduler())

        clock.advance(minutes=1)
        pending = service.complete(booking.id, Actor.scheduler())
        assert pending.signer == LedgerSigner.PLATFORM
        assert gateway.calls[0]["body"] == {"signer": "platform"}

    def test_provider_cannot_complete(self, service, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.CONFIRMED, escrow_status=EscrowStatus.FUNDED
        )

        with pytest.raises(InsufficientPermission):
            service.complete(booking.id, PROVIDER)

    def test_unfunded_booking_cannot_complete(self, service, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        with pytest.raises(InsufficientPermission):
            service.complete(booking.id, CUSTOMER)


class TestEmergencyCancel:
    @pytest.mark.parametrize("actor", [CUSTOMER, PROVIDER, ADMIN])
    def test_parties_and_admin_may_cancel(
        self, actor, service, gateway, priced_offering, make_booking
    ) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PAID, escrow_status=EscrowStatus.FUNDED
        )

        pending = service.emergency_cancel(booking.id, actor, reason="sick")

        assert pending.operation == LedgerOperation.EMERGENCY_CANCEL
        assert pending.signer == LedgerSigner.PLATFORM
        assert gateway.calls[0]["path"].endswith("/emergency-cancel")
        assert gateway.calls[0]["body"] == {"signer": "platform", "reason": "sick"}

    def test_stranger_cannot_cancel(self, service, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PAID, escrow_status=EscrowStatus.FUNDED
        )

        with pytest.raises(InsufficientPermission):
            service.emergency_cancel(booking.id, Actor(ActorRole.CUSTOMER, OTHER_CUSTOMER_ID))

    def test_requires_funded_escrow(self, service, priced_offering, make_booking) -> None:
        booking = make_booking(
            priced_offering, START, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        with pytest.raises(InsufficientPermission):
            service.emergency_cancel(booking.id, ADMIN)
