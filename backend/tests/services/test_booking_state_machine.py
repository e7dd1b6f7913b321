from __future__ import annotations

from datetime import timedelta

from conftest import CUSTOMER_ID, NOW, OTHER_CUSTOMER_ID, PROVIDER_ID
import pytest

from escrowbook.core.actor import Actor
from escrowbook.core.enums import ActorRole
from escrowbook.core.exceptions import InsufficientPermission, InvalidTransition, StaleVersion
from escrowbook.models.booking import BookingStatus
from escrowbook.models.escrow import EscrowStatus
from escrowbook.repositories.event_outbox_repository import EventOutboxRepository
from escrowbook.services.booking_state_machine import (
    TRANSITIONS,
    BookingStateMachine,
    allowed_targets,
    is_valid_walk,
)

PROVIDER = Actor(ActorRole.PROVIDER, PROVIDER_ID)
CUSTOMER = Actor(ActorRole.CUSTOMER, CUSTOMER_ID)
ADMIN = Actor(ActorRole.ADMIN, "admin-1")

START = NOW + timedelta(days=1, hours=2)


@pytest.fixture
def machine(unit_db, clock, cache) -> BookingStateMachine:
    return BookingStateMachine(unit_db, clock=clock, cache=cache)


class TestTransitionTable:
    def test_terminal_statuses_have_no_outgoing_edges(self) -> None:
        for status in (BookingStatus.COMPLETED, BookingStatus.REJECTED, BookingStatus.CANCELLED):
            assert allowed_targets(status) == frozenset()

    def test_paid_can_only_be_confirmed_or_cancelled(self) -> None:
        assert allowed_targets(BookingStatus.PAID) == {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        }

    def test_only_ledger_moves_pending_payment_to_paid(self) -> None:
        assert TRANSITIONS[(BookingStatus.PENDING_PAYMENT, BookingStatus.PAID)] == {ActorRole.LEDGER}

    def test_walks(self) -> None:
        assert is_valid_walk(
            [
                BookingStatus.PENDING_PAYMENT,
                BookingStatus.PAID,
                BookingStatus.CONFIRMED,
                BookingStatus.IN_PROGRESS,
                BookingStatus.COMPLETED,
            ]
        )
        assert not is_valid_walk([BookingStatus.PENDING, BookingStatus.IN_PROGRESS])


class TestApplyTransition:
    def test_provider_accepts_pending_booking(self, machine, make_offering, make_booking, unit_db) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        result = machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

        assert result.changed
        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.version == 2
        history = machine.booking_repository.get_history(booking.id)
        assert [h.to_status for h in history] == ["pending", "confirmed"]
        assert history[-1].sequence == 2
        assert history[-1].actor_role == "provider"
        assert history[-1].auto is False

    def test_transition_queues_status_changed_event(
        self, machine, make_offering, make_booking, unit_db
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

        events = EventOutboxRepository(unit_db).list_for_aggregate(booking.id)
        assert len(events) == 1
        assert events[0].event_type == "booking.status_changed"
        assert events[0].payload["previous_status"] == "pending"
        assert events[0].payload["new_status"] == "confirmed"
        assert events[0].payload["version"] == 2

    def test_request_for_current_status_is_a_no_op(
        self, machine, make_offering, make_booking
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.CONFIRMED, version=3)

        # Even a stale version is fine when nothing would change
        result = machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

        assert not result.changed
        assert result.version == 3
        assert len(machine.booking_repository.get_history(booking.id)) == 1

    def test_stale_version_is_rejected(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING, version=2)

        with pytest.raises(StaleVersion) as exc_info:
            machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

        assert exc_info.value.actual_version == 2
        assert exc_info.value.to_http_exception().status_code == 409

    def test_edge_outside_lifecycle_is_rejected(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        with pytest.raises(InvalidTransition) as exc_info:
            machine.apply_transition(booking.id, BookingStatus.COMPLETED, ADMIN, 1)

        assert exc_info.value.from_status == "pending"
        assert exc_info.value.to_http_exception().status_code == 422

    def test_terminal_booking_cannot_move(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.CANCELLED)

        with pytest.raises(InvalidTransition):
            machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

    def test_customer_cannot_accept(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        with pytest.raises(InsufficientPermission):
            machine.apply_transition(booking.id, BookingStatus.CONFIRMED, CUSTOMER, 1)

    def test_other_provider_cannot_accept(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        with pytest.raises(InsufficientPermission):
            machine.apply_transition(
                booking.id, BookingStatus.CONFIRMED, Actor(ActorRole.PROVIDER, "someone-else"), 1
            )

    def test_other_customer_cannot_cancel(self, machine, make_offering, make_booking) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        with pytest.raises(InsufficientPermission):
            machine.apply_transition(
                booking.id,
                BookingStatus.CANCELLED,
                Actor(ActorRole.CUSTOMER, OTHER_CUSTOMER_ID),
                1,
            )

    def test_paid_booking_cannot_be_cancelled_without_ledger(
        self, machine, make_offering, make_booking
    ) -> None:
        offering = make_offering(price=50)
        booking = make_booking(
            offering, START, BookingStatus.PAID, escrow_status=EscrowStatus.FUNDED
        )

        with pytest.raises(InsufficientPermission):
            machine.apply_transition(booking.id, BookingStatus.CANCELLED, ADMIN, 1)

    def test_funded_confirmed_booking_settles_only_through_ledger(
        self, machine, make_offering, make_booking
    ) -> None:
        offering = make_offering(price=50)
        booking = make_booking(
            offering, START, BookingStatus.CONFIRMED, escrow_status=EscrowStatus.FUNDED
        )

        with pytest.raises(InsufficientPermission):
            machine.apply_transition(booking.id, BookingStatus.CANCELLED, ADMIN, 1)

        result = machine.apply_transition(booking.id, BookingStatus.CANCELLED, Actor.ledger(), 1)
        assert result.booking.status == "cancelled"
        assert result.booking.auto_transition is True

    def test_cancellation_records_reason_and_time(
        self, machine, make_offering, make_booking, clock
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        result = machine.apply_transition(
            booking.id, BookingStatus.CANCELLED, CUSTOMER, 1, reason="changed plans"
        )

        assert result.booking.cancellation_reason == "changed plans"
        assert result.booking.cancelled_at == clock.now()

    def test_scheduler_cannot_start_before_scheduled_start(
        self, machine, make_offering, make_booking
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.CONFIRMED)

        with pytest.raises(InvalidTransition):
            machine.apply_transition(booking.id, BookingStatus.IN_PROGRESS, Actor.scheduler(), 1)

    def test_scheduler_completion_waits_for_grace(
        self, machine, make_offering, make_booking, clock
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.IN_PROGRESS)
        clock.set(START + timedelta(minutes=30 + 5))

        with pytest.raises(InvalidTransition):
            machine.apply_transition(booking.id, BookingStatus.COMPLETED, Actor.scheduler(), 1)

        clock.set(START + timedelta(minutes=30 + 15))
        result = machine.apply_transition(booking.id, BookingStatus.COMPLETED, Actor.scheduler(), 1)
        assert result.booking.status == "completed"
        assert result.booking.completed_at == clock.now()

    def test_second_writer_with_same_version_loses(
        self, machine, make_offering, make_booking, session_factory, clock, cache
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.PENDING)

        machine.apply_transition(booking.id, BookingStatus.CONFIRMED, PROVIDER, 1)

        other_session = session_factory()
        try:
            other = BookingStateMachine(other_session, clock=clock, cache=cache)
            with pytest.raises(StaleVersion):
                other.apply_transition(booking.id, BookingStatus.CANCELLED, ADMIN, 1)
        finally:
            other_session.close()

    def test_committed_transition_drops_cached_month(
        self, machine, make_offering, make_booking, cache
    ) -> None:
        offering = make_offering()
        booking = make_booking(offering, START, BookingStatus.CONFIRMED)
        cache.set_month_rollup(PROVIDER_ID, offering.id, 2026, 3, {"days": []})

        machine.apply_transition(booking.id, BookingStatus.CANCELLED, ADMIN, 1)

        assert cache.get_month_rollup(PROVIDER_ID, offering.id, 2026, 3) is None
