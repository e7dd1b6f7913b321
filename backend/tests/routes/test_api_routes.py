from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, PROVIDER_ID
from fastapi import Depends
from fastapi.testclient import TestClient
import pytest

from escrowbook.api.dependencies import (
    get_availability_service,
    get_booking_service,
    get_cache_service_dep,
    get_db,
    get_offering_service,
)
from escrowbook.main import app
from escrowbook.models.booking import BookingStatus
from escrowbook.models.escrow import EscrowStatus
from escrowbook.routes.health import get_ledger_client
from escrowbook.services.availability_service import AvailabilityService
from escrowbook.services.booking_service import BookingService
from escrowbook.services.calendar_service import CalendarService
from escrowbook.services.offering_service import OfferingService

CUSTOMER = {"X-Actor-Id": CUSTOMER_ID, "X-Actor-Role": "customer"}
OTHER_CUSTOMER = {"X-Actor-Id": OTHER_CUSTOMER_ID, "X-Actor-Role": "customer"}
PROVIDER = {"X-Actor-Id": PROVIDER_ID, "X-Actor-Role": "provider"}

TUESDAY_10 = datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(session_factory, clock, cache, ledger_client):
    def override_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def booking_service(db=Depends(get_db)) -> BookingService:
        return BookingService(
            db, clock=clock, escrow_client=ledger_client, calendar_service=CalendarService(), cache=cache
        )

    def availability_service(db=Depends(get_db)) -> AvailabilityService:
        return AvailabilityService(db, clock=clock, calendar_service=CalendarService(), cache=cache)

    def offering_service(db=Depends(get_db)) -> OfferingService:
        return OfferingService(db, clock=clock, cache=cache)

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_cache_service_dep] = lambda: cache
    app.dependency_overrides[get_ledger_client] = lambda: ledger_client
    app.dependency_overrides[get_booking_service] = booking_service
    app.dependency_overrides[get_availability_service] = availability_service
    app.dependency_overrides[get_offering_service] = offering_service
    try:
        # No context manager: the lifespan would start background workers
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _error(response):
    return response.json()["detail"]


class TestIdentity:
    def test_missing_headers_is_401(self, client) -> None:
        response = client.get("/api/v1/bookings/")

        assert response.status_code == 401
        assert _error(response)["code"] == "UNAUTHENTICATED"

    def test_automated_roles_cannot_call_api(self, client) -> None:
        response = client.get("/api/v1/bookings/", headers={"X-Actor-Id": "x", "X-Actor-Role": "ledger"})

        assert response.status_code == 403
        assert _error(response)["code"] == "FORBIDDEN_ROLE"


class TestOfferingRoutes:
    def test_provider_publishes_offering(self, client) -> None:
        response = client.post(
            "/api/v1/offerings/",
            headers=PROVIDER,
            json={
                "title": "Guitar lesson",
                "duration_minutes": 45,
                "price": "30.00",
                "schedule": {"weekly": [{"weekday": 1, "start_time": "09:00", "end_time": "12:00"}]},
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["provider_id"] == PROVIDER_ID
        assert Decimal(body["price"]) == Decimal("30.00")
        assert [d["weekday"] for d in body["schedule_days"]] == [1]

        listed = client.get(f"/api/v1/offerings/?provider_id={PROVIDER_ID}", headers=CUSTOMER)
        assert [o["id"] for o in listed.json()] == [body["id"]]

    def test_customer_cannot_publish(self, client) -> None:
        response = client.post(
            "/api/v1/offerings/", headers=CUSTOMER, json={"title": "x", "duration_minutes": 30}
        )

        assert response.status_code == 403
        assert _error(response)["code"] == "INSUFFICIENT_PERMISSION"

    def test_invalid_schedule_is_rejected(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.put(
            f"/api/v1/offerings/{offering.id}/schedule",
            headers=PROVIDER,
            json={"weekly": [{"weekday": 1, "start_time": "17:00", "end_time": "09:00"}]},
        )

        assert response.status_code == 422
        assert _error(response)["code"] == "VALIDATION_ERROR"

    def test_schedule_update_replaces_windows(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.put(
            f"/api/v1/offerings/{offering.id}/schedule",
            headers=PROVIDER,
            json={
                "weekly": [{"weekday": 0, "start_time": "10:00", "end_time": "11:00"}],
                "exceptions": [{"exception_date": "2026-03-09", "reason": "holiday"}],
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert len(body["schedule_days"]) == 1
        assert body["schedule_exceptions"][0]["reason"] == "holiday"

    def test_unknown_offering_is_404(self, client) -> None:
        response = client.get("/api/v1/offerings/missing", headers=CUSTOMER)

        assert response.status_code == 404
        assert _error(response)["code"] == "OFFERING_NOT_FOUND"


class TestAvailabilityRoutes:
    def test_day_view(self, client, make_offering, make_booking) -> None:
        offering = make_offering()
        make_booking(offering, TUESDAY_10)

        response = client.get(
            f"/api/v1/offerings/{offering.id}/availability/day?date=2026-03-03", headers=CUSTOMER
        )

        assert response.status_code == 200
        body = response.json()
        assert len(body["available"]) == 13
        assert {s["reason"] for s in body["unavailable"]} == {"booked"}

    def test_month_view(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.get(
            f"/api/v1/offerings/{offering.id}/availability/month?month=2026-03", headers=CUSTOMER
        )

        body = response.json()
        assert len(body["days"]) == 31
        assert body["days"][0]["reason"] == "no_service_hours"
        assert body["next_available_date"] is None

    def test_empty_month_points_to_next_date(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.get(
            f"/api/v1/offerings/{offering.id}/availability/month?month=2026-02", headers=CUSTOMER
        )

        body = response.json()
        assert all(d["available_slots"] == 0 for d in body["days"])
        assert body["next_available_date"] == "2026-03-02"

    def test_bad_month_format(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.get(
            f"/api/v1/offerings/{offering.id}/availability/month?month=2026-13", headers=CUSTOMER
        )

        assert response.status_code == 422

    def test_next_available(self, client, make_offering) -> None:
        offering = make_offering()

        response = client.get(
            f"/api/v1/offerings/{offering.id}/availability/next?from_date=2026-03-07", headers=CUSTOMER
        )

        assert response.json()["next_available_date"] == "2026-03-09"


class TestBookingRoutes:
    def _create(self, client, offering, headers=CUSTOMER, start=TUESDAY_10, **extra):
        return client.post(
            "/api/v1/bookings/",
            headers=headers,
            json={"offering_id": offering.id, "scheduled_start": start.isoformat(), **extra},
        )

    def test_create_then_accept(self, client, make_offering) -> None:
        offering = make_offering()

        created = self._create(client, offering)
        assert created.status_code == 201
        booking = created.json()["booking"]
        assert booking["status"] == "pending"

        accepted = client.post(
            f"/api/v1/bookings/{booking['id']}/accept", headers=PROVIDER, json={"expected_version": 1}
        )
        assert accepted.status_code == 200
        assert accepted.json()["booking"]["version"] == 2

        history = client.get(f"/api/v1/bookings/{booking['id']}/history", headers=CUSTOMER).json()
        assert [t["to_status"] for t in history["transitions"]] == ["pending", "confirmed"]

    def test_taken_slot_is_409_with_reason(self, client, make_offering) -> None:
        offering = make_offering()
        assert self._create(client, offering).status_code == 201

        response = self._create(client, offering, headers=OTHER_CUSTOMER)

        assert response.status_code == 409
        error = _error(response)
        assert error["code"] == "SLOT_UNAVAILABLE"
        assert error["details"]["reason"] == "booked"

    def test_stale_version_is_409(self, client, make_offering, make_booking) -> None:
        booking = make_booking(make_offering(), TUESDAY_10, BookingStatus.PENDING, version=2)

        response = client.post(
            f"/api/v1/bookings/{booking.id}/accept", headers=PROVIDER, json={"expected_version": 1}
        )

        assert response.status_code == 409
        assert _error(response)["code"] == "STALE_VERSION"
        assert _error(response)["details"]["actual_version"] == 2

    def test_invalid_transition_is_422(self, client, make_offering, make_booking) -> None:
        booking = make_booking(make_offering(), TUESDAY_10, BookingStatus.CANCELLED)

        response = client.post(
            f"/api/v1/bookings/{booking.id}/accept", headers=PROVIDER, json={"expected_version": 1}
        )

        assert response.status_code == 422
        assert _error(response)["code"] == "INVALID_TRANSITION"

    def test_priced_booking_returns_pending_deposit(self, client, make_offering, gateway) -> None:
        offering = make_offering(price=Decimal("25.00"))

        response = self._create(client, offering)

        body = response.json()
        assert body["booking"]["status"] == "pending_payment"
        assert Decimal(body["booking"]["escrow"]["amount"]) == Decimal("25.00")
        assert body["pending_transaction"]["operation"] == "deposit"
        assert body["pending_transaction"]["tx_ref"] == "0xtx1"

    def test_manual_deposit_with_wrong_amount(self, client, make_offering, make_booking) -> None:
        offering = make_offering(price=Decimal("25.00"))
        booking = make_booking(
            offering,
            TUESDAY_10,
            BookingStatus.PENDING_PAYMENT,
            escrow_status=EscrowStatus.NONE,
            amount=Decimal("25.00"),
        )

        response = client.post(
            f"/api/v1/bookings/{booking.id}/deposit", headers=CUSTOMER, json={"amount": "20.00"}
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "DEPOSIT_AMOUNT_MISMATCH"

    def test_deposit_without_body(self, client, make_offering, make_booking) -> None:
        offering = make_offering(price=Decimal("25.00"))
        booking = make_booking(
            offering, TUESDAY_10, BookingStatus.PENDING_PAYMENT, escrow_status=EscrowStatus.NONE
        )

        response = client.post(f"/api/v1/bookings/{booking.id}/deposit", headers=CUSTOMER)

        assert response.status_code == 200
        assert response.json()["pending_transaction"]["signer"] == "customer"

    def test_ledger_outage_is_502(self, client, make_offering, make_booking, gateway) -> None:
        offering = make_offering(price=Decimal("25.00"))
        booking = make_booking(offering, TUESDAY_10, BookingStatus.CONFIRMED, escrow_status=EscrowStatus.FUNDED)
        gateway.submit_failures = [503] * 10

        response = client.post(f"/api/v1/bookings/{booking.id}/complete", headers=CUSTOMER)

        assert response.status_code == 502
        assert _error(response)["code"] == "CHAIN_CALL_FAILED"

    def test_unknown_booking_is_404(self, client) -> None:
        response = client.get("/api/v1/bookings/nope", headers=CUSTOMER)

        assert response.status_code == 404

    def test_list_filters_by_status(self, client, make_offering, make_booking) -> None:
        offering = make_offering()
        make_booking(offering, TUESDAY_10)
        make_booking(offering, TUESDAY_10 + timedelta(hours=3), BookingStatus.CANCELLED)

        response = client.get("/api/v1/bookings/?status=cancelled", headers=CUSTOMER)

        assert [b["status"] for b in response.json()] == ["cancelled"]

    def test_pending_free_slot_is_not_offered_or_booked_twice(self, client, make_offering) -> None:
        offering = make_offering()
        first = self._create(client, offering)
        assert first.status_code == 201

        day = client.get(
            f"/api/v1/offerings/{offering.id}/availability/day?date=2026-03-03", headers=OTHER_CUSTOMER
        ).json()
        second = self._create(client, offering, headers=OTHER_CUSTOMER)

        assert len(day["available"]) == 13
        assert second.status_code == 409
        assert _error(second)["details"]["reason"] == "booked"

    def test_service_calls_run_off_the_event_loop(self, client, monkeypatch) -> None:
        seen = []
        original = BookingService.list_bookings

        def recording(self, *args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append("event_loop")
            except RuntimeError:
                seen.append("worker_thread")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(BookingService, "list_bookings", recording)

        response = client.get("/api/v1/bookings/", headers=CUSTOMER)

        assert response.status_code == 200
        assert seen == ["worker_thread"]


class TestHealthRoutes:
    def test_healthy(self, client) -> None:
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["checks"] == {"database": True, "ledger": True}

    def test_degraded_when_ledger_is_down(self, client, gateway) -> None:
        gateway.healthy = False

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["checks"]["ledger"] is False

    def test_metrics(self, client) -> None:
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "escrowbook_http_requests_total" in response.text
