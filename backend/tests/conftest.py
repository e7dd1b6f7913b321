"""
Shared fixtures for the escrow booking core tests.

Every test gets a fresh in-memory SQLite database behind a StaticPool, a
frozen clock and a scripted escrow ledger gateway. Nothing touches the
network or Redis.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
import json
import os
from typing import Any, Callable, Dict, Iterator, List, Optional

# Keep settings away from any developer .env and external services
os.environ.setdefault("CI", "1")
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.pop("REDIS_URL", None)
os.environ.pop("CALENDAR_BASE_URL", None)
os.environ.pop("STATUS_WEBHOOK_URL", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from escrowbook.core.config import settings  # noqa: E402
from escrowbook.database import Base  # noqa: E402
from escrowbook.integrations.escrow_ledger_client import EscrowLedgerClient  # noqa: E402
import escrowbook.models  # noqa: E402,F401
from escrowbook.models.booking import Booking, BookingStatus, BookingTransition  # noqa: E402
from escrowbook.models.escrow import EscrowRecord, EscrowStatus  # noqa: E402
from escrowbook.models.offering import Offering, OfferingScheduleDay  # noqa: E402
from escrowbook.services.cache_service import CacheService  # noqa: E402
from escrowbook.services.calendar_service import CalendarService  # noqa: E402

PROVIDER_ID = "provider-1"
CUSTOMER_ID = "customer-1"
OTHER_CUSTOMER_ID = "customer-2"

# Monday
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta: float) -> None:
        self._now = self._now + timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def unit_db(session_factory: Callable[[], Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache() -> CacheService:
    return CacheService(use_redis=False)


@pytest.fixture(autouse=True)
def _reset_shared_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    CacheService._memory_cache.clear()
    CalendarService.clear_cache()
    monkeypatch.setattr(settings, "redis_url", None)
    monkeypatch.setattr(settings, "calendar_base_url", None)
    monkeypatch.setattr(settings, "status_webhook_url", None)
    monkeypatch.setattr(settings, "ledger_platform_completion_enabled", False)
    monkeypatch.setattr(settings, "ledger_retry_base_seconds", 0.0)
    yield
    CacheService._memory_cache.clear()
    CalendarService.clear_cache()


# Ledger gateway double


@dataclass
class LedgerGateway:
    """Scripted escrow ledger gateway served through httpx.MockTransport."""

    events: List[Dict[str, Any]] = field(default_factory=list)
    latest_block: int = 0
    calls: List[Dict[str, Any]] = field(default_factory=list)
    # Status codes returned (in order) before submissions start succeeding
    submit_failures: List[int] = field(default_factory=list)
    fetch_failures: int = 0
    healthy: bool = True
    _tx_counter: int = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST":
            body = json.loads(request.content) if request.content else {}
            self.calls.append(
                {
                    "path": path,
                    "body": body,
                    "idempotency_key": request.headers.get("Idempotency-Key"),
                }
            )
            if self.submit_failures:
                status_code = self.submit_failures.pop(0)
                return httpx.Response(status_code, json={"message": f"gateway said {status_code}"})
            self._tx_counter += 1
            return httpx.Response(200, json={"tx_ref": f"0xtx{self._tx_counter}"})

        if path.endswith("/events"):
            if self.fetch_failures:
                self.fetch_failures -= 1
                return httpx.Response(503, json={"message": "node syncing"})
            from_block = int(request.url.params.get("from_block", "0"))
            limit = int(request.url.params.get("limit", "100"))
            page = [e for e in self.events if e["block_number"] >= from_block]
            page.sort(key=lambda e: (e["block_number"], e["log_index"]))
            return httpx.Response(
                200, json={"events": page[:limit], "latest_block": self.latest_block}
            )

        if path.endswith("/health"):
            if not self.healthy:
                return httpx.Response(503, json={"message": "down"})
            return httpx.Response(200, json={"ok": True, "chain_id": 31337})

        return httpx.Response(404, json={"message": "not found"})

    def emit(
        self,
        kind: str,
        booking_id: Optional[str],
        block_number: int,
        log_index: int = 0,
        tx_ref: Optional[str] = None,
        **data: Any,
    ) -> Dict[str, Any]:
        event = {
            "kind": kind,
            "booking_id": booking_id,
            "tx_ref": tx_ref or f"0xblock{block_number}",
            "block_number": block_number,
            "log_index": log_index,
            "data": data,
        }
        self.events.append(event)
        self.latest_block = max(self.latest_block, block_number)
        return event

    def client(self) -> EscrowLedgerClient:
        return EscrowLedgerClient(
            base_url="http://ledger.test/escrow",
            api_key="test-key",
            timeout=1.0,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def gateway() -> LedgerGateway:
    return LedgerGateway()


@pytest.fixture
def ledger_client(gateway: LedgerGateway) -> EscrowLedgerClient:
    return gateway.client()


# Data builders


def weekday_schedule(
    start: time = time(9, 0), end: time = time(17, 0), weekdays: range = range(5)
) -> List[OfferingScheduleDay]:
    return [
        OfferingScheduleDay(weekday=w, enabled=True, start_time=start, end_time=end)
        for w in weekdays
    ]


@pytest.fixture
def make_offering(unit_db: Session) -> Callable[..., Offering]:
    def _make(**overrides: Any) -> Offering:
        schedule = overrides.pop("schedule", None)
        values: Dict[str, Any] = {
            "provider_id": PROVIDER_ID,
            "title": "Guitar lesson",
            "duration_minutes": 30,
            "buffer_minutes": 15,
            "min_lead_minutes": None,
            "timezone": "UTC",
            "price": Decimal("0"),
            "platform_fee_fraction": Decimal("0.1"),
        }
        values.update(overrides)
        offering = Offering(**values)
        offering.schedule_days = weekday_schedule() if schedule is None else schedule
        unit_db.add(offering)
        unit_db.commit()
        return offering

    return _make


@pytest.fixture
def make_booking(unit_db: Session) -> Callable[..., Booking]:
    def _make(
        offering: Offering,
        start: datetime,
        status: BookingStatus = BookingStatus.CONFIRMED,
        *,
        customer_id: str = CUSTOMER_ID,
        version: int = 1,
        escrow_status: Optional[EscrowStatus] = None,
        amount: Decimal = Decimal("50.00"),
        pending_operation: Optional[str] = None,
        pending_since: Optional[datetime] = None,
    ) -> Booking:
        booking = Booking(
            offering_id=offering.id,
            provider_id=offering.provider_id,
            customer_id=customer_id,
            scheduled_start=start,
            duration_minutes=offering.duration_minutes,
            buffer_minutes=offering.buffer_minutes,
            status=status.value,
            version=version,
            auto_transition=False,
            created_at=NOW - timedelta(days=1),
            updated_at=NOW - timedelta(days=1),
        )
        unit_db.add(booking)
        unit_db.flush()
        unit_db.add(
            BookingTransition(
                booking_id=booking.id,
                sequence=1,
                from_status=None,
                to_status=status.value,
                actor_role="customer",
                actor_id=customer_id,
                auto=False,
                occurred_at=NOW - timedelta(days=1),
            )
        )
        if escrow_status is not None:
            escrow = EscrowRecord(
                booking_id=booking.id,
                status=escrow_status.value,
                amount=amount,
                platform_fee_fraction=Decimal("0.1"),
            )
            if pending_operation:
                escrow.mark_pending(pending_operation, "0xpending", pending_since or NOW)
            unit_db.add(escrow)
        unit_db.commit()
        return booking

    return _make
