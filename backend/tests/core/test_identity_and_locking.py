from __future__ import annotations

import threading
import time

from fastapi import HTTPException
import pytest

from escrowbook.api.dependencies.auth import get_current_actor
from escrowbook.core.actor import Actor
from escrowbook.core.booking_lock import provider_slot_lock
from escrowbook.core.enums import ActorRole
from escrowbook.core.exceptions import SlotUnavailable
from escrowbook.core.periodic import PeriodicRunner


class TestCurrentActor:
    def test_resolves_role_and_id(self) -> None:
        actor = get_current_actor(x_actor_id=" customer-1 ", x_actor_role="Customer")

        assert actor == Actor(ActorRole.CUSTOMER, "customer-1")
        assert actor.label == "customer:customer-1"

    @pytest.mark.parametrize("actor_id,role", [(None, "customer"), ("customer-1", None), ("", "")])
    def test_missing_identity(self, actor_id, role) -> None:
        with pytest.raises(HTTPException) as exc_info:
            get_current_actor(x_actor_id=actor_id, x_actor_role=role)

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["code"] == "UNAUTHENTICATED"

    @pytest.mark.parametrize("role", ["scheduler", "ledger", "superuser"])
    def test_roles_outside_the_api(self, role: str) -> None:
        with pytest.raises(HTTPException) as exc_info:
            get_current_actor(x_actor_id="someone", x_actor_role=role)

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail["code"] == "FORBIDDEN_ROLE"


class TestActor:
    def test_is_party_needs_both_ids(self) -> None:
        assert Actor(ActorRole.CUSTOMER, "c").is_party("c")
        assert not Actor(ActorRole.CUSTOMER, "c").is_party("d")
        assert not Actor(ActorRole.ADMIN).is_party(None)

    def test_automated_actors(self) -> None:
        assert Actor.scheduler().label == "scheduler:scheduler"
        assert Actor.ledger().role == ActorRole.LEDGER


class TestProviderSlotLock:
    def test_serializes_same_provider(self) -> None:
        holding = threading.Event()
        release = threading.Event()

        def hold() -> None:
            with provider_slot_lock("provider-lock-a"):
                holding.set()
                release.wait(2)

        worker = threading.Thread(target=hold)
        worker.start()
        try:
            assert holding.wait(2)
            with pytest.raises(SlotUnavailable) as exc_info:
                with provider_slot_lock("provider-lock-a", wait_s=0.05):
                    pass
            assert exc_info.value.reason == "concurrent_booking"

            # Other providers are not blocked
            with provider_slot_lock("provider-lock-b", wait_s=0.05):
                pass
        finally:
            release.set()
            worker.join(2)

        with provider_slot_lock("provider-lock-a", wait_s=0.05):
            pass

    def test_released_after_error(self) -> None:
        with pytest.raises(RuntimeError):
            with provider_slot_lock("provider-lock-c"):
                raise RuntimeError("boom")

        with provider_slot_lock("provider-lock-c", wait_s=0.05):
            pass


class TestPeriodicRunner:
    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            PeriodicRunner("bad", lambda: None, 0)

    def test_survives_failing_iterations(self) -> None:
        calls = []

        def target() -> None:
            calls.append(1)
            raise RuntimeError("tick failed")

        runner = PeriodicRunner("flaky", target, 0.01)
        runner.start()
        deadline = time.monotonic() + 2
        while len(calls) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        runner.stop(timeout=1)

        assert len(calls) >= 3
        assert not runner.running

    def test_start_is_idempotent(self) -> None:
        runner = PeriodicRunner("idle", lambda: None, 10)
        runner.start()
        thread = runner._thread
        runner.start()

        assert runner._thread is thread
        runner.stop(timeout=1)
