from __future__ import annotations

from datetime import timedelta

from escrowbook.services.booking_scheduler import TickResult
from escrowbook.services.ledger_event_monitor import PollResult
from escrowbook.tasks import booking_tasks
from escrowbook.tasks.beat_schedule import get_beat_schedule
from escrowbook.tasks.celery_app import celery_app


class TestBeatSchedule:
    def test_production_schedule(self) -> None:
        schedule = get_beat_schedule("production")

        assert set(schedule) == {"scheduler-tick", "ledger-monitor-poll", "outbox-dispatch"}
        assert schedule["scheduler-tick"]["task"] == "escrowbook.scheduler.tick"
        assert schedule["outbox-dispatch"]["schedule"] == timedelta(seconds=30)

    def test_development_dispatches_outbox_faster(self) -> None:
        assert get_beat_schedule("development")["outbox-dispatch"]["schedule"] == timedelta(seconds=10)


class TestTaskRegistration:
    def test_tasks_are_registered(self) -> None:
        import escrowbook.tasks.outbox_tasks  # noqa: F401

        for name in (
            "escrowbook.scheduler.tick",
            "escrowbook.ledger.poll_events",
            "escrowbook.outbox.dispatch_pending",
            "escrowbook.health_check",
        ):
            assert name in celery_app.tasks

    def test_routes_by_prefix(self) -> None:
        routes = celery_app.conf.task_routes

        assert routes["escrowbook.ledger.*"] == {"queue": "ledger"}


class TestTaskBodies:
    def test_scheduler_tick_reports_counters(self, monkeypatch) -> None:
        class FakeScheduler:
            def tick(self) -> TickResult:
                return TickResult(started=2, reminders=1)

        monkeypatch.setattr(booking_tasks, "BookingScheduler", FakeScheduler)

        counters = booking_tasks.run_scheduler_tick()

        assert counters["started"] == 2
        assert counters["reminders"] == 1
        assert counters["failed"] == 0

    def test_ledger_poll_reports_outcomes(self, monkeypatch) -> None:
        class FakeMonitor:
            def poll_once(self) -> PollResult:
                result = PollResult(fetched=3, recorded=2, cursor=40)
                result.count("processed")
                result.count("processed")
                result.count("dropped")
                return result

        monkeypatch.setattr(booking_tasks, "LedgerEventMonitor", FakeMonitor)

        summary = booking_tasks.poll_ledger_events()

        assert summary == {
            "fetched": 3,
            "recorded": 2,
            "cursor": 40,
            "outcomes": {"processed": 2, "dropped": 1},
        }
