"""Tests for reminder parsing, storage and the scheduler."""

import os
import time
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

import pytest

from jarvis_gateway.pending_actions import InMemoryPendingActionStore, PendingAction, PendingIntent
from jarvis_orchestrator.reminders import (
    REMINDER_PREFIX,
    InMemoryReminderStore,
    ReminderScheduler,
    ReminderStore,
    parse_reminder,
)

NOW = datetime(2026, 3, 14, 12, 0, 0)
T0 = 1_700_000_000_000


@pytest.fixture
def new_york_tz():
    """Pin local time to a zone with DST transitions."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    previous = os.environ.get("TZ")
    os.environ["TZ"] = "America/New_York"
    time.tzset()
    yield
    if previous is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = previous
    time.tzset()


class TestParseReminder:
    def test_relative_minutes(self):
        parsed = parse_reminder("remind me in 10 minutes buy water", now=NOW)
        assert parsed.fire_at == NOW + timedelta(minutes=10)
        assert parsed.body == "buy water"

    def test_relative_without_me(self):
        parsed = parse_reminder("remind in 30 sec stretch", now=NOW)
        assert parsed.fire_at == NOW + timedelta(seconds=30)
        assert parsed.body == "stretch"

    def test_relative_hours_russian(self):
        parsed = parse_reminder("напомни через 2 часа позвонить маме", now=NOW)
        assert parsed.fire_at == NOW + timedelta(hours=2)
        assert parsed.body == "позвонить маме"

    def test_tomorrow_at(self):
        parsed = parse_reminder("remind me tomorrow at 09:05 pay the internet bill", now=NOW)
        assert parsed.fire_at == datetime(2026, 3, 15, 9, 5, 0)
        assert parsed.body == "pay the internet bill"

    def test_tomorrow_russian(self):
        parsed = parse_reminder("напомни завтра в 7:30 зарядка", now=NOW)
        assert parsed.fire_at == datetime(2026, 3, 15, 7, 30, 0)

    def test_tomorrow_crosses_month(self):
        parsed = parse_reminder("remind tomorrow at 08:00 rent", now=datetime(2026, 3, 31, 22, 0))
        assert parsed.fire_at == datetime(2026, 4, 1, 8, 0)

    def test_fire_at_ms_matches_datetime(self):
        parsed = parse_reminder("remind in 1 hour x", now=NOW)
        assert parsed.fire_at_ms == int((NOW + timedelta(hours=1)).timestamp() * 1000)

    def test_relative_delay_is_exact_across_fall_back(self, new_york_tz):
        # 01:30 on 2026-11-01 is an hour before clocks go back in New York.
        now = datetime(2026, 11, 1, 1, 30)
        parsed = parse_reminder("remind in 1 hour check oven", now=now)
        assert parsed.fire_at_ms - int(now.timestamp() * 1000) == 60 * 60 * 1000

    def test_relative_delay_is_exact_across_spring_forward(self, new_york_tz):
        now = datetime(2026, 3, 8, 1, 45)
        parsed = parse_reminder("remind in 30 minutes feed the cat", now=now)
        assert parsed.fire_at_ms - int(now.timestamp() * 1000) == 30 * 60 * 1000

    def test_tomorrow_keeps_wall_clock_across_fall_back(self, new_york_tz):
        parsed = parse_reminder("remind tomorrow at 09:00 standup", now=datetime(2026, 10, 31, 22, 0))
        assert parsed.fire_at == datetime(2026, 11, 1, 9, 0)

    @pytest.mark.parametrize(
        "text",
        [
            "remind in 0 minutes nothing",
            "remind in 5 fortnights something",
            "remind in 10 minutes",
            "remind me tomorrow at 24:00 late",
            "remind me tomorrow at 23:60 late",
            "remind me tomorrow at 09:00",
            "remind me next week",
            "remind in 999999999999 hours forever",
            "",
            None,
        ],
    )
    def test_rejected(self, text):
        assert parse_reminder(text, now=NOW) is None


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path: Path):
    if request.param == "sqlite":
        s = ReminderStore(tmp_path / "reminders.db")
    else:
        s = InMemoryReminderStore()
    yield s
    s.close()


class TestReminderStore:
    def test_add_and_list_soonest_first(self, store):
        later = store.add_reminder("100", "later", T0 + 5000)
        sooner = store.add_reminder("100", "sooner", T0 + 1000)
        store.add_reminder("200", "other chat", T0)

        entries = store.list_reminders("100")
        assert [e.id for e in entries] == [sooner, later]
        assert store.count() == 3

    def test_ids_are_unique(self, store):
        ids = {store.add_reminder("1", "x", T0) for _ in range(50)}
        assert len(ids) == 50

    def test_claim_due_removes_entries(self, store):
        store.add_reminder("1", "due", T0)
        store.add_reminder("1", "future", T0 + 60_000)

        claimed = store.claim_due(T0)
        assert [e.payload_text for e in claimed] == ["due"]
        assert store.claim_due(T0) == []
        assert store.count() == 1

    def test_claim_due_respects_batch_limit(self, store):
        for i in range(5):
            store.add_reminder("1", f"r{i}", T0 + i)
        assert len(store.claim_due(T0 + 10, limit=2)) == 2
        assert len(store.claim_due(T0 + 10, limit=0)) == 3

    def test_cancel_by_prefix(self, store):
        reminder_id = store.add_reminder("1", "call", T0)
        assert store.cancel_reminder("1", reminder_id[:6]) == reminder_id
        assert store.claim_due(T0 + 1) == []

    def test_cancel_requires_owner_and_length(self, store):
        reminder_id = store.add_reminder("1", "call", T0)
        assert store.cancel_reminder("2", reminder_id[:8]) is None
        assert store.cancel_reminder("1", reminder_id[:3]) is None
        assert store.count() == 1


def test_sqlite_store_survives_reopen(tmp_path: Path):
    db_path = tmp_path / "reminders.db"
    first = ReminderStore(db_path)
    reminder_id = first.add_reminder("42", "persist me", T0)
    first.close()

    second = ReminderStore(db_path)
    try:
        claimed = second.claim_due(T0)
        assert [e.id for e in claimed] == [reminder_id]
    finally:
        second.close()


class TestReminderScheduler:
    def _scheduler(self, store, publish, clock):
        return ReminderScheduler(store, publish, interval_seconds=0.01, now_fn=lambda: clock["now"])

    def test_fires_once_with_prefix(self, store):
        publish = Mock(return_value=True)
        clock = {"now": T0}
        scheduler = self._scheduler(store, publish, clock)
        scheduler.schedule("77", "drink water", T0)

        assert scheduler.run_once() == 1
        publish.assert_called_once_with("77", f"{REMINDER_PREFIX}drink water")

        assert scheduler.run_once() == 0
        assert publish.call_count == 1

    def test_two_reminders_five_seconds_apart(self, store):
        publish = Mock(return_value=True)
        clock = {"now": T0}
        scheduler = self._scheduler(store, publish, clock)
        scheduler.schedule("1", "first", T0 + 1000)
        scheduler.schedule("1", "second", T0 + 6000)

        clock["now"] = T0 + 1000
        scheduler.run_once()
        assert [c.args[1] for c in publish.call_args_list] == [f"{REMINDER_PREFIX}first"]

        clock["now"] = T0 + 6000
        scheduler.run_once()
        assert [c.args[1] for c in publish.call_args_list] == [
            f"{REMINDER_PREFIX}first",
            f"{REMINDER_PREFIX}second",
        ]

    def test_failed_delivery_is_dropped(self, store):
        publish = Mock(return_value=False)
        clock = {"now": T0}
        scheduler = self._scheduler(store, publish, clock)
        scheduler.schedule("1", "lost", T0)

        assert scheduler.run_once() == 0
        assert store.count() == 0
        scheduler.run_once()
        assert publish.call_count == 1

    def test_publish_exception_does_not_stop_batch(self, store):
        publish = Mock(side_effect=[RuntimeError("boom"), True])
        clock = {"now": T0}
        scheduler = self._scheduler(store, publish, clock)
        scheduler.schedule("1", "a", T0)
        scheduler.schedule("1", "b", T0 + 1)

        clock["now"] = T0 + 1
        assert scheduler.run_once() == 1
        assert publish.call_count == 2

    def test_thread_start_and_stop(self, store):
        publish = Mock(return_value=True)
        clock = {"now": T0}
        scheduler = self._scheduler(store, publish, clock)
        scheduler.schedule("1", "background", T0)

        scheduler.start()
        try:
            for _ in range(200):
                if publish.called:
                    break
                scheduler._stop_event.wait(0.01)
        finally:
            scheduler.stop()
            scheduler.join(timeout=2)

        assert not scheduler.is_alive()
        publish.assert_called_once_with("1", f"{REMINDER_PREFIX}background")

    def test_housekeeping_runs_once_per_interval(self, store):
        housekeeping = Mock()
        scheduler = ReminderScheduler(
            store, Mock(return_value=True), housekeeping_fn=housekeeping, housekeeping_interval=3600
        )
        assert scheduler.run_housekeeping() is True
        assert scheduler.run_housekeeping() is False
        housekeeping.assert_called_once_with()

    def test_housekeeping_failure_is_logged_not_raised(self, store):
        scheduler = ReminderScheduler(
            store, Mock(), housekeeping_fn=Mock(side_effect=RuntimeError("locked")), housekeeping_interval=0
        )
        assert scheduler.run_housekeeping() is True
        assert scheduler.run_housekeeping() is True

    def test_no_housekeeping_hook(self, store):
        assert ReminderScheduler(store, Mock()).run_housekeeping() is False

    def test_background_loop_purges_expired_drafts(self, store):
        clock = {"now": 1000.0}
        pending = InMemoryPendingActionStore(ttl_seconds=60, now_fn=lambda: clock["now"])
        pending.set_pending("9", PendingAction(intent=PendingIntent.CREATE_NOTE, fields={"text": "stale"}))
        clock["now"] += 120

        scheduler = ReminderScheduler(
            store,
            Mock(return_value=True),
            interval_seconds=0.01,
            housekeeping_fn=pending.cleanup_expired,
        )
        scheduler.start()
        try:
            for _ in range(200):
                if not pending._actions:
                    break
                scheduler._stop_event.wait(0.01)
        finally:
            scheduler.stop()
            scheduler.join(timeout=2)

        assert pending._actions == {}
