"""Tests for the pending action stores."""

from pathlib import Path

import pytest

from jarvis_gateway.pending_actions import (
    InMemoryPendingActionStore,
    PendingAction,
    PendingActionStore,
    PendingIntent,
    PendingMode,
)


@pytest.fixture(params=["sqlite", "memory"])
def clock_and_store(request, tmp_path: Path):
    clock = {"now": 1_000.0}
    now_fn = lambda: clock["now"]
    if request.param == "sqlite":
        store = PendingActionStore(tmp_path / "pending.db", ttl_seconds=60, now_fn=now_fn)
    else:
        store = InMemoryPendingActionStore(ttl_seconds=60, now_fn=now_fn)
    yield clock, store
    store.close()


def _draft(text="buy milk"):
    return PendingAction(intent=PendingIntent.CREATE_NOTE, fields={"text": text})


def test_set_and_get(clock_and_store):
    _, store = clock_and_store
    stored = store.set_pending("u1", _draft())
    assert stored.created_at == 1_000.0
    assert stored.expires_at == 1_060.0

    pending = store.get_pending("u1")
    assert pending.intent == PendingIntent.CREATE_NOTE
    assert pending.fields == {"text": "buy milk"}
    assert pending.mode == PendingMode.DRAFT


def test_at_most_one_per_user(clock_and_store):
    _, store = clock_and_store
    store.set_pending("u1", _draft("first"))
    store.set_pending("u1", _draft("second"))
    assert store.get_pending("u1").fields["text"] == "second"
    assert store.get_pending("u2") is None


def test_clear(clock_and_store):
    _, store = clock_and_store
    store.set_pending("u1", _draft())
    store.clear_pending("u1")
    assert store.get_pending("u1") is None
    # Clearing an absent entry is a no-op
    store.clear_pending("u1")


def test_expired_action_is_not_returned(clock_and_store):
    clock, store = clock_and_store
    store.set_pending("u1", _draft())
    clock["now"] += 60
    assert store.get_pending("u1") is None


def test_set_resets_ttl(clock_and_store):
    clock, store = clock_and_store
    store.set_pending("u1", _draft())
    clock["now"] += 50
    pending = store.get_pending("u1")
    store.set_pending("u1", pending.with_mode(PendingMode.EDITING))
    clock["now"] += 50
    assert store.get_pending("u1").mode == PendingMode.EDITING


def test_cleanup_expired(clock_and_store):
    clock, store = clock_and_store
    store.set_pending("old", _draft())
    clock["now"] += 30
    store.set_pending("new", _draft())
    clock["now"] += 40
    assert store.cleanup_expired() == 1
    assert store.get_pending("new") is not None


def test_returned_fields_are_copies(clock_and_store):
    _, store = clock_and_store
    store.set_pending("u1", _draft("original"))
    pending = store.get_pending("u1")
    pending.fields["text"] = "mutated"
    assert store.get_pending("u1").fields["text"] == "original"


def test_sqlite_store_survives_reopen(tmp_path: Path):
    db_path = tmp_path / "pending.db"
    first = PendingActionStore(db_path)
    first.set_pending("u1", _draft("durable"))
    first.close()

    second = PendingActionStore(db_path)
    try:
        assert second.get_pending("u1").fields == {"text": "durable"}
    finally:
        second.close()
