"""Tests for the reminder store router and its backends."""

import asyncio
from datetime import datetime, timedelta

import aiosqlite
import pytest

from conftest import FlakyBackend
from nudge.errors import BackendUnavailable
from nudge.models.reminder import (
    PushKeys,
    ReminderCreate,
    ReminderFilter,
    ReminderPatch,
    ReminderStatus,
)
from nudge.storage.memory_store import InMemoryBackend
from nudge.storage.reminder_store import ReminderStore
from nudge.storage.sqlite_store import SQLiteBackend


KEYS = PushKeys(p256dh="BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM",
                auth="tBHItJI5svbpez7KI4CCXg")


def make_store(durable, clock=None) -> ReminderStore:
    return ReminderStore(
        durable,
        operation_timeout_seconds=0.2,
        probe_interval_seconds=0,
        clock=clock or datetime.now,
    )


def draft(text="call mom", due_at=None) -> ReminderCreate:
    return ReminderCreate(text=text, due_at=due_at or datetime(2025, 6, 10, 15, 0))


class HangingBackend(InMemoryBackend):
    name = "hanging"

    async def insert(self, reminder):
        await asyncio.sleep(5)
        return await super().insert(reminder)


@pytest.mark.asyncio
async def test_create_assigns_id_and_defaults(flaky_backend, clock):
    store = make_store(flaky_backend, clock)
    await store.connect()

    reminder = await store.create(draft())

    assert len(reminder.id) == 32
    assert reminder.status == ReminderStatus.PENDING
    assert reminder.snooze_count == 0
    assert reminder.created_at == clock.now
    assert await flaky_backend.get(reminder.id) == reminder
    assert store.health_status()["backend"] == "durable"


@pytest.mark.asyncio
async def test_outage_is_invisible_to_callers(flaky_backend):
    store = make_store(flaky_backend)
    await store.connect()

    flaky_backend.down = True
    reminder = await store.create(draft())

    assert await store.get(reminder.id) == reminder
    health = store.health_status()
    assert health["backend"] == "fallback"
    assert health["failovers"] == 1
    assert "simulated outage" in health["last_error"]


@pytest.mark.asyncio
async def test_recovery_switches_back_and_keeps_fallback_ids(flaky_backend, clock):
    store = make_store(flaky_backend, clock)
    await store.connect()

    flaky_backend.down = True
    during_outage = await store.create(draft("during outage"))
    clock.advance(seconds=1)

    flaky_backend.down = False
    after_recovery = await store.create(draft("after recovery"))

    assert store.is_durable_active
    assert await flaky_backend.get(after_recovery.id) is not None
    # Created on the fallback, still resolvable
    assert (await store.get(during_outage.id)).text == "during outage"
    listed = await store.list_reminders(ReminderFilter.ALL)
    assert [r.text for r in listed] == ["during outage", "after recovery"]


@pytest.mark.asyncio
async def test_transition_reaches_fallback_records_after_recovery(flaky_backend):
    store = make_store(flaky_backend)
    await store.connect()

    flaky_backend.down = True
    reminder = await store.create(draft())
    flaky_backend.down = False

    notified = await store.transition(
        reminder.id, (ReminderStatus.PENDING,), ReminderPatch(status=ReminderStatus.NOTIFIED)
    )
    assert notified.status == ReminderStatus.NOTIFIED


@pytest.mark.asyncio
async def test_durable_timeout_falls_back():
    store = make_store(HangingBackend())
    await store.connect()

    reminder = await store.create(draft())

    assert store.health_status()["backend"] == "fallback"
    assert await store.get(reminder.id) == reminder


@pytest.mark.asyncio
async def test_probe_interval_throttles_recovery(flaky_backend):
    store = ReminderStore(flaky_backend, operation_timeout_seconds=0.2, probe_interval_seconds=60)
    await store.connect()
    flaky_backend.down = True
    await store.create(draft())

    flaky_backend.down = False
    assert await store.probe() is False
    assert await store.probe(force=True) is True


@pytest.mark.asyncio
async def test_conditional_transition_only_applies_once(flaky_backend):
    store = make_store(flaky_backend)
    await store.connect()
    reminder = await store.create(draft())

    patch = ReminderPatch(status=ReminderStatus.NOTIFIED)
    first, second = await asyncio.gather(
        store.transition(reminder.id, (ReminderStatus.PENDING,), patch),
        store.transition(reminder.id, (ReminderStatus.PENDING,), patch),
    )

    assert [first is None, second is None].count(True) == 1


@pytest.mark.asyncio
async def test_list_filters(clock):
    store = make_store(InMemoryBackend(), clock)
    await store.connect()
    today = await store.create(draft("today", clock.now + timedelta(hours=2)))
    notified = await store.create(draft("notified", clock.now + timedelta(days=2)))
    done = await store.create(draft("done", clock.now - timedelta(days=1)))
    await store.update(notified.id, ReminderPatch(status=ReminderStatus.NOTIFIED))
    await store.update(done.id, ReminderPatch(status=ReminderStatus.COMPLETED))

    pending = await store.list_reminders(ReminderFilter.PENDING, now=clock.now)
    completed = await store.list_reminders(ReminderFilter.COMPLETED, now=clock.now)
    todays = await store.list_reminders(ReminderFilter.TODAY, now=clock.now)

    assert [r.text for r in pending] == ["today", "notified"]
    assert [r.text for r in completed] == ["done"]
    assert [r.id for r in todays] == [today.id]


@pytest.mark.asyncio
async def test_due_candidates_are_pending_only(clock):
    store = make_store(InMemoryBackend(), clock)
    await store.connect()
    due = await store.create(draft("due", clock.now - timedelta(minutes=1)))
    await store.create(draft("future", clock.now + timedelta(minutes=1)))
    fired = await store.create(draft("fired", clock.now - timedelta(minutes=2)))
    await store.update(fired.id, ReminderPatch(status=ReminderStatus.NOTIFIED))

    candidates = await store.list_due_candidates(clock.now)

    assert [r.id for r in candidates] == [due.id]


@pytest.mark.asyncio
async def test_subscriptions_survive_resubscribe(flaky_backend, clock):
    store = make_store(flaky_backend, clock)
    await store.connect()

    first = await store.save_subscription("https://push.example/abc", KEYS, "Firefox")
    await store.deactivate_subscription("https://push.example/abc")
    assert await store.list_active_subscriptions() == []

    clock.advance(minutes=5)
    again = await store.save_subscription("https://push.example/abc", KEYS, "Firefox")
    assert again.is_active
    assert again.created_at == first.created_at


@pytest.mark.asyncio
async def test_sqlite_round_trip(tmp_path, clock):
    backend = SQLiteBackend(str(tmp_path / "db" / "reminders.db"))
    store = make_store(backend, clock)
    await store.connect()

    reminder = await store.create(ReminderCreate(
        text="take pills", due_at=clock.now + timedelta(minutes=5), repeat_count=3,
        voice_enabled=False, original_input="take pills in 5 minutes 3 times",
    ))
    fetched = await store.get(reminder.id)
    assert fetched == reminder

    notified = await store.transition(
        reminder.id, (ReminderStatus.PENDING,),
        ReminderPatch(status=ReminderStatus.NOTIFIED, notified_at=clock.now),
    )
    assert notified.status == ReminderStatus.NOTIFIED
    assert notified.notified_at == clock.now
    assert await store.transition(
        reminder.id, (ReminderStatus.PENDING,), ReminderPatch(status=ReminderStatus.NOTIFIED)
    ) is None

    await store.save_subscription("https://push.example/1", KEYS, "Chrome")
    await store.touch_subscription("https://push.example/1")
    (subscription,) = await store.list_active_subscriptions()
    assert subscription.last_used_at == clock.now
    assert subscription.keys == KEYS

    assert await store.delete(reminder.id) is True
    assert await store.get(reminder.id) is None
    await store.close()

    reopened = make_store(SQLiteBackend(str(tmp_path / "db" / "reminders.db")))
    await reopened.connect()
    assert len(await reopened.list_active_subscriptions()) == 1
    await reopened.close()


@pytest.mark.asyncio
async def test_unopenable_sqlite_starts_on_fallback(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = make_store(SQLiteBackend(str(blocker / "reminders.db")))

    await store.connect()
    reminder = await store.create(draft())

    assert store.health_status()["backend"] == "fallback"
    assert await store.get(reminder.id) == reminder


@pytest.mark.asyncio
async def test_sqlite_constraint_error_is_bad_input_not_outage(tmp_path, clock):
    store = make_store(SQLiteBackend(str(tmp_path / "reminders.db")), clock)
    await store.connect()
    reminder = await store.create(draft())

    # Bypass patch validation to reach the NOT NULL constraint
    cleared = ReminderPatch.model_construct(_fields_set={"due_at"}, due_at=None)
    with pytest.raises(ValueError):
        await store.update(reminder.id, cleared)

    assert store.health_status()["backend"] == "durable"
    assert store.health_status()["failovers"] == 0
    assert await store.get(reminder.id) == reminder
    await store.close()


class BrokenConnection:
    async def close(self):
        raise aiosqlite.OperationalError("disk I/O error")


@pytest.mark.asyncio
async def test_sqlite_close_failure_is_reported_as_unavailable(tmp_path):
    backend = SQLiteBackend(str(tmp_path / "reminders.db"))
    backend._conn = BrokenConnection()

    with pytest.raises(BackendUnavailable):
        await backend.close()
    assert backend._conn is None


@pytest.mark.asyncio
async def test_store_close_survives_sqlite_close_failure(tmp_path):
    backend = SQLiteBackend(str(tmp_path / "reminders.db"))
    store = make_store(backend)
    await store.connect()
    real_connection = backend._conn
    backend._conn = BrokenConnection()

    await store.close()

    await real_connection.close()


@pytest.mark.asyncio
async def test_purge_completed_before_cutoff(flaky_backend, clock):
    store = make_store(flaky_backend, clock)
    await store.connect()
    old = await store.create(draft("old", due_at=clock.now - timedelta(days=10)))
    await store.update(old.id, ReminderPatch(status=ReminderStatus.COMPLETED))
    pending = await store.create(draft("still pending", due_at=clock.now - timedelta(days=10)))
    fresh = await store.create(draft("fresh", due_at=clock.now - timedelta(days=1)))
    await store.update(fresh.id, ReminderPatch(status=ReminderStatus.COMPLETED))

    purged = await store.purge_completed_before(clock.now - timedelta(days=7))

    assert purged == [old.id]
    assert await store.get(old.id) is None
    assert await store.get(pending.id) is not None
    assert await store.get(fresh.id) is not None
