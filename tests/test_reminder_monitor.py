"""Tests for the reminder monitor state machine."""

import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import FakeConnection
from nudge.models.reminder import DismissMethod, ReminderCreate, ReminderPatch, ReminderStatus
from nudge.reminders.client_registry import ClientRegistry
from nudge.reminders.notification_dispatcher import NotificationDispatcher
from nudge.reminders.reminder_monitor import ReminderMonitor
from nudge.storage.memory_store import InMemoryBackend
from nudge.storage.reminder_store import ReminderStore


def build(clock, store=None, interval=5.0, grace=300.0):
    store = store or ReminderStore(InMemoryBackend(), clock=clock)
    registry = ClientRegistry()
    dispatcher = NotificationDispatcher(registry, store, delivery_timeout_seconds=0.2)
    monitor = ReminderMonitor(store, dispatcher, check_interval_seconds=interval,
                              grace_period_seconds=grace, clock=clock)
    return store, registry, monitor


@pytest.mark.asyncio
async def test_due_reminder_is_notified_and_delivered(clock):
    store, registry, monitor = build(clock)
    connection = FakeConnection()
    registry.register(connection)
    due = await store.create(ReminderCreate(text="stretch", due_at=clock.now - timedelta(seconds=1)))
    future = await store.create(ReminderCreate(text="later", due_at=clock.now + timedelta(minutes=1)))

    result = await monitor.check_now()

    assert result.notified == [due.id]
    reminder = await store.get(due.id)
    assert reminder.status == ReminderStatus.NOTIFIED
    assert reminder.notified_at == clock.now
    assert (await store.get(future.id)).status == ReminderStatus.PENDING
    assert [m["reminder"]["id"] for m in connection.sent] == [due.id]


@pytest.mark.asyncio
async def test_overlapping_scans_deliver_once(clock):
    store, registry, monitor = build(clock)
    connection = FakeConnection()
    registry.register(connection)
    await store.create(ReminderCreate(text="stretch", due_at=clock.now))

    first, second = await asyncio.gather(monitor.check_now(), monitor.check_now())

    assert len(first.notified) + len(second.notified) == 1
    assert len(connection.sent) == 1


@pytest.mark.asyncio
async def test_unacknowledged_reminder_auto_completes_after_grace(clock):
    store, _, monitor = build(clock, grace=300)
    reminder = await store.create(ReminderCreate(text="stretch", due_at=clock.now))
    await monitor.check_now()

    clock.advance(seconds=299)
    assert (await monitor.check_now()).auto_completed == []

    clock.advance(seconds=1)
    result = await monitor.check_now()

    assert result.auto_completed == [reminder.id]
    completed = await store.get(reminder.id)
    assert completed.status == ReminderStatus.COMPLETED
    assert completed.dismissed_by == DismissMethod.AUTO
    assert completed.completed_at == clock.now


@pytest.mark.asyncio
async def test_completed_reminders_are_left_alone(clock):
    store, registry, monitor = build(clock)
    connection = FakeConnection()
    registry.register(connection)
    reminder = await store.create(ReminderCreate(text="stretch", due_at=clock.now))
    await store.update(reminder.id, ReminderPatch(status=ReminderStatus.COMPLETED))

    result = await monitor.check_now()

    assert result.notified == []
    assert connection.sent == []


@pytest.mark.asyncio
async def test_background_loop_fires_and_stops():
    store, registry, monitor = build(datetime.now, interval=0.01)
    connection = FakeConnection()
    registry.register(connection)
    reminder = await store.create(ReminderCreate(text="stretch", due_at=datetime.now() - timedelta(seconds=1)))

    await monitor.start()
    assert monitor.is_running
    for _ in range(100):
        if connection.sent:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()

    assert not monitor.is_running
    assert (await store.get(reminder.id)).status == ReminderStatus.NOTIFIED
    assert monitor.get_stats()["scans"] >= 1


class ExplodingOnceStore(ReminderStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    async def list_due_candidates(self, now=None, margin=timedelta(0)):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("disk on fire")
        return await super().list_due_candidates(now, margin)


@pytest.mark.asyncio
async def test_failed_scan_does_not_stop_the_loop():
    store = ExplodingOnceStore(InMemoryBackend())
    _, _, monitor = build(datetime.now, store=store, interval=0.01)

    await monitor.start()
    for _ in range(100):
        if store.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()

    stats = monitor.get_stats()
    assert stats["failed_scans"] == 1
    assert stats["scans"] >= 1


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(clock):
    _, _, monitor = build(clock)
    await monitor.stop()
    assert monitor.get_stats()["is_running"] is False


def build_with_retention(clock, retention_days=7, cleanup_interval=3600):
    store = ReminderStore(InMemoryBackend(), clock=clock)
    dispatcher = NotificationDispatcher(ClientRegistry(), store, delivery_timeout_seconds=0.2)
    monitor = ReminderMonitor(store, dispatcher, retention_days=retention_days,
                              cleanup_interval_seconds=cleanup_interval, clock=clock)
    return store, monitor


@pytest.mark.asyncio
async def test_old_completed_reminders_are_purged(clock):
    store, monitor = build_with_retention(clock)
    old = await store.create(ReminderCreate(text="old chore", due_at=clock.now - timedelta(days=8)))
    await store.update(old.id, ReminderPatch(status=ReminderStatus.COMPLETED, completed_at=clock.now))
    recent = await store.create(ReminderCreate(text="recent chore", due_at=clock.now - timedelta(days=1)))
    await store.update(recent.id, ReminderPatch(status=ReminderStatus.COMPLETED, completed_at=clock.now))
    upcoming = await store.create(ReminderCreate(text="upcoming", due_at=clock.now + timedelta(hours=1)))

    result = await monitor.check_now()

    assert result.purged == [old.id]
    assert result.to_dict()["purged_count"] == 1
    assert await store.get(old.id) is None
    assert (await store.get(recent.id)).status == ReminderStatus.COMPLETED
    assert (await store.get(upcoming.id)).status == ReminderStatus.PENDING
    assert monitor.get_stats()["total_purged"] == 1


@pytest.mark.asyncio
async def test_retention_sweep_runs_once_per_cleanup_interval(clock):
    store, monitor = build_with_retention(clock, retention_days=1, cleanup_interval=3600)
    await monitor.check_now()

    stale = await store.create(ReminderCreate(text="stale", due_at=clock.now - timedelta(days=2)))
    await store.update(stale.id, ReminderPatch(status=ReminderStatus.COMPLETED))

    clock.advance(minutes=30)
    assert (await monitor.check_now()).purged == []

    clock.advance(minutes=30)
    assert (await monitor.check_now()).purged == [stale.id]


@pytest.mark.asyncio
async def test_overdue_pending_reminder_fires_instead_of_being_purged(clock):
    store, monitor = build_with_retention(clock)
    missed = await store.create(ReminderCreate(text="missed", due_at=clock.now - timedelta(days=10)))

    result = await monitor.check_now()

    assert result.notified == [missed.id]
    assert result.purged == []
    assert (await store.get(missed.id)).status == ReminderStatus.NOTIFIED
