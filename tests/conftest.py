"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from nudge.errors import BackendUnavailable, DeliveryFailure
from nudge.models.reminder import PushSubscription
from nudge.storage.memory_store import InMemoryBackend


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FlakyBackend(InMemoryBackend):
    """In-memory backend that can be switched off to simulate an outage."""

    name = "flaky"

    def __init__(self):
        super().__init__()
        self.down = False

    def _check(self):
        if self.down:
            raise BackendUnavailable("simulated outage")

    async def ping(self):
        self._check()

    async def insert(self, reminder):
        self._check()
        return await super().insert(reminder)

    async def get(self, reminder_id):
        self._check()
        return await super().get(reminder_id)

    async def update(self, reminder_id, changes):
        self._check()
        return await super().update(reminder_id, changes)

    async def transition(self, reminder_id, expected, changes):
        self._check()
        return await super().transition(reminder_id, expected, changes)

    async def delete(self, reminder_id):
        self._check()
        return await super().delete(reminder_id)

    async def list(self, statuses=None, due_before=None, due_from=None):
        self._check()
        return await super().list(statuses=statuses, due_before=due_before, due_from=due_from)

    async def upsert_subscription(self, subscription):
        self._check()
        return await super().upsert_subscription(subscription)

    async def get_subscription(self, endpoint):
        self._check()
        return await super().get_subscription(endpoint)

    async def list_active_subscriptions(self):
        self._check()
        return await super().list_active_subscriptions()

    async def update_subscription(self, endpoint, changes):
        self._check()
        return await super().update_subscription(endpoint, changes)

    async def delete_subscription(self, endpoint):
        self._check()
        return await super().delete_subscription(endpoint)


class FakeConnection:
    """Live connection that records what it was sent."""

    def __init__(self, alive: bool = True, fail: bool = False, hang: bool = False):
        self.alive = alive
        self.fail = fail
        self.hang = hang
        self.sent: List[Dict[str, Any]] = []

    def is_alive(self) -> bool:
        return self.alive

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.hang:
            await asyncio.sleep(10)
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.sent.append(payload)


class FakePushSender:
    """Push sender whose per-endpoint outcome is scripted."""

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self.failures: Dict[str, Exception] = {}
        self.sent: List[tuple] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def send(self, subscription: PushSubscription, payload: Dict[str, Any]) -> None:
        error: Optional[Exception] = self.failures.get(subscription.endpoint)
        if error is not None:
            raise error
        self.sent.append((subscription.endpoint, payload))

    def fail_gone(self, endpoint: str) -> None:
        self.failures[endpoint] = DeliveryFailure(endpoint, "410 Gone", gone=True, status_code=410)

    def fail_temporarily(self, endpoint: str) -> None:
        self.failures[endpoint] = DeliveryFailure(endpoint, "503 Service Unavailable", status_code=503)


@pytest.fixture
def now() -> datetime:
    # A Tuesday
    return datetime(2025, 6, 10, 10, 0, 0)


@pytest.fixture
def clock(now) -> FakeClock:
    return FakeClock(now)


@pytest.fixture
def flaky_backend() -> FlakyBackend:
    return FlakyBackend()


@pytest.fixture
def push_sender() -> FakePushSender:
    return FakePushSender()
