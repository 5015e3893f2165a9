"""Reminder store that routes between a durable and a volatile backend.

Every call goes to the durable backend while it is healthy. When a call fails
with ``BackendUnavailable`` (or times out) the store flips its health flag,
answers from the in-process fallback and keeps doing so until a probe of the
durable backend succeeds again. Callers never see the outage; it only shows up
in ``health_status()``.
"""

import asyncio
import time
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, Dict, List, Optional

from nudge.models.reminder import (
    PushKeys,
    PushSubscription,
    Reminder,
    ReminderCreate,
    ReminderFilter,
    ReminderPatch,
    ReminderStatus,
)
from nudge.errors import BackendUnavailable
from nudge.storage.base import ReminderBackend
from nudge.storage.memory_store import InMemoryBackend
from nudge.utils.logger import log_debug, log_info, log_warning


class BackendKind(str, Enum):
    DURABLE = "durable"
    FALLBACK = "fallback"


class ReminderStore:
    """Health-checked router over two interchangeable backends."""

    def __init__(
        self,
        durable: Optional[ReminderBackend],
        fallback: Optional[ReminderBackend] = None,
        operation_timeout_seconds: float = 3.0,
        probe_interval_seconds: float = 10.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the store.

        Args:
            durable: Primary backend (None runs fallback-only)
            fallback: Volatile backend, an ``InMemoryBackend`` by default
            operation_timeout_seconds: Upper bound for each durable call
            probe_interval_seconds: Minimum gap between recovery probes
            clock: Source of "now" for creation timestamps
        """
        self.durable = durable
        self.fallback = fallback or InMemoryBackend()
        self.operation_timeout = operation_timeout_seconds
        self.probe_interval = probe_interval_seconds
        self._clock = clock

        self._healthy = durable is not None
        self._last_probe = 0.0
        self._last_error: Optional[str] = None
        self._failovers = 0
        self._probe_lock = asyncio.Lock()

    # Lifecycle and health

    async def connect(self) -> None:
        """Connect the durable backend; start on the fallback if that fails."""
        await self.fallback.connect()
        if self.durable is None:
            return
        try:
            await asyncio.wait_for(self.durable.connect(), timeout=self.operation_timeout)
            self._mark_healthy()
        except (BackendUnavailable, asyncio.TimeoutError) as e:
            self._mark_unhealthy(e)

    async def close(self) -> None:
        if self.durable is not None:
            try:
                await self.durable.close()
            except BackendUnavailable as e:
                log_warning(f"Error closing durable store: {e}", component="store")
        await self.fallback.close()

    @property
    def is_durable_active(self) -> bool:
        return self._healthy

    def health_status(self) -> Dict[str, Any]:
        """Which backend is serving calls, plus failover bookkeeping."""
        return {
            "backend": (BackendKind.DURABLE if self._healthy else BackendKind.FALLBACK).value,
            "durable_configured": self.durable is not None,
            "durable_name": self.durable.name if self.durable else None,
            "failovers": self._failovers,
            "last_error": self._last_error,
        }

    def _mark_unhealthy(self, error: Exception) -> None:
        self._last_error = str(error) or error.__class__.__name__
        self._last_probe = time.monotonic()
        if self._healthy:
            self._healthy = False
            self._failovers += 1
            log_warning(f"Durable store unavailable, using in-memory fallback: {self._last_error}",
                        component="store")

    def _mark_healthy(self) -> None:
        if not self._healthy:
            log_info("Durable store reachable again, switching back", component="store")
        self._healthy = True

    async def probe(self, force: bool = False) -> bool:
        """Check the durable backend and update the health flag.

        Args:
            force: Probe even if the last probe was recent

        Returns:
            True when the durable backend is serving calls
        """
        if self.durable is None:
            return False
        if self._healthy and not force:
            return True
        if not force and time.monotonic() - self._last_probe < self.probe_interval:
            return False

        async with self._probe_lock:
            self._last_probe = time.monotonic()
            try:
                await asyncio.wait_for(self.durable.ping(), timeout=self.operation_timeout)
            except (BackendUnavailable, asyncio.TimeoutError) as e:
                self._last_error = str(e) or e.__class__.__name__
                log_debug(f"Durable store probe failed: {self._last_error}", component="store")
                self._healthy = False
                return False

            self._mark_healthy()
            return True

    async def _route(
        self,
        operation: Callable[[ReminderBackend], Awaitable[Any]],
        label: str,
    ) -> Any:
        """Run ``operation`` on the durable backend, falling back on failure."""
        if await self.probe():
            try:
                return await asyncio.wait_for(operation(self.durable), timeout=self.operation_timeout)
            except (BackendUnavailable, asyncio.TimeoutError) as e:
                log_debug(f"{label} failed on durable store: {e!r}", component="store")
                self._mark_unhealthy(e)
        return await operation(self.fallback)

    async def _route_with_lookup(
        self,
        operation: Callable[[ReminderBackend], Awaitable[Any]],
        label: str,
    ) -> Any:
        """Like ``_route`` but a miss on the durable backend also asks the fallback.

        Ids handed out during an outage live only in the fallback.
        """
        result = await self._route(operation, label)
        if result is None or result is False:
            if self._healthy:
                return await operation(self.fallback)
        return result

    # Reminders

    async def create(self, data: ReminderCreate) -> Reminder:
        """Store a new reminder. The id is assigned here, not by a backend."""
        reminder = Reminder(
            id=uuid.uuid4().hex,
            text=data.text,
            due_at=data.due_at,
            voice_enabled=data.voice_enabled,
            repeat_count=data.repeat_count,
            original_input=data.original_input,
            created_at=self._clock(),
        )
        return await self._route(lambda backend: backend.insert(reminder), "create")

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        return await self._route_with_lookup(lambda backend: backend.get(reminder_id), "get")

    async def update(self, reminder_id: str, patch: ReminderPatch) -> Optional[Reminder]:
        changes = patch.changes()
        return await self._route_with_lookup(
            lambda backend: backend.update(reminder_id, changes), "update"
        )

    async def transition(
        self,
        reminder_id: str,
        expected: Collection[ReminderStatus],
        patch: ReminderPatch,
    ) -> Optional[Reminder]:
        """Conditional update: applied only if the status is still in ``expected``."""
        changes = patch.changes()
        expected = tuple(expected)
        result = await self._route(
            lambda backend: backend.transition(reminder_id, expected, changes), "transition"
        )
        if result is None and self._healthy and await self.fallback.get(reminder_id) is not None:
            return await self.fallback.transition(reminder_id, expected, changes)
        return result

    async def delete(self, reminder_id: str) -> bool:
        return await self._route_with_lookup(lambda backend: backend.delete(reminder_id), "delete")

    async def _list_merged(self, **filters) -> List[Reminder]:
        reminders = await self._route(lambda backend: backend.list(**filters), "list")
        if self._healthy:
            seen = {r.id for r in reminders}
            extra = [r for r in await self.fallback.list(**filters) if r.id not in seen]
            if extra:
                reminders = sorted(reminders + extra, key=lambda r: r.created_at)
        return reminders

    async def list_due_candidates(
        self,
        now: Optional[datetime] = None,
        margin: timedelta = timedelta(0),
    ) -> List[Reminder]:
        """Pending reminders whose due time falls before ``now + margin``."""
        now = now or self._clock()
        return await self._list_merged(statuses=(ReminderStatus.PENDING,), due_before=now + margin)

    async def list_by_status(self, *statuses: ReminderStatus) -> List[Reminder]:
        return await self._list_merged(statuses=statuses)

    async def purge_completed_before(self, cutoff: datetime) -> List[str]:
        """Delete completed reminders due before ``cutoff``.

        Returns:
            Ids of the deleted reminders
        """
        expired = await self._list_merged(statuses=(ReminderStatus.COMPLETED,), due_before=cutoff)
        purged = []
        for reminder in expired:
            if reminder.due_at < cutoff and await self.delete(reminder.id):
                purged.append(reminder.id)
        return purged

    async def list_reminders(self, reminder_filter: ReminderFilter = ReminderFilter.ALL,
                             now: Optional[datetime] = None) -> List[Reminder]:
        """Reminders for the read API, oldest first.

        ``pending`` includes reminders that are notified but not yet completed.
        """
        reminder_filter = ReminderFilter(reminder_filter)
        if reminder_filter == ReminderFilter.PENDING:
            return await self._list_merged(statuses=(ReminderStatus.PENDING, ReminderStatus.NOTIFIED))
        if reminder_filter == ReminderFilter.COMPLETED:
            return await self._list_merged(statuses=(ReminderStatus.COMPLETED,))
        if reminder_filter == ReminderFilter.TODAY:
            now = now or self._clock()
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            end = start + timedelta(days=1) - timedelta(microseconds=1)
            return await self._list_merged(due_from=start, due_before=end)
        return await self._list_merged()

    # Push subscriptions

    async def save_subscription(self, endpoint: str, keys: PushKeys, user_agent: str) -> PushSubscription:
        """Register (or re-activate) a push endpoint."""
        existing = await self.get_subscription(endpoint)
        subscription = PushSubscription(
            endpoint=endpoint,
            keys=keys,
            user_agent=user_agent or "unknown",
            created_at=existing.created_at if existing else self._clock(),
            last_used_at=existing.last_used_at if existing else None,
            is_active=True,
        )
        return await self._route(lambda backend: backend.upsert_subscription(subscription),
                                 "save_subscription")

    async def get_subscription(self, endpoint: str) -> Optional[PushSubscription]:
        return await self._route_with_lookup(lambda backend: backend.get_subscription(endpoint),
                                             "get_subscription")

    async def list_active_subscriptions(self) -> List[PushSubscription]:
        subscriptions = await self._route(lambda backend: backend.list_active_subscriptions(),
                                          "list_subscriptions")
        if self._healthy:
            seen = {s.endpoint for s in subscriptions}
            subscriptions += [s for s in await self.fallback.list_active_subscriptions()
                              if s.endpoint not in seen]
        return subscriptions

    async def deactivate_subscription(self, endpoint: str) -> bool:
        result = await self._route_with_lookup(
            lambda backend: backend.update_subscription(endpoint, {"is_active": False}),
            "deactivate_subscription",
        )
        return result is not None

    async def touch_subscription(self, endpoint: str, when: Optional[datetime] = None) -> None:
        when = when or self._clock()
        await self._route_with_lookup(
            lambda backend: backend.update_subscription(endpoint, {"last_used_at": when}),
            "touch_subscription",
        )

    async def delete_subscription(self, endpoint: str) -> bool:
        return await self._route_with_lookup(lambda backend: backend.delete_subscription(endpoint),
                                             "delete_subscription")
