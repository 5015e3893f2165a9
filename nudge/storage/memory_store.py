"""In-process reminder storage.

Used as the fallback while the durable store is unreachable. Nothing here
survives a restart.
"""

import asyncio
from datetime import datetime
from typing import Collection, Dict, List, Optional

from nudge.models.reminder import PushSubscription, Reminder, ReminderStatus
from nudge.storage.base import ReminderBackend


class InMemoryBackend(ReminderBackend):
    """Dict-backed store guarded by an asyncio lock."""

    name = "memory"

    def __init__(self):
        self._reminders: Dict[str, Reminder] = {}
        self._subscriptions: Dict[str, PushSubscription] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> None:
        return None

    async def insert(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            self._reminders[reminder.id] = reminder
            return reminder

    async def get(self, reminder_id: str) -> Optional[Reminder]:
        return self._reminders.get(reminder_id)

    async def update(self, reminder_id: str, changes: Dict) -> Optional[Reminder]:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                return None
            updated = current.model_copy(update=changes)
            self._reminders[reminder_id] = updated
            return updated

    async def transition(
        self,
        reminder_id: str,
        expected: Collection[ReminderStatus],
        changes: Dict,
    ) -> Optional[Reminder]:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None or current.status not in expected:
                return None
            updated = current.model_copy(update=changes)
            self._reminders[reminder_id] = updated
            return updated

    async def delete(self, reminder_id: str) -> bool:
        async with self._lock:
            return self._reminders.pop(reminder_id, None) is not None

    async def list(
        self,
        statuses: Optional[Collection[ReminderStatus]] = None,
        due_before: Optional[datetime] = None,
        due_from: Optional[datetime] = None,
    ) -> List[Reminder]:
        reminders = list(self._reminders.values())
        if statuses is not None:
            reminders = [r for r in reminders if r.status in statuses]
        if due_before is not None:
            reminders = [r for r in reminders if r.due_at <= due_before]
        if due_from is not None:
            reminders = [r for r in reminders if r.due_at >= due_from]
        return sorted(reminders, key=lambda r: r.created_at)

    def count(self) -> int:
        return len(self._reminders)

    async def upsert_subscription(self, subscription: PushSubscription) -> PushSubscription:
        async with self._lock:
            self._subscriptions[subscription.endpoint] = subscription
            return subscription

    async def get_subscription(self, endpoint: str) -> Optional[PushSubscription]:
        return self._subscriptions.get(endpoint)

    async def list_active_subscriptions(self) -> List[PushSubscription]:
        return [s for s in self._subscriptions.values() if s.is_active]

    async def update_subscription(self, endpoint: str, changes: Dict) -> Optional[PushSubscription]:
        async with self._lock:
            current = self._subscriptions.get(endpoint)
            if current is None:
                return None
            updated = current.model_copy(update=changes)
            self._subscriptions[endpoint] = updated
            return updated

    async def delete_subscription(self, endpoint: str) -> bool:
        async with self._lock:
            return self._subscriptions.pop(endpoint, None) is not None
