"""Storage backend interface shared by the durable and volatile stores."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Collection, Dict, List, Optional

from nudge.models.reminder import PushSubscription, Reminder, ReminderStatus


class ReminderBackend(ABC):
    """One place reminders and push subscriptions can live.

    Backends raise ``BackendUnavailable`` when they cannot be reached; the
    router in ``reminder_store`` decides what to do about it.
    """

    name: str = "backend"

    async def connect(self) -> None:
        """Open connections / create schema. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise ``BackendUnavailable`` unless the backend answers."""

    # Reminders

    @abstractmethod
    async def insert(self, reminder: Reminder) -> Reminder:
        ...

    @abstractmethod
    async def get(self, reminder_id: str) -> Optional[Reminder]:
        ...

    @abstractmethod
    async def update(self, reminder_id: str, changes: Dict) -> Optional[Reminder]:
        """Apply field changes; None when the id is unknown."""

    @abstractmethod
    async def transition(
        self,
        reminder_id: str,
        expected: Collection[ReminderStatus],
        changes: Dict,
    ) -> Optional[Reminder]:
        """Apply changes only if the current status is one of ``expected``.

        Atomic with respect to other calls on the same backend. Returns None
        when the id is unknown or the status did not match.
        """

    @abstractmethod
    async def delete(self, reminder_id: str) -> bool:
        ...

    @abstractmethod
    async def list(
        self,
        statuses: Optional[Collection[ReminderStatus]] = None,
        due_before: Optional[datetime] = None,
        due_from: Optional[datetime] = None,
    ) -> List[Reminder]:
        """Reminders matching the filters, ordered by ``created_at``."""

    # Push subscriptions

    @abstractmethod
    async def upsert_subscription(self, subscription: PushSubscription) -> PushSubscription:
        ...

    @abstractmethod
    async def get_subscription(self, endpoint: str) -> Optional[PushSubscription]:
        ...

    @abstractmethod
    async def list_active_subscriptions(self) -> List[PushSubscription]:
        ...

    @abstractmethod
    async def update_subscription(self, endpoint: str, changes: Dict) -> Optional[PushSubscription]:
        ...

    @abstractmethod
    async def delete_subscription(self, endpoint: str) -> bool:
        ...
