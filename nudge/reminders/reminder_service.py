"""Reminder service that coordinates storage, monitoring and notifications.

This module provides the ReminderService class that ties together the
ReminderStore, ReminderMonitor and NotificationDispatcher and exposes the
operations the transport layer calls.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from config.config import RemindersConfig
from nudge.errors import ParseFailure, ReminderNotFound
from nudge.models.reminder import (
    EDITABLE_FIELDS,
    DismissMethod,
    PushKeys,
    PushSubscription,
    Reminder,
    ReminderCreate,
    ReminderFilter,
    ReminderPatch,
    ReminderStatus,
)
from nudge.reminders.client_registry import ClientRegistry, LiveConnection
from nudge.reminders.notification_dispatcher import NotificationDispatcher
from nudge.reminders.push_sender import PushSender
from nudge.reminders.reminder_monitor import ReminderMonitor, ScanResult
from nudge.storage.reminder_store import ReminderStore
from nudge.utils import date_parser
from nudge.utils.logger import log_debug, log_info


PUSH_ACTION_DISMISS = "dismiss"
PUSH_ACTION_SNOOZE = "snooze"
PUSH_SNOOZE_MINUTES = 10

class ReminderService:
    """Main service for managing reminders and notifications.

    This service:
    - Turns sentences into stored reminders
    - Applies dismiss and snooze to the reminder state machine
    - Owns the live client registry and push subscriptions
    - Manages the monitor lifecycle (start/stop)
    """

    def __init__(
        self,
        store: ReminderStore,
        config: Optional[RemindersConfig] = None,
        push_sender: Optional[PushSender] = None,
        registry: Optional[ClientRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the reminder service.

        Args:
            store: Reminder store (durable with failover)
            config: Reminders configuration
            push_sender: Web Push sender, push channel off when None
            registry: Live client registry, a fresh one by default
            clock: Source of "now", injectable for tests
        """
        self.store = store
        self.config = config or RemindersConfig()
        self.registry = registry or ClientRegistry()
        self._clock = clock

        self.dispatcher = NotificationDispatcher(
            registry=self.registry,
            store=store,
            push_sender=push_sender,
            delivery_timeout_seconds=self.config.delivery_timeout_seconds,
        )
        self.monitor = ReminderMonitor(
            store=store,
            dispatcher=self.dispatcher,
            check_interval_seconds=self.config.check_interval_seconds,
            grace_period_seconds=self.config.grace_period_seconds,
            retention_days=self.config.retention_days,
            cleanup_interval_seconds=self.config.cleanup_interval_seconds,
            clock=clock,
        )

        self._is_started = False

        log_info("ReminderService initialized", component="service")

    async def start(self) -> None:
        """Connect the store and start the monitor."""
        if self._is_started:
            log_debug("ReminderService already started", component="service")
            return

        await self.store.connect()

        if self.config.enabled:
            await self.monitor.start()
        else:
            log_info("Reminder monitor disabled in configuration", component="service")

        self._is_started = True
        log_info("ReminderService started successfully", component="service")

    async def stop(self) -> None:
        """Stop the monitor (letting the current scan finish), then close the store."""
        if not self._is_started:
            return

        await self.monitor.stop()
        await self.store.close()

        self._is_started = False
        log_info("ReminderService stopped", component="service")

    # Reminders

    async def create_reminder(
        self,
        text: str,
        due_at: Optional[datetime] = None,
        voice_enabled: bool = True,
        repeat_count: Optional[int] = None,
    ) -> Reminder:
        """Create a reminder from a sentence, or from text plus an explicit time.

        This is used when the user says "remind me in 2 minutes to stretch".

        Args:
            text: The user's sentence (or the bare task when ``due_at`` is given)
            due_at: Explicit due time; skips parsing
            voice_enabled: Whether clients should announce it
            repeat_count: Announcement repetitions; parsed from "3 times" if omitted

        Returns:
            The stored reminder

        Raises:
            ParseFailure: If ``due_at`` is omitted and no time can be read from ``text``
            ValueError: If the task text is empty
        """
        original_input = text
        if due_at is None:
            parsed = date_parser.parse(text, self._clock())
            if parsed is None:
                raise ParseFailure(text)
            text = parsed.residual_text
            due_at = parsed.due_at
            if repeat_count is None:
                repeat_count = parsed.repeat_count

        reminder = await self.store.create(ReminderCreate(
            text=text,
            due_at=due_at,
            voice_enabled=voice_enabled,
            repeat_count=repeat_count if repeat_count is not None else 1,
            original_input=original_input,
        ))

        log_info(f"Created reminder: '{reminder.text}' "
                 f"{date_parser.format_time_until(reminder.due_at, self._clock())}", component="service")
        return reminder

    async def get_reminder(self, reminder_id: str) -> Reminder:
        reminder = await self.store.get(reminder_id)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        return reminder

    async def update_reminder(self, reminder_id: str, patch: Union[ReminderPatch, Dict[str, Any]]) -> Reminder:
        """Apply a partial update to text, due time, voice or repeat count.

        Lifecycle fields only change through dismiss, snooze and the monitor.

        Raises:
            ReminderNotFound: If the id is unknown
            ValueError: If the patch touches a lifecycle field or clears a required one
        """
        if not isinstance(patch, ReminderPatch):
            patch = ReminderPatch(**patch)

        locked = sorted(set(patch.changes()) - EDITABLE_FIELDS)
        if locked:
            raise ValueError(f"Fields cannot be edited directly: {', '.join(locked)}")

        reminder = await self.store.update(reminder_id, patch)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        log_debug(f"Updated reminder {reminder_id}: {sorted(patch.changes())}", component="service")
        return reminder

    async def delete_reminder(self, reminder_id: str) -> bool:
        deleted = await self.store.delete(reminder_id)
        if deleted:
            log_info(f"Deleted reminder {reminder_id}", component="service")
        return deleted

    async def list_reminders(self, reminder_filter: Union[ReminderFilter, str] = ReminderFilter.ALL) -> List[Reminder]:
        """List reminders, oldest first.

        Args:
            reminder_filter: pending (includes notified), completed, today or all

        Raises:
            ValueError: If the filter name is unknown
        """
        return await self.store.list_reminders(ReminderFilter(reminder_filter), now=self._clock())

    async def dismiss_reminder(
        self,
        reminder_id: str,
        method: Union[DismissMethod, str] = DismissMethod.MANUAL,
    ) -> Reminder:
        """Mark a reminder done. Dismissing a completed reminder changes nothing.

        Raises:
            ReminderNotFound: If the id is unknown
        """
        method = DismissMethod(method)
        reminder = await self.get_reminder(reminder_id)
        if reminder.is_completed:
            log_debug(f"Reminder {reminder_id} already completed", component="service")
            return reminder

        completed = await self.store.transition(
            reminder_id,
            (ReminderStatus.PENDING, ReminderStatus.NOTIFIED),
            ReminderPatch(status=ReminderStatus.COMPLETED, completed_at=self._clock(), dismissed_by=method),
        )
        if completed is None:
            # Completed by someone else in the meantime
            return await self.get_reminder(reminder_id)

        log_info(f"Dismissed reminder '{completed.text}' ({method.value})", component="service")
        return completed

    async def snooze_reminder(self, reminder_id: str, minutes: Optional[int] = None) -> Reminder:
        """Push a reminder back by ``minutes`` and make it pending again.

        Snoozing a completed reminder returns it unchanged.

        Raises:
            ReminderNotFound: If the id is unknown
            ValueError: If ``minutes`` is not positive
        """
        if minutes is None:
            minutes = self.config.default_snooze_minutes
        if minutes <= 0:
            raise ValueError("Snooze minutes must be greater than zero")

        reminder = await self.get_reminder(reminder_id)
        if reminder.is_completed:
            log_debug(f"Not snoozing completed reminder {reminder_id}", component="service")
            return reminder

        now = self._clock()
        snoozed = await self.store.transition(
            reminder_id,
            (ReminderStatus.PENDING, ReminderStatus.NOTIFIED),
            ReminderPatch(
                status=ReminderStatus.PENDING,
                due_at=now + timedelta(minutes=minutes),
                snooze_count=reminder.snooze_count + 1,
                last_snoozed_at=now,
                notified_at=None,
            ),
        )
        if snoozed is None:
            return await self.get_reminder(reminder_id)

        log_info(f"Snoozed reminder '{snoozed.text}' for {minutes} minutes", component="service")
        return snoozed

    # Live clients and push subscriptions

    def register_live_client(self, connection: LiveConnection, client_id: Optional[str] = None) -> str:
        return self.registry.register(connection, client_id)

    def unregister_live_client(self, client_id: str) -> bool:
        return self.registry.unregister(client_id)

    async def register_push_subscription(
        self,
        endpoint: str,
        keys: Union[PushKeys, Dict[str, str]],
        user_agent: str = "unknown",
    ) -> PushSubscription:
        """Register a browser's push endpoint (re-activates a known endpoint)."""
        if not endpoint:
            raise ValueError("Subscription endpoint is required")
        if not isinstance(keys, PushKeys):
            keys = PushKeys(**keys)

        subscription = await self.store.save_subscription(endpoint, keys, user_agent)
        log_info(f"Push subscription registered ({subscription.user_agent[:40]})", component="service")
        return subscription

    async def unregister_push_subscription(self, endpoint: str) -> bool:
        removed = await self.store.deactivate_subscription(endpoint)
        if removed:
            log_info("Push subscription deactivated", component="service")
        return removed

    async def send_test_notification(self) -> Dict[str, int]:
        return await self.dispatcher.send_test_notification()

    async def handle_push_action(self, reminder_id: str, action: str) -> Reminder:
        """Apply a button pressed on a push notification.

        "dismiss" completes the reminder with ``dismissed_by = push``; "snooze"
        pushes it back by the fixed push snooze length.

        Raises:
            ReminderNotFound: If the id is unknown
            ValueError: If the action is not dismiss or snooze
        """
        if action == PUSH_ACTION_DISMISS:
            return await self.dismiss_reminder(reminder_id, DismissMethod.PUSH)
        if action == PUSH_ACTION_SNOOZE:
            return await self.snooze_reminder(reminder_id, PUSH_SNOOZE_MINUTES)
        raise ValueError(f"Invalid push action: {action}")

    async def push_status(self) -> Dict[str, Any]:
        """Active push subscriptions and whether the push channel is on."""
        subscriptions = await self.store.list_active_subscriptions()
        return {
            "enabled": bool(self.dispatcher.push_sender and self.dispatcher.push_sender.enabled),
            "active_subscriptions": len(subscriptions),
            "subscriptions": subscriptions,
        }

    # Monitoring

    async def check_now(self) -> ScanResult:
        """Run a due scan immediately."""
        return await self.monitor.check_now()

    def health_status(self) -> Dict[str, Any]:
        return {
            "started": self._is_started,
            "store": self.store.health_status(),
            "monitor_running": self.monitor.is_running,
            "connected_clients": self.registry.count(),
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get reminder service statistics.

        Returns:
            Dictionary with service stats
        """
        return {
            "is_started": self._is_started,
            "enabled": self.config.enabled,
            "store": self.store.health_status(),
            "monitor": self.monitor.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
