"""Notification dispatcher for due reminders.

Delivers a due reminder through two independent channels at once:

- live: every connected real-time client gets a ``reminder_alert`` event
- push: every active Web Push subscription gets an encrypted notification

Every individual send is bounded by a timeout and isolated from the others;
a failure only prunes the dead connection or deactivates the gone endpoint.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from nudge.errors import DeliveryFailure
from nudge.models.reminder import PushSubscription, Reminder
from nudge.reminders.client_registry import ClientRegistry, LiveConnection
from nudge.reminders.push_sender import PushSender, build_reminder_payload, build_test_payload
from nudge.storage.reminder_store import ReminderStore
from nudge.utils.logger import log_debug, log_error, log_info, log_warning


@dataclass
class DeliveryReport:
    """What happened when one reminder was delivered."""
    reminder_id: str
    live_sent: int = 0
    live_failed: int = 0
    pruned_clients: List[str] = field(default_factory=list)
    push_sent: int = 0
    push_failed: int = 0
    deactivated_endpoints: List[str] = field(default_factory=list)
    skipped_duplicate: bool = False

    @property
    def delivered(self) -> bool:
        return self.live_sent + self.push_sent > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reminder_id": self.reminder_id,
            "live_sent": self.live_sent,
            "live_failed": self.live_failed,
            "pruned_clients": list(self.pruned_clients),
            "push_sent": self.push_sent,
            "push_failed": self.push_failed,
            "deactivated_endpoints": list(self.deactivated_endpoints),
            "skipped_duplicate": self.skipped_duplicate,
        }


@dataclass
class DeliveryAttempts:
    """Per-reminder delivery bookkeeping."""
    attempts: int
    last_attempt_at: datetime
    last_report: DeliveryReport


class NotificationDispatcher:
    """Fans reminders out to live clients and push subscribers."""

    def __init__(
        self,
        registry: ClientRegistry,
        store: ReminderStore,
        push_sender: Optional[PushSender] = None,
        delivery_timeout_seconds: float = 5.0,
        dedup_capacity: int = 1000,
    ):
        """Initialize the notification dispatcher.

        Args:
            registry: Live client registry
            store: Reminder store, used for push subscriptions
            push_sender: Web Push sender (push channel off when None)
            delivery_timeout_seconds: Upper bound for each individual send
            dedup_capacity: How many delivered (id, due time) keys and attempt records to remember
        """
        self.registry = registry
        self.store = store
        self.push_sender = push_sender
        self.delivery_timeout = delivery_timeout_seconds
        self._dedup_capacity = dedup_capacity

        self._delivered: "OrderedDict[Tuple[str, str], datetime]" = OrderedDict()
        self._attempts: "OrderedDict[str, DeliveryAttempts]" = OrderedDict()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

        self._totals = {
            "deliveries": 0,
            "duplicates_skipped": 0,
            "live_sent": 0,
            "live_failed": 0,
            "push_sent": 0,
            "push_failed": 0,
            "subscriptions_deactivated": 0,
        }

        log_debug("NotificationDispatcher initialized", component="dispatcher")

    def add_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Register an in-process callback invoked with every alert payload.

        Args:
            callback: Function called with the ``reminder_alert`` event
        """
        self._listeners.append(callback)

    @staticmethod
    def _dedup_key(reminder: Reminder) -> Tuple[str, str]:
        # A snoozed reminder has a new due time and must be delivered again
        return reminder.id, reminder.due_at.isoformat()

    def _remember(self, key: Tuple[str, str]) -> None:
        self._delivered[key] = datetime.now()
        while len(self._delivered) > self._dedup_capacity:
            self._delivered.popitem(last=False)

    def was_delivered(self, reminder: Reminder) -> bool:
        return self._dedup_key(reminder) in self._delivered

    async def deliver(self, reminder: Reminder, force: bool = False) -> DeliveryReport:
        """Deliver a reminder on every channel. Never raises.

        Args:
            reminder: The due reminder
            force: Deliver even if this (id, due time) was already delivered

        Returns:
            DeliveryReport with per-channel counts
        """
        report = DeliveryReport(reminder_id=reminder.id)
        key = self._dedup_key(reminder)

        if key in self._delivered and not force:
            report.skipped_duplicate = True
            self._totals["duplicates_skipped"] += 1
            log_debug(f"Skipping duplicate delivery of {reminder.id}", component="dispatcher")
            return report
        self._remember(key)

        log_info(f"Delivering reminder '{reminder.text}' ({reminder.id})", component="dispatcher")
        alert = reminder.to_alert()

        results = await asyncio.gather(
            self._fan_out_live(alert, report),
            self._fan_out_push(build_reminder_payload(reminder), report),
            return_exceptions=True,
        )
        for channel, result in zip(("live", "push"), results):
            if isinstance(result, Exception):
                log_error(f"{channel} fan-out for {reminder.id} failed: {result!r}", component="dispatcher")

        self._record(reminder, alert, report)
        return report

    def _record(self, reminder: Reminder, alert: Dict[str, Any], report: DeliveryReport) -> None:
        now = datetime.now()
        previous = self._attempts.get(reminder.id)
        self._attempts[reminder.id] = DeliveryAttempts(
            attempts=(previous.attempts if previous else 0) + 1,
            last_attempt_at=now,
            last_report=report,
        )
        self._attempts.move_to_end(reminder.id)
        while len(self._attempts) > self._dedup_capacity:
            self._attempts.popitem(last=False)

        self._totals["deliveries"] += 1
        self._totals["live_sent"] += report.live_sent
        self._totals["live_failed"] += report.live_failed
        self._totals["push_sent"] += report.push_sent
        self._totals["push_failed"] += report.push_failed
        self._totals["subscriptions_deactivated"] += len(report.deactivated_endpoints)

        for callback in self._listeners:
            try:
                callback(alert)
            except Exception as e:
                log_error(f"Alert listener failed: {e}", component="dispatcher")

        if not report.delivered:
            log_warning(f"Reminder {reminder.id} reached no client or subscriber", component="dispatcher")

    # Live channel

    async def _fan_out_live(self, alert: Dict[str, Any], report: DeliveryReport) -> None:
        report.pruned_clients.extend(self.registry.prune())

        targets: List[Tuple[str, LiveConnection]] = []
        self.registry.for_each(lambda client_id, connection: targets.append((client_id, connection)))
        if not targets:
            log_debug("No live clients connected", component="dispatcher")
            return

        outcomes = await asyncio.gather(
            *(self._send_live(client_id, connection, alert) for client_id, connection in targets)
        )
        for (client_id, _), ok in zip(targets, outcomes):
            if ok:
                report.live_sent += 1
            else:
                report.live_failed += 1
                report.pruned_clients.append(client_id)

    async def _send_live(self, client_id: str, connection: LiveConnection, alert: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(alert), timeout=self.delivery_timeout)
            log_debug(f"Alert sent to {client_id}", component="dispatcher")
            return True
        except asyncio.TimeoutError:
            log_warning(f"Alert to {client_id} timed out, dropping client", component="dispatcher")
        except Exception as e:
            log_warning(f"Alert to {client_id} failed ({e!r}), dropping client", component="dispatcher")

        self.registry.unregister(client_id)
        return False

    # Push channel

    async def _fan_out_push(self, payload: Dict[str, Any], report: DeliveryReport) -> None:
        if self.push_sender is None or not self.push_sender.enabled:
            log_debug("Push channel disabled", component="dispatcher")
            return

        subscriptions = await self.store.list_active_subscriptions()
        if not subscriptions:
            log_debug("No active push subscriptions", component="dispatcher")
            return

        outcomes = await asyncio.gather(
            *(self._send_push(subscription, payload) for subscription in subscriptions)
        )
        for subscription, (ok, gone) in zip(subscriptions, outcomes):
            if ok:
                report.push_sent += 1
                continue
            report.push_failed += 1
            if gone:
                report.deactivated_endpoints.append(subscription.endpoint)

        log_info(f"Push notifications: {report.push_sent} sent, {report.push_failed} failed",
                 component="dispatcher")

    async def _send_push(self, subscription: PushSubscription, payload: Dict[str, Any]) -> Tuple[bool, bool]:
        """Send to one subscriber. Returns (sent, endpoint_gone)."""
        endpoint = subscription.endpoint
        try:
            await asyncio.wait_for(self.push_sender.send(subscription, payload), timeout=self.delivery_timeout)
        except DeliveryFailure as e:
            log_warning(f"Push to {endpoint[:60]} failed: {e.reason}", component="dispatcher")
            if e.gone:
                await self._deactivate(endpoint)
            return False, e.gone
        except asyncio.TimeoutError:
            log_warning(f"Push to {endpoint[:60]} timed out", component="dispatcher")
            return False, False
        except Exception as e:
            log_error(f"Push to {endpoint[:60]} raised {e!r}", component="dispatcher")
            return False, False

        try:
            await self.store.touch_subscription(endpoint)
        except Exception as e:
            log_debug(f"Could not record push use for {endpoint[:60]}: {e!r}", component="dispatcher")
        return True, False

    async def _deactivate(self, endpoint: str) -> None:
        try:
            await self.store.deactivate_subscription(endpoint)
            log_info(f"Deactivated gone push endpoint {endpoint[:60]}", component="dispatcher")
        except Exception as e:
            log_error(f"Could not deactivate {endpoint[:60]}: {e!r}", component="dispatcher")

    async def send_test_notification(self) -> Dict[str, int]:
        """Push a test notification to every active subscriber.

        Returns:
            Dictionary with ``sent`` and ``failed`` counts
        """
        report = DeliveryReport(reminder_id="test")
        await self._fan_out_push(build_test_payload(), report)
        return {"sent": report.push_sent, "failed": report.push_failed}

    # Introspection

    def get_attempts(self, reminder_id: str) -> Optional[DeliveryAttempts]:
        return self._attempts.get(reminder_id)

    def get_stats(self) -> Dict[str, Any]:
        """Get dispatcher statistics.

        Returns:
            Dictionary with delivery totals and channel state
        """
        return {
            **self._totals,
            "connected_clients": self.registry.count(),
            "push_enabled": bool(self.push_sender and self.push_sender.enabled),
            "tracked_reminders": len(self._attempts),
        }
