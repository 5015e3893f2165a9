"""Reminder monitor for background due-time detection.

This module implements the polling loop that finds due reminders, moves them
through their lifecycle and hands them to the notification dispatcher.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from nudge.models.reminder import DismissMethod, Reminder, ReminderPatch, ReminderStatus
from nudge.reminders.notification_dispatcher import NotificationDispatcher
from nudge.storage.reminder_store import ReminderStore
from nudge.utils.logger import log_debug, log_error, log_info


@dataclass
class ScanResult:
    """Outcome of one monitor scan."""
    notified: List[str] = field(default_factory=list)
    auto_completed: List[str] = field(default_factory=list)
    purged: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notified": list(self.notified),
            "auto_completed": list(self.auto_completed),
            "purged": list(self.purged),
            "notified_count": len(self.notified),
            "auto_completed_count": len(self.auto_completed),
            "purged_count": len(self.purged),
        }


class ReminderMonitor:
    """Watches the store and fires reminders when they come due.

    This runs as a background asyncio task that:
    1. Lists pending reminders whose due time has passed
    2. Claims each one with a conditional Pending -> Notified transition
    3. Delivers the claimed reminders concurrently
    4. Auto-completes notified reminders nobody acknowledged within the grace period
    5. Now and then deletes completed reminders older than the retention window

    The claim is what keeps the periodic loop and ``check_now`` from
    delivering the same reminder twice; no lock is held across a scan.
    """

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        check_interval_seconds: float = 5.0,
        grace_period_seconds: float = 300.0,
        retention_days: float = 7.0,
        cleanup_interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the reminder monitor.

        Args:
            store: Reminder store to poll
            dispatcher: Dispatcher for sending notifications
            check_interval_seconds: Seconds between scans
            grace_period_seconds: How long a notified reminder waits for
                acknowledgement before it is auto-completed
            retention_days: Completed reminders due longer ago than this are deleted
            cleanup_interval_seconds: Minimum gap between retention sweeps
            clock: Source of "now", injectable for tests
        """
        self.store = store
        self.dispatcher = dispatcher
        self.check_interval = check_interval_seconds
        self.grace_period = timedelta(seconds=grace_period_seconds)
        self.retention = timedelta(days=retention_days)
        self.cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._clock = clock
        self._last_cleanup_at: Optional[datetime] = None
        self._total_purged = 0

        self._stop_event = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None

        self._scans = 0
        self._failed_scans = 0
        self._total_notified = 0
        self._total_auto_completed = 0
        self._last_scan_at: Optional[datetime] = None

        log_info(f"ReminderMonitor initialized, check interval: {check_interval_seconds}s, "
                 f"grace period: {grace_period_seconds}s", component="monitor")

    @property
    def is_running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    async def start(self) -> None:
        """Start the monitoring background task."""
        if self.is_running:
            log_debug("ReminderMonitor already running", component="monitor")
            return

        self._stop_event = asyncio.Event()
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        log_info("ReminderMonitor started", component="monitor")

    async def stop(self) -> None:
        """Stop monitoring. A scan already in progress is allowed to finish."""
        if self._monitor_task is None:
            return

        self._stop_event.set()
        try:
            await self._monitor_task
        finally:
            self._monitor_task = None
        log_info("ReminderMonitor stopped", component="monitor")

    async def _monitor_loop(self) -> None:
        log_debug("Reminder monitor loop started", component="monitor")

        while not self._stop_event.is_set():
            try:
                await self.check_now()
            except Exception as e:
                self._failed_scans += 1
                log_error(f"Error in monitor scan: {e}", component="monitor", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

        log_debug("Reminder monitor loop ended", component="monitor")

    async def check_now(self, now: Optional[datetime] = None) -> ScanResult:
        """Run one scan immediately.

        Safe to call while the background loop is running: every state
        change is a conditional transition, so only one scan claims a reminder.

        Args:
            now: Override for the current time

        Returns:
            ScanResult with the ids that were notified and auto-completed
        """
        now = now or self._clock()
        result = ScanResult()

        await self._fire_due(now, result)
        await self._complete_expired(now, result)
        if self._last_cleanup_at is None or now - self._last_cleanup_at >= self.cleanup_interval:
            await self._purge_old(now, result)

        self._scans += 1
        self._last_scan_at = now
        self._total_notified += len(result.notified)
        self._total_auto_completed += len(result.auto_completed)
        self._total_purged += len(result.purged)

        if result.notified or result.auto_completed or result.purged:
            log_info(f"Scan: {len(result.notified)} notified, "
                     f"{len(result.auto_completed)} auto-completed, "
                     f"{len(result.purged)} purged", component="monitor")
        return result

    async def _purge_old(self, now: datetime, result: ScanResult) -> None:
        self._last_cleanup_at = now
        result.purged.extend(await self.store.purge_completed_before(now - self.retention))

    async def _fire_due(self, now: datetime, result: ScanResult) -> None:
        candidates = await self.store.list_due_candidates(now)
        claimed: List[Reminder] = []

        for candidate in candidates:
            if not candidate.is_due(now):
                continue
            reminder = await self.store.transition(
                candidate.id,
                (ReminderStatus.PENDING,),
                ReminderPatch(status=ReminderStatus.NOTIFIED, notified_at=now),
            )
            if reminder is None:
                log_debug(f"Reminder {candidate.id} already claimed", component="monitor")
                continue
            claimed.append(reminder)

        if not claimed:
            return

        log_debug(f"Delivering {len(claimed)} due reminder(s)", component="monitor")
        await asyncio.gather(*(self.dispatcher.deliver(reminder) for reminder in claimed))
        result.notified.extend(reminder.id for reminder in claimed)

    async def _complete_expired(self, now: datetime, result: ScanResult) -> None:
        for reminder in await self.store.list_by_status(ReminderStatus.NOTIFIED):
            notified_at = reminder.notified_at or reminder.due_at
            if notified_at + self.grace_period > now:
                continue

            completed = await self.store.transition(
                reminder.id,
                (ReminderStatus.NOTIFIED,),
                ReminderPatch(
                    status=ReminderStatus.COMPLETED,
                    completed_at=now,
                    dismissed_by=DismissMethod.AUTO,
                ),
            )
            if completed is not None:
                log_info(f"Auto-completed unacknowledged reminder '{reminder.text}'", component="monitor")
                result.auto_completed.append(reminder.id)

    def get_stats(self) -> Dict[str, Any]:
        """Get monitoring statistics.

        Returns:
            Dictionary with stats
        """
        next_scan_at = None
        if self.is_running and self._last_scan_at is not None:
            next_scan_at = (self._last_scan_at + timedelta(seconds=self.check_interval)).isoformat()

        return {
            "is_running": self.is_running,
            "check_interval_seconds": self.check_interval,
            "grace_period_seconds": self.grace_period.total_seconds(),
            "scans": self._scans,
            "failed_scans": self._failed_scans,
            "total_notified": self._total_notified,
            "total_auto_completed": self._total_auto_completed,
            "total_purged": self._total_purged,
            "retention_days": self.retention.total_seconds() / 86400,
            "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
            "next_scan_at": next_scan_at,
        }
