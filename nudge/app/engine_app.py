"""Application orchestration for the reminder engine.

This module centralizes startup/shutdown of the engine so it can be reused by
different front-ends (HTTP API, tests, scripts).
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from config.config import AppConfig, load_config, validate_config
from nudge.reminders.push_sender import WebPushSender
from nudge.reminders.reminder_service import ReminderService
from nudge.storage.reminder_store import ReminderStore
from nudge.storage.sqlite_store import SQLiteBackend
from nudge.utils.logger import log_error, log_info, log_warning, setup_logging


@dataclass
class NotificationRecord:
    """Container for captured reminder alerts."""

    alert: Dict[str, Any]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.alert,
            "created_at": self.created_at.isoformat(),
        }


def build_store(config: AppConfig) -> ReminderStore:
    """Durable store from config; ``memory`` runs on the fallback alone."""
    storage = config.storage
    durable = SQLiteBackend(storage.sqlite_path) if storage.backend == "sqlite" else None
    return ReminderStore(
        durable,
        operation_timeout_seconds=storage.operation_timeout_seconds,
        probe_interval_seconds=storage.probe_interval_seconds,
    )


def build_push_sender(config: AppConfig) -> Optional[WebPushSender]:
    if not config.push.enabled:
        return None
    return WebPushSender(
        vapid_private_key=config.push.vapid_private_key,
        vapid_subject=config.push.vapid_subject,
        timeout_seconds=config.reminders.delivery_timeout_seconds,
        ttl_seconds=config.push.ttl_seconds,
    )


class EngineApp:
    """Coordinates core services for the reminder engine."""

    def __init__(self, config_path: Optional[Path] = None, config: Optional[AppConfig] = None) -> None:
        self._config_path = config_path
        self._config: Optional[AppConfig] = config
        self._reminder_service: Optional[ReminderService] = None

        self._startup_lock = asyncio.Lock()
        self._is_started = False

        # Alerts kept for clients that poll instead of holding a socket open
        self._notification_queue: asyncio.Queue[NotificationRecord] = asyncio.Queue(maxsize=100)
        self._notification_history: Deque[NotificationRecord] = deque(maxlen=100)

    @property
    def config(self) -> AppConfig:
        if not self._config:
            raise RuntimeError("EngineApp not started yet; config unavailable")
        return self._config

    @property
    def reminder_service(self) -> ReminderService:
        if not self._reminder_service:
            raise RuntimeError("EngineApp not started yet; reminder service unavailable")
        return self._reminder_service

    @property
    def is_started(self) -> bool:
        return self._is_started

    async def startup(self) -> None:
        """Load configuration and initialize dependencies."""

        async with self._startup_lock:
            if self._is_started:
                return

            if self._config is None:
                self._config = load_config(self._config_path)
            setup_logging(self._config.logging.level, self._config.logging.show_timestamps)

            for problem in validate_config(self._config):
                log_warning(f"Config: {problem}", component="app")

            log_info("EngineApp startup: opening reminder store", component="app")
            store = build_store(self._config)

            log_info("EngineApp startup: starting reminder service", component="app")
            self._reminder_service = ReminderService(
                store=store,
                config=self._config.reminders,
                push_sender=build_push_sender(self._config),
            )
            self._reminder_service.dispatcher.add_listener(self._handle_notification)
            await self._reminder_service.start()

            self._is_started = True
            log_info("EngineApp startup complete", component="app")

    async def shutdown(self) -> None:
        """Gracefully shut down services."""

        if not self._is_started:
            return

        log_info("EngineApp shutdown: stopping services", component="app")

        if self._reminder_service:
            try:
                await self._reminder_service.stop()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                log_error(f"Error stopping ReminderService: {exc}", component="app")

        self._is_started = False
        log_info("EngineApp shutdown complete", component="app")

    async def get_notifications(self, *, limit: int = 20, flush: bool = True) -> List[Dict[str, Any]]:
        """Retrieve reminder alerts captured so far.

        Args:
            limit: Maximum number of alerts to return
            flush: If True, consume pending alerts; otherwise return recent history
        """

        if flush:
            notifications: List[Dict[str, Any]] = []
            for _ in range(limit):
                try:
                    record = self._notification_queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                notifications.append(record.to_dict())

            if notifications:
                return notifications

        history_sample = list(self._notification_history)[:limit]
        return [record.to_dict() for record in history_sample]

    def snapshot(self) -> Dict[str, Any]:
        """Return a health snapshot of the engine state."""

        return {
            "status": "ok" if self._is_started else "starting",
            "is_started": self._is_started,
            "config_loaded": self._config is not None,
            "reminders": self._reminder_service.health_status() if self._reminder_service else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def _handle_notification(self, alert: Dict[str, Any]) -> None:
        """Capture alerts emitted by the dispatcher."""

        record = NotificationRecord(alert=alert, created_at=datetime.now(timezone.utc))
        self._notification_history.appendleft(record)

        try:
            self._notification_queue.put_nowait(record)
        except asyncio.QueueFull:
            # Drop the oldest pending item to make room
            self._notification_queue.get_nowait()
            self._notification_queue.put_nowait(record)
