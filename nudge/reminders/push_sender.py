"""Encrypted Web Push delivery."""

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from pywebpush import WebPushException, webpush

from nudge.models.reminder import PushSubscription, Reminder
from nudge.errors import DeliveryFailure
from nudge.utils.logger import log_debug


GONE_STATUS_CODES = (404, 410)


class PushSender(Protocol):
    """Sends one payload to one subscription; raises ``DeliveryFailure``."""

    @property
    def enabled(self) -> bool:
        ...

    async def send(self, subscription: PushSubscription, payload: Dict[str, Any]) -> None:
        ...


def build_reminder_payload(reminder: Reminder) -> Dict[str, Any]:
    """Notification body for a due reminder, with Done / Snooze actions."""
    return {
        "title": "🔔 Reminder Alert",
        "body": reminder.text,
        "icon": "/icon-192x192.png",
        "badge": "/icon-72x72.png",
        "tag": "reminder-notification",
        "data": {
            "reminderId": reminder.id,
            "type": "reminder",
            "url": "/",
            "dueAt": reminder.due_at.isoformat(),
            "voiceEnabled": reminder.voice_enabled,
            "repeatCount": reminder.repeat_count,
            "actions": [
                {"action": "dismiss", "title": "Done"},
                {"action": "snooze", "title": "Snooze 10min"},
            ],
            "timestamp": datetime.now().isoformat(),
        },
    }


def build_test_payload() -> Dict[str, Any]:
    return {
        "title": "🧪 Test Notification",
        "body": "Push notifications are working.",
        "tag": "test-notification",
        "data": {"type": "test", "url": "/", "timestamp": datetime.now().isoformat()},
    }


class WebPushSender:
    """VAPID-signed Web Push via pywebpush.

    pywebpush is blocking, so each send runs in a worker thread.
    """

    def __init__(
        self,
        vapid_private_key: Optional[str],
        vapid_subject: str,
        timeout_seconds: float = 5.0,
        ttl_seconds: int = 3600,
    ):
        """Initialize the sender.

        Args:
            vapid_private_key: VAPID private key (base64url or PEM path);
                push is disabled when empty
            vapid_subject: Contact claim, e.g. "mailto:admin@example.com"
            timeout_seconds: HTTP timeout for the push service call
            ttl_seconds: How long the push service may hold the message
        """
        self.vapid_private_key = vapid_private_key or None
        self.vapid_subject = vapid_subject
        self.timeout = timeout_seconds
        self.ttl = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self.vapid_private_key is not None

    def _send_sync(self, subscription: PushSubscription, body: str) -> None:
        try:
            webpush(
                subscription_info=subscription.subscription_info(),
                data=body,
                vapid_private_key=self.vapid_private_key,
                # pywebpush adds aud/exp to the claims dict, so hand it a fresh one
                vapid_claims={"sub": self.vapid_subject},
                timeout=self.timeout,
                ttl=self.ttl,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise DeliveryFailure(
                target=subscription.endpoint,
                reason=str(e),
                gone=status_code in GONE_STATUS_CODES,
                status_code=status_code,
            ) from e

    async def send(self, subscription: PushSubscription, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            raise DeliveryFailure(subscription.endpoint, "VAPID keys are not configured")

        body = json.dumps(payload)
        await asyncio.to_thread(self._send_sync, subscription, body)
        log_debug(f"Push sent to {subscription.endpoint[:60]}", component="push")
