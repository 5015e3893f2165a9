"""Data models for reminders and push subscriptions."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


MIN_REPEAT_COUNT = 1
MAX_REPEAT_COUNT = 10

# Fields a caller may change through a plain edit; the rest belong to the lifecycle
EDITABLE_FIELDS = frozenset({"text", "due_at", "voice_enabled", "repeat_count"})

# Fields that may be changed by a patch but never set to null
REQUIRED_FIELDS = frozenset({"text", "due_at", "status", "voice_enabled", "repeat_count", "snooze_count"})


def clamp_repeat_count(value: Optional[int]) -> int:
    """Clamp an announcement repeat count into [1, 10]; None means 1."""
    if value is None:
        return MIN_REPEAT_COUNT
    return max(MIN_REPEAT_COUNT, min(MAX_REPEAT_COUNT, int(value)))


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive local time, the engine clock's convention.

    Browsers send ISO strings with an offset ("2025-06-10T09:00:00Z"); the
    monitor compares against ``datetime.now()``, so both sides must agree.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class ReminderStatus(str, Enum):
    """Lifecycle states of a reminder."""
    PENDING = "pending"
    NOTIFIED = "notified"
    COMPLETED = "completed"


class DismissMethod(str, Enum):
    """How a reminder reached Completed."""
    MANUAL = "manual"
    VOICE = "voice"
    PUSH = "push"
    AUTO = "auto"


class ReminderFilter(str, Enum):
    """Filters accepted by the listing operation."""
    PENDING = "pending"
    COMPLETED = "completed"
    TODAY = "today"
    ALL = "all"


class Reminder(BaseModel):
    """A time-bound reminder."""
    id: str = Field(description="Opaque unique identifier, immutable")
    text: str = Field(description="Task description shown and announced to the user")
    due_at: datetime = Field(description="When the reminder fires")
    status: ReminderStatus = Field(default=ReminderStatus.PENDING, description="Lifecycle state")
    voice_enabled: bool = Field(default=True, description="Whether the client should announce it")
    repeat_count: int = Field(default=1, description="Announcement repetitions on the client")
    snooze_count: int = Field(default=0, description="How many times it was snoozed")
    last_snoozed_at: Optional[datetime] = Field(default=None, description="Most recent snooze")
    notified_at: Optional[datetime] = Field(default=None, description="When it entered notified")
    completed_at: Optional[datetime] = Field(default=None, description="When it entered completed")
    dismissed_by: Optional[DismissMethod] = Field(default=None, description="Who completed it")
    original_input: Optional[str] = Field(default=None, description="Sentence it was parsed from")
    created_at: datetime = Field(description="Creation timestamp, default ordering")

    @field_validator("repeat_count")
    @classmethod
    def _clamp_repeat(cls, value: int) -> int:
        return clamp_repeat_count(value)

    @field_validator("due_at", "last_snoozed_at", "notified_at", "completed_at", "created_at")
    @classmethod
    def _local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)

    @property
    def is_pending(self) -> bool:
        return self.status == ReminderStatus.PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == ReminderStatus.COMPLETED

    def is_due(self, now: datetime) -> bool:
        """True when the reminder's time has been reached."""
        return self.due_at <= now

    def to_alert(self) -> Dict[str, Any]:
        """Build the ``reminder_alert`` event sent to live clients."""
        return {
            "type": "reminder_alert",
            "reminder": {
                "id": self.id,
                "text": self.text,
                "dueAt": self.due_at.isoformat(),
                "voiceEnabled": self.voice_enabled,
                "repeatCount": self.repeat_count,
            },
        }


class ReminderCreate(BaseModel):
    """Fields supplied when a reminder is created."""
    text: str
    due_at: datetime
    voice_enabled: bool = True
    repeat_count: int = 1
    original_input: Optional[str] = None

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("text must not be empty")
        return value

    @field_validator("repeat_count")
    @classmethod
    def _clamp_repeat(cls, value: int) -> int:
        return clamp_repeat_count(value)

    @field_validator("due_at")
    @classmethod
    def _local_time(cls, value: datetime) -> datetime:
        return to_local_naive(value)


class ReminderPatch(BaseModel):
    """Partial update of a reminder. Only fields that were set are applied."""
    text: Optional[str] = None
    due_at: Optional[datetime] = None
    status: Optional[ReminderStatus] = None
    voice_enabled: Optional[bool] = None
    repeat_count: Optional[int] = None
    snooze_count: Optional[int] = None
    last_snoozed_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dismissed_by: Optional[DismissMethod] = None

    @field_validator("due_at", "last_snoozed_at", "notified_at", "completed_at")
    @classmethod
    def _local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_local_naive(value)

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("text must not be empty")
        return value

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "ReminderPatch":
        cleared = sorted(
            name for name in self.model_fields_set
            if name in REQUIRED_FIELDS and getattr(self, name) is None
        )
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {', '.join(cleared)}")
        return self

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set on this patch (explicit None included)."""
        changes = self.model_dump(exclude_unset=True)
        if changes.get("repeat_count") is not None:
            changes["repeat_count"] = clamp_repeat_count(changes["repeat_count"])
        return changes

    def apply(self, reminder: Reminder) -> Reminder:
        """Return a copy of ``reminder`` with this patch applied."""
        return reminder.model_copy(update=self.changes())


class PushKeys(BaseModel):
    """The two secrets a browser hands out for encrypted push delivery."""
    p256dh: str
    auth: str


class PushSubscription(BaseModel):
    """A registered Web Push endpoint."""
    endpoint: str = Field(description="Push service URL, unique key")
    keys: PushKeys
    user_agent: str = Field(default="unknown")
    created_at: datetime
    last_used_at: Optional[datetime] = None
    is_active: bool = True

    def subscription_info(self) -> Dict[str, Any]:
        """Shape expected by Web Push libraries."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.keys.p256dh, "auth": self.keys.auth},
        }
