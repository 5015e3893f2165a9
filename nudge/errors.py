"""Error types raised across the reminder engine."""

from typing import Optional


class NudgeError(Exception):
    """Base class for engine errors."""


class ParseFailure(NudgeError):
    """No temporal expression could be recognized in the user's sentence.

    User-correctable: the caller should ask for more detail instead of
    defaulting to "now".
    """

    def __init__(self, text: str, reason: str = "no time expression recognized"):
        self.text = text
        self.reason = reason
        super().__init__(f"Could not work out when to remind you: {reason} ('{text}')")


class ReminderNotFound(NudgeError):
    """An operation referenced an unknown reminder id."""

    def __init__(self, reminder_id: str):
        self.reminder_id = reminder_id
        super().__init__(f"Reminder not found: {reminder_id}")


class BackendUnavailable(NudgeError):
    """The durable store could not be reached.

    Raised by storage backends only; the store router absorbs it.
    """


class DeliveryFailure(NudgeError):
    """A single connection or push subscriber could not be reached.

    Args:
        target: Client id or push endpoint that failed
        reason: Human readable cause
        gone: True when the target is permanently gone (HTTP 404/410)
        status_code: Provider status code, if any
    """

    def __init__(self, target: str, reason: str, gone: bool = False,
                 status_code: Optional[int] = None):
        self.target = target
        self.reason = reason
        self.gone = gone
        self.status_code = status_code
        super().__init__(f"Delivery to {target} failed: {reason}")
