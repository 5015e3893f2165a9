"""Reminder lifecycle: monitoring, delivery and the service facade."""

from nudge.reminders.reminder_service import ReminderService
from nudge.reminders.reminder_monitor import ReminderMonitor, ScanResult
from nudge.reminders.notification_dispatcher import DeliveryReport, NotificationDispatcher
from nudge.reminders.client_registry import ClientRegistry

__all__ = [
    'ReminderService',
    'ReminderMonitor',
    'ScanResult',
    'NotificationDispatcher',
    'DeliveryReport',
    'ClientRegistry',
]
