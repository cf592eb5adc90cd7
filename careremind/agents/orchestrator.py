import logging
from typing import Any, Optional

from ..models.reminder import ReminderPolicy, SentReminder
from ..services.appointment_service import AppointmentEvent, AppointmentLifecycle
from .reminder_agent import ReminderScheduler

logger = logging.getLogger(__name__)


class NotificationOrchestrator:
    """Routes appointment lifecycle events to the reminder scheduler"""

    def __init__(self, scheduler: ReminderScheduler, policy: Optional[ReminderPolicy] = None):
        self.scheduler = scheduler
        self.policy = policy or scheduler.policy

    def attach(self, lifecycle: AppointmentLifecycle):
        lifecycle.subscribe(self.handle_event)

    def handle_event(self, event: AppointmentEvent):
        if event.kind == "created":
            if not event.reminders_enabled:
                logger.info(f"Reminders disabled for new appointment {event.appointment_id}")
                return
            created = self.scheduler.on_appointment_created(event.appointment, self.policy)
            logger.info(f"Appointment {event.appointment_id} created with {len(created)} reminder(s)")
        elif event.kind in ("updated", "status_changed"):
            self.scheduler.on_appointment_changed(event.previous, event.appointment, self.policy)
        elif event.kind == "deleted":
            cancelled = self.scheduler.on_appointment_deleted(event.appointment_id)
            logger.info(f"Appointment {event.appointment_id} deleted, {cancelled} reminder(s) cancelled")
        else:
            logger.warning(f"Ignoring unknown appointment event: {event.kind}")

    def send_reminder_now(self, appointment_id: str, template_id: str, channel: Any = None) -> SentReminder:
        return self.scheduler.send_now(appointment_id, template_id, channel)
