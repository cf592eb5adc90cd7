from __future__ import annotations
import os
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from dateutil import parser as date_parser

from ..database.appointment_db import AppointmentDB
from ..database.patient_db import PatientDB
from ..database.reminder_db import ReminderDB
from ..database.template_db import TemplateDB
from ..models.appointment import Appointment
from ..models.reminder import ReminderPolicy, ScheduledReminder, SentReminder
from ..services.appointment_service import AppointmentLifecycle
from ..services.export_service import ExportService
from ..services.notification_service import DispatchGateway, NotificationService
from ..services.visit_service import compute_visits
from ..utils.config import config
from ..utils.date_utils import get_clinic_timezone, get_current_time
from ..utils.errors import NotFound, ValidationError
from ..utils.locks import AppointmentLocks
from .orchestrator import NotificationOrchestrator
from .reminder_agent import ReminderScheduler

logger = logging.getLogger(__name__)


def _coerce_datetime(value: Union[str, datetime]) -> datetime:
    """ISO string or datetime; naive values are read as clinic-local time"""
    if isinstance(value, str):
        try:
            value = date_parser.isoparse(value)
        except ValueError:
            raise ValidationError({'scheduled_for': f"Not an ISO date/time: {value}"})
    if value.tzinfo is None:
        value = get_clinic_timezone().localize(value)
    return value


class ClinicFlow:
    """
    Entry point for the UI/API layer. Appointment mutations go through the
    lifecycle, whose events drive the reminder ledger via the orchestrator.
    """

    def __init__(self, appointment_db: AppointmentDB, patient_db: PatientDB,
                 template_db: TemplateDB, reminder_db: ReminderDB,
                 gateway: DispatchGateway, locks: AppointmentLocks,
                 clock: Callable[[], datetime] = get_current_time,
                 policy: Optional[ReminderPolicy] = None,
                 clinic: Optional[Dict[str, str]] = None,
                 export_dir: Optional[str] = None):
        self.appointment_db = appointment_db
        self.patient_db = patient_db
        self.template_db = template_db
        self.reminder_db = reminder_db
        self.clock = clock

        self.lifecycle = AppointmentLifecycle(appointment_db, patient_db, clock=clock, locks=locks)
        self.scheduler = ReminderScheduler(
            reminder_db, appointment_db, patient_db, template_db,
            gateway, locks, clock=clock, policy=policy, clinic=clinic,
        )
        self.orchestrator = NotificationOrchestrator(self.scheduler)
        self.orchestrator.attach(self.lifecycle)
        self.exports = ExportService(
            reminder_db, appointment_db, patient_db,
            export_dir=export_dir or config.EXPORTS_PATH, clock=clock,
        )

    # -- appointments ----------------------------------------------------

    def schedule_appointment(self, data: Dict[str, Any], reminders_enabled: bool = True) -> Appointment:
        return self.lifecycle.create(data, reminders_enabled=reminders_enabled)

    def update_appointment_status(self, appointment_id: str, status: Any) -> Appointment:
        return self.lifecycle.transition(self.lifecycle.get(appointment_id), status)

    def reschedule_appointment(self, appointment_id: str, date: str, time: str) -> Appointment:
        return self.lifecycle.reschedule(self.lifecycle.get(appointment_id), date, time)

    def update_appointment(self, appointment_id: str, changes: Dict[str, Any]) -> Appointment:
        return self.lifecycle.update(self.lifecycle.get(appointment_id), changes)

    def delete_appointment(self, appointment_id: str) -> None:
        self.lifecycle.delete(appointment_id)

    def get_patient_visit_summary(self, patient_id: str) -> Dict[str, Any]:
        if self.patient_db.get_patient_by_id(patient_id) is None:
            raise NotFound("Patient", patient_id)
        appointments = self.appointment_db.get_appointments_by_patient(patient_id)
        return compute_visits(appointments, patient_id, now=self.clock()).to_dict()

    # -- reminders -------------------------------------------------------

    def send_reminder_now(self, appointment_id: str, template_id: str, channel: Any = None) -> SentReminder:
        return self.orchestrator.send_reminder_now(appointment_id, template_id, channel)

    def process_due_reminders(self, limit: Optional[int] = None) -> Dict[str, int]:
        return self.scheduler.process_due_reminders(limit)

    def cancel_reminder(self, reminder_id: str) -> bool:
        return self.scheduler.cancel_reminder(reminder_id)

    def resend_reminder(self, sent_id: str) -> SentReminder:
        return self.scheduler.resend_reminder(sent_id)

    def schedule_manual_reminder(self, appointment_id: str, template_id: str,
                                 scheduled_for: Union[str, datetime], channel: Any = None) -> ScheduledReminder:
        return self.scheduler.schedule_manual_reminder(
            appointment_id, template_id, _coerce_datetime(scheduled_for), channel
        )

    def get_appointment_reminders(self, appointment_id: str) -> Dict[str, Any]:
        return {
            'scheduled': self.reminder_db.list_scheduled_reminders({'appointment_id': appointment_id}),
            'sent': self.reminder_db.list_sent_reminders({'appointment_id': appointment_id}),
        }

    # -- reporting -------------------------------------------------------

    def reminder_stats(self) -> Dict[str, int]:
        return self.exports.reminder_stats()

    def dashboard_stats(self) -> Dict[str, Any]:
        return self.exports.dashboard_stats()

    def export_reminder_ledger(self, appointment_id: Optional[str] = None) -> str:
        return self.exports.export_reminder_ledger(appointment_id)


def build_clinic_flow(data_dir: Optional[str] = None, gateway: Optional[DispatchGateway] = None,
                      seed_templates: bool = True) -> ClinicFlow:
    """Wire a ClinicFlow from config; data_dir overrides where the stores live"""
    if data_dir:
        db_path = os.path.join(data_dir, "appointments.db")
        patients_csv = os.path.join(data_dir, "patients.csv")
        locks_path = os.path.join(data_dir, "locks")
    else:
        db_path, patients_csv, locks_path = config.DB_PATH, config.PATIENTS_CSV, config.LOCKS_PATH

    template_db = TemplateDB(db_path)
    if seed_templates:
        seeded = template_db.seed_default_templates()
        if seeded:
            logger.info(f"Seeded {seeded} default reminder template(s)")

    return ClinicFlow(
        appointment_db=AppointmentDB(db_path),
        patient_db=PatientDB(patients_csv),
        template_db=template_db,
        reminder_db=ReminderDB(db_path),
        gateway=gateway or NotificationService(),
        locks=AppointmentLocks(locks_path, timeout=config.LOCK_TIMEOUT),
        policy=ReminderPolicy.default(config.RESCHEDULE_ANCHOR),
    )
