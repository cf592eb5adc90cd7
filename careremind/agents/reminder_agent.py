import uuid
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..database.appointment_db import AppointmentDB
from ..database.patient_db import PatientDB
from ..database.reminder_db import ReminderDB
from ..database.template_db import TemplateDB
from ..models.appointment import Appointment
from ..models.patient import Patient
from ..models.reminder import (
    Channel,
    OffsetRule,
    ReminderPolicy,
    ReminderStatus,
    ReminderTemplate,
    ScheduledReminder,
    SentReminder,
)
from ..services.notification_service import DispatchGateway
from ..utils.config import config
from ..utils.date_utils import get_current_time, to_utc_iso
from ..utils.errors import (
    AppointmentBusy,
    CareRemindError,
    InactiveTemplate,
    InvalidRecipient,
    InvalidTransition,
    NotFound,
    ProviderUnavailable,
    StoreUnavailable,
    ValidationError,
)
from ..utils.locks import AppointmentLocks
from ..utils.template import build_appointment_reminder_data, render

logger = logging.getLogger(__name__)


def default_clinic() -> Dict[str, str]:
    return {
        "name": config.CLINIC_NAME,
        "phone": config.CLINIC_PHONE,
        "address": config.CLINIC_ADDRESS,
    }


class ReminderScheduler:
    """
    Keeps the reminder ledger consistent with appointments and sends what is due.

    Every path that mutates the ledger for an appointment (recompute, cancel,
    send now, sweep send, resend) runs under that appointment's lock, and a
    row leaves 'scheduled' only through a conditional update, so two
    operations on one appointment can never both act on the same row.
    """

    def __init__(self, reminder_db: ReminderDB, appointment_db: AppointmentDB,
                 patient_db: PatientDB, template_db: TemplateDB,
                 gateway: DispatchGateway, locks: AppointmentLocks,
                 clock: Callable[[], datetime] = get_current_time,
                 policy: Optional[ReminderPolicy] = None,
                 clinic: Optional[Dict[str, str]] = None,
                 batch_size: Optional[int] = None):
        self.reminder_db = reminder_db
        self.appointment_db = appointment_db
        self.patient_db = patient_db
        self.template_db = template_db
        self.gateway = gateway
        self.locks = locks
        self.clock = clock
        self.policy = policy or ReminderPolicy.default(config.RESCHEDULE_ANCHOR)
        self.clinic = clinic or default_clinic()
        self.batch_size = batch_size or config.REMINDER_BATCH_SIZE

    # -- lookups ---------------------------------------------------------

    def _get_appointment(self, appointment_id: str) -> Appointment:
        appointment = self.appointment_db.get_appointment_by_id(appointment_id)
        if appointment is None:
            raise NotFound("Appointment", appointment_id)
        return appointment

    def _get_patient(self, patient_id: str) -> Patient:
        patient = self.patient_db.get_patient_by_id(patient_id)
        if patient is None:
            raise NotFound("Patient", patient_id)
        return patient

    def _get_active_template(self, template_id: str) -> ReminderTemplate:
        template = self.template_db.get_template(template_id)
        if template is None:
            raise NotFound("Template", template_id)
        if not template.active:
            raise InactiveTemplate(f"Template {template_id} is inactive")
        return template

    @staticmethod
    def _ensure_reminders_allowed(appointment: Appointment):
        if appointment.is_terminal:
            raise InvalidTransition(appointment.status.value, "reminder")

    @staticmethod
    def _parse_channel(channel: Any) -> Optional[Channel]:
        if channel is None or channel == "":
            return None
        try:
            return Channel(channel)
        except ValueError:
            raise ValidationError({'channel': f"Unknown channel: {channel}"})

    @staticmethod
    def _resolve_recipient(patient: Patient, channel: Optional[Channel] = None) -> Tuple[Channel, Optional[str]]:
        """Use the requested channel, else the patient's preference, else any channel with an address"""
        if channel:
            return channel, patient.address_for(channel)
        for candidate in [patient.preferred_channel, Channel.SMS, Channel.EMAIL]:
            address = patient.address_for(candidate)
            if address:
                return candidate, address
        return patient.preferred_channel, None

    def _select_template(self, rule: OffsetRule, channel: Channel) -> Optional[ReminderTemplate]:
        if rule.template_id:
            template = self.template_db.get_template(rule.template_id)
            if template and template.active:
                return template
            logger.warning(
                f"Template {rule.template_id} for rule {rule.rule_id} is missing or inactive, using default"
            )
        return self.template_db.find_default_template(rule.label, channel=channel)

    def _anchor_start(self, appointment: Appointment, policy: ReminderPolicy, now: datetime) -> datetime:
        """Start time offsets are measured from; 'original' keeps the pre-reschedule time while it is still ahead"""
        if policy.reschedule_anchor == "original":
            original = appointment.original_start_at()
            if original and original > now:
                return original
        return appointment.start_at()

    def reminder_data(self, appointment: Appointment, patient: Patient) -> Dict[str, Any]:
        return build_appointment_reminder_data(appointment, patient, self.clinic)

    # -- scheduling ------------------------------------------------------

    def _plan_reminders(self, appointment: Appointment, policy: ReminderPolicy, now: datetime,
                        replacing: bool) -> Tuple[List[str], List[ScheduledReminder]]:
        """
        Work out which active rows to cancel and which to create. With
        replacing, every active row is about to be cancelled, so none is reused.
        """
        patient = self._get_patient(appointment.patient_id)
        now_iso = to_utc_iso(now)
        anchor = self._anchor_start(appointment, policy, now)
        channel, recipient = self._resolve_recipient(patient)
        cancel_ids = []
        new_rows = []

        for rule in policy.active_rules:
            scheduled_for = anchor + rule.delta
            if scheduled_for <= now:
                logger.debug(f"Skipping {rule.rule_id} for {appointment.appointment_id}: send time has passed")
                continue
            scheduled_iso = to_utc_iso(scheduled_for)

            if not replacing:
                existing = self.reminder_db.get_active_reminder(appointment.appointment_id, rule.rule_id)
                if existing and existing.scheduled_for == scheduled_iso:
                    continue
                if existing:
                    cancel_ids.append(existing.reminder_id)

            if not recipient:
                logger.warning(
                    f"Patient {patient.patient_id} has no address for {channel.value}; "
                    f"no {rule.rule_id} reminder for {appointment.appointment_id}"
                )
                continue

            template = self._select_template(rule, channel)
            if template is None:
                logger.warning(f"No active template for rule {rule.rule_id}; reminder not scheduled")
                continue

            new_rows.append(ScheduledReminder(
                reminder_id=f"R{uuid.uuid4().hex[:8]}",
                appointment_id=appointment.appointment_id,
                rule_id=rule.rule_id,
                template_id=template.template_id,
                channel=channel,
                recipient=recipient,
                scheduled_for=scheduled_iso,
                status=ReminderStatus.SCHEDULED,
                created_at=now_iso,
                updated_at=now_iso,
            ))
        return cancel_ids, new_rows

    def _recompute(self, appointment: Appointment, policy: ReminderPolicy,
                   replacing: bool) -> List[ScheduledReminder]:
        now = self.clock()
        cancel_ids, new_rows = [], []
        if policy.enabled and not appointment.is_terminal:
            cancel_ids, new_rows = self._plan_reminders(appointment, policy, now, replacing)
        if not (replacing or cancel_ids or new_rows):
            return []

        # cancels are applied before inserts, in the same transaction
        created = self.reminder_db.replace_scheduled_reminders(
            appointment.appointment_id, to_utc_iso(now), new_rows,
            cancel_all=replacing, cancel_ids=cancel_ids,
        )
        for reminder in created:
            logger.info(
                f"Scheduled {reminder.rule_id} reminder {reminder.reminder_id} "
                f"for {appointment.appointment_id} at {reminder.scheduled_for}"
            )
        return created

    def on_appointment_created(self, appointment: Appointment,
                               policy: Optional[ReminderPolicy] = None) -> List[ScheduledReminder]:
        """Create one scheduled row per enabled offset rule whose send time is still ahead"""
        policy = policy or self.policy
        if not policy.enabled or appointment.is_terminal:
            return []
        with self.locks.hold(appointment.appointment_id):
            return self._recompute(appointment, policy, replacing=False)

    def on_appointment_changed(self, before: Optional[Appointment], after: Appointment,
                               policy: Optional[ReminderPolicy] = None) -> List[ScheduledReminder]:
        """Cancel stale rows when the time moved or the appointment ended, then recompute"""
        policy = policy or self.policy
        with self.locks.hold(after.appointment_id):
            moved = before is None or (before.date, before.time) != (after.date, after.time)
            return self._recompute(after, policy, replacing=moved or after.is_terminal)

    def on_appointment_deleted(self, appointment_id: str) -> int:
        with self.locks.hold(appointment_id):
            return self.reminder_db.cancel_reminders_for_appointment(
                appointment_id, to_utc_iso(self.clock())
            )

    def schedule_manual_reminder(self, appointment_id: str, template_id: str,
                                 scheduled_for: datetime, channel: Any = None) -> ScheduledReminder:
        """One-off reminder at an explicit time, outside the offset policy"""
        requested_channel = self._parse_channel(channel)
        with self.locks.hold(appointment_id):
            appointment = self._get_appointment(appointment_id)
            self._ensure_reminders_allowed(appointment)
            template = self._get_active_template(template_id)
            now = self.clock()
            if scheduled_for <= now:
                raise ValidationError({'scheduled_for': "Reminder time must be in the future"})
            patient = self._get_patient(appointment.patient_id)
            channel, recipient = self._resolve_recipient(patient, requested_channel)
            if not recipient:
                raise InvalidRecipient(f"Patient {patient.patient_id} has no {channel.value} address")

            now_iso = to_utc_iso(now)
            reminder = ScheduledReminder(
                reminder_id=f"R{uuid.uuid4().hex[:8]}",
                appointment_id=appointment_id,
                rule_id=f"manual-{uuid.uuid4().hex[:8]}",
                template_id=template.template_id,
                channel=channel,
                recipient=recipient,
                scheduled_for=to_utc_iso(scheduled_for),
                created_at=now_iso,
                updated_at=now_iso,
            )
            self.reminder_db.upsert_scheduled_reminder(reminder)
            logger.info(f"Scheduled manual reminder {reminder.reminder_id} for {appointment_id}")
            return reminder

    def cancel_reminder(self, reminder_id: str) -> bool:
        """Cancel one scheduled row; False if it already left 'scheduled'"""
        reminder = self.reminder_db.get_scheduled_reminder(reminder_id)
        if reminder is None:
            raise NotFound("Scheduled reminder", reminder_id)
        with self.locks.hold(reminder.appointment_id):
            return self.reminder_db.transition_reminder(
                reminder_id, ReminderStatus.CANCELLED, to_utc_iso(self.clock())
            )

    # -- dispatch --------------------------------------------------------

    def _dispatch(self, appointment_id: str, channel: Channel, recipient: str,
                  subject: str, body: str, template_id: Optional[str],
                  scheduled: Optional[ScheduledReminder] = None,
                  resend_of: Optional[str] = None) -> Tuple[SentReminder, Optional[CareRemindError]]:
        """
        One gateway attempt. The outcome always lands in the ledger, success or
        failure; the error (if any) is handed back for the caller to raise.
        """
        error = None
        external_id = None
        delivered_ok = False
        try:
            result = self.gateway.send(recipient, channel, subject, body)
            external_id = result.external_id
            delivered_ok = result.delivered_ok
        except (InvalidRecipient, ProviderUnavailable) as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected gateway failure for appointment {appointment_id}")
            error = ProviderUnavailable(f"Unexpected provider error: {e}")

        now_iso = to_utc_iso(self.clock())
        sent = SentReminder(
            sent_id=f"S{uuid.uuid4().hex[:8]}",
            appointment_id=appointment_id,
            scheduled_reminder_id=scheduled.reminder_id if scheduled else None,
            template_id=template_id,
            channel=channel,
            recipient=recipient or "",
            subject=subject,
            content=body,
            sent_at=now_iso,
            delivered_ok=delivered_ok,
            external_id=external_id,
            error_kind=error.kind if error else None,
            error_message=error.message if error else None,
            resend_of=resend_of,
        )
        # the scheduled row's move and the attempt record commit together
        sent = self.reminder_db.record_dispatch(
            sent,
            new_status=ReminderStatus.SENT if delivered_ok else ReminderStatus.FAILED,
            last_error=error.message if error else (None if delivered_ok else "not delivered"),
        )

        if error:
            logger.error(f"Reminder for {appointment_id} via {channel.value} failed: {error.kind}: {error.message}")
        else:
            logger.info(f"Reminder {sent.sent_id} for {appointment_id} sent via {channel.value}")
        return sent, error

    def send_now(self, appointment_id: str, template_id: str, channel: Any = None) -> SentReminder:
        """
        Render and send immediately, regardless of any pending scheduled rows.
        A failed send is recorded first and then raised.
        """
        requested_channel = self._parse_channel(channel)
        with self.locks.hold(appointment_id):
            appointment = self._get_appointment(appointment_id)
            self._ensure_reminders_allowed(appointment)
            patient = self._get_patient(appointment.patient_id)
            template = self._get_active_template(template_id)
            channel, recipient = self._resolve_recipient(patient, requested_channel)

            data = self.reminder_data(appointment, patient)
            sent, error = self._dispatch(
                appointment_id,
                channel,
                recipient or "",
                render(template.subject or template.name, data),
                render(template.body, data),
                template.template_id,
            )
        if error:
            error.sent_reminder = sent
            raise error
        return sent

    def resend_reminder(self, sent_id: str) -> SentReminder:
        """Send the stored content of an earlier attempt again, to the same recipient and channel"""
        original = self.reminder_db.get_sent_reminder(sent_id)
        if original is None:
            raise NotFound("Sent reminder", sent_id)
        with self.locks.hold(original.appointment_id):
            appointment = self._get_appointment(original.appointment_id)
            self._ensure_reminders_allowed(appointment)
            sent, error = self._dispatch(
                original.appointment_id,
                original.channel,
                original.recipient,
                original.subject or "",
                original.content,
                original.template_id,
                resend_of=original.sent_id,
            )
        if error:
            error.sent_reminder = sent
            raise error
        return sent

    def _send_due(self, row: ScheduledReminder) -> str:
        """Send one due row under its appointment lock; returns the outcome bucket"""
        current = self.reminder_db.get_scheduled_reminder(row.reminder_id)
        if current is None or current.status != ReminderStatus.SCHEDULED:
            return "skipped"

        now_iso = to_utc_iso(self.clock())
        appointment = self.appointment_db.get_appointment_by_id(current.appointment_id)
        if appointment is None or appointment.is_terminal:
            self.reminder_db.transition_reminder(
                current.reminder_id, ReminderStatus.CANCELLED, now_iso,
                last_error="appointment no longer eligible for reminders"
            )
            return "cancelled"

        patient = self.patient_db.get_patient_by_id(appointment.patient_id)
        template = self.template_db.get_template(current.template_id)
        if patient is None or template is None:
            missing = "patient" if patient is None else "template"
            self.reminder_db.transition_reminder(
                current.reminder_id, ReminderStatus.FAILED, now_iso,
                last_error=f"{missing} not found"
            )
            logger.error(f"Reminder {current.reminder_id} failed: {missing} not found")
            return "failed"

        data = self.reminder_data(appointment, patient)
        sent, _ = self._dispatch(
            current.appointment_id,
            current.channel,
            current.recipient,
            render(template.subject or template.name, data),
            render(template.body, data),
            template.template_id,
            scheduled=current,
        )
        return "sent" if sent.delivered_ok else "failed"

    def process_due_reminders(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Periodic sweep: send every scheduled row whose time has come, one batch at a time"""
        now = self.clock()
        due = self.reminder_db.get_due_reminders(to_utc_iso(now), limit or self.batch_size)
        summary = {"sent": 0, "failed": 0, "cancelled": 0, "skipped": 0}

        for row in due:
            try:
                with self.locks.hold(row.appointment_id):
                    outcome = self._send_due(row)
            except AppointmentBusy as e:
                logger.warning(f"Skipping reminder {row.reminder_id}: {e.message}")
                outcome = "skipped"
            except StoreUnavailable as e:
                # rolled back, so the row is still scheduled for the next sweep
                logger.error(f"Skipping reminder {row.reminder_id}: {e.message}")
                outcome = "skipped"
            summary[outcome] += 1

        if due:
            logger.info(f"Processed {len(due)} due reminder(s): {summary}")
        return summary
