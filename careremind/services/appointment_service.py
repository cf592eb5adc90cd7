"""
Appointment lifecycle: the only writer of appointment status.

Every successful create / edit / status change / delete is announced to
subscribers as an AppointmentEvent, which is how the notification
orchestrator keeps the reminder ledger in step with the appointment.
"""
import uuid
import logging
from contextlib import nullcontext
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from ..database.appointment_db import UPDATABLE_FIELDS, AppointmentDB
from ..database.patient_db import PatientDB
from ..models.appointment import Appointment, AppointmentStatus
from ..utils.date_utils import get_current_time, normalize_time
from ..utils.errors import InvalidTransition, NotFound, ValidationError
from ..utils.locks import AppointmentLocks
from ..utils.validation import validate_appointment_data, validate_date_format, validate_time_format

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.UPCOMING: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.RESCHEDULED: {
        AppointmentStatus.UPCOMING,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

EDITABLE_FIELDS = ['date', 'time', 'duration_minutes', 'appointment_type', 'doctor', 'notes']


class AppointmentEvent(BaseModel):
    kind: str  # created, updated, status_changed, deleted
    appointment_id: str
    appointment: Optional[Appointment] = None
    previous: Optional[Appointment] = None
    reminders_enabled: bool = True


def parse_status(value: Any, current: Optional[AppointmentStatus] = None) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        raise InvalidTransition(current.value if current else None, str(value))


def check_transition(current: AppointmentStatus, requested: Any) -> AppointmentStatus:
    """Return the requested status if reachable from current, else raise InvalidTransition"""
    new_status = parse_status(requested, current)
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)
    return new_status


class AppointmentLifecycle:
    """
    Every mutation re-reads the stored appointment under its lock, checks the
    change against that row, writes it conditionally on the stored status and
    announces it. If a listener fails, the row is put back as it was before
    the error is re-raised.
    """

    def __init__(self, appointment_db: AppointmentDB, patient_db: PatientDB,
                 clock: Callable = get_current_time,
                 listeners: Optional[List[Callable[[AppointmentEvent], None]]] = None,
                 locks: Optional[AppointmentLocks] = None):
        self.appointment_db = appointment_db
        self.patient_db = patient_db
        self.clock = clock
        self.listeners = list(listeners or [])
        self.locks = locks

    def subscribe(self, listener: Callable[[AppointmentEvent], None]):
        self.listeners.append(listener)

    def _emit(self, event: AppointmentEvent):
        for listener in self.listeners:
            listener(event)

    def _hold(self, appointment_id: str):
        return self.locks.hold(appointment_id) if self.locks else nullcontext()

    def get(self, appointment_id: str) -> Appointment:
        appointment = self.appointment_db.get_appointment_by_id(appointment_id)
        if appointment is None:
            raise NotFound("Appointment", appointment_id)
        return appointment

    def create(self, data: Dict[str, Any], reminders_enabled: bool = True) -> Appointment:
        """Validate and store a new appointment in 'upcoming'"""
        now = self.clock()
        result = validate_appointment_data(data, now)
        if not result['valid']:
            raise ValidationError(result['errors'])
        for warning in result['warnings']:
            logger.warning(f"Appointment data warning: {warning}")

        if self.patient_db.get_patient_by_id(data['patient_id']) is None:
            raise NotFound("Patient", data['patient_id'])

        appointment = Appointment(
            appointment_id=data.get('appointment_id') or f"A{uuid.uuid4().hex[:8]}",
            patient_id=data['patient_id'],
            date=data['date'],
            time=data['time'],
            duration_minutes=int(data.get('duration_minutes', 30)),
            appointment_type=data['appointment_type'],
            doctor=data.get('doctor'),
            notes=data.get('notes'),
            status=AppointmentStatus.UPCOMING,
            created_at=now.isoformat(),
            updated_at=now.isoformat(),
        )
        with self._hold(appointment.appointment_id):
            self.appointment_db.create_appointment(appointment)
            try:
                self._emit(AppointmentEvent(
                    kind="created",
                    appointment_id=appointment.appointment_id,
                    appointment=appointment,
                    reminders_enabled=reminders_enabled,
                ))
            except Exception:
                logger.error(f"Reminder setup failed for {appointment.appointment_id}; removing the appointment")
                self.appointment_db.delete_appointment(appointment.appointment_id)
                raise
        return appointment

    def transition(self, appointment: Appointment, new_status: Any) -> Appointment:
        """Change status; raises InvalidTransition before anything is written"""
        with self._hold(appointment.appointment_id):
            current = self.get(appointment.appointment_id)
            status = check_transition(current.status, new_status)
            now = self.clock()
            updates = {'status': status, 'updated_at': now.isoformat()}
            self._write(current, updates)
            updated = current.model_copy(update=updates)
            logger.info(f"Appointment {current.appointment_id}: {current.status.value} -> {status.value}")
            self._announce(AppointmentEvent(
                kind="status_changed",
                appointment_id=current.appointment_id,
                appointment=updated,
                previous=current,
            ))
        return updated

    def update(self, appointment: Appointment, changes: Dict[str, Any]) -> Appointment:
        """
        Edit appointment fields. A changed date/time is validated against the
        current instant; a 'status' key goes through the transition rules.
        """
        updates = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
        errors = {}
        if 'date' in updates and not validate_date_format(updates['date']):
            errors['date'] = "Date must be in YYYY-MM-DD format"
        if 'time' in updates:
            if validate_time_format(updates['time']):
                updates['time'] = normalize_time(updates['time'])
            else:
                errors['time'] = "Time must be in HH:MM format"
        if 'appointment_type' in updates and not updates['appointment_type']:
            errors['appointment_type'] = "Appointment type is required"
        if 'duration_minutes' in updates:
            try:
                updates['duration_minutes'] = int(updates['duration_minutes'])
                if updates['duration_minutes'] <= 0:
                    errors['duration_minutes'] = "Duration must be positive"
            except (TypeError, ValueError):
                errors['duration_minutes'] = "Duration must be a number of minutes"
        if errors:
            raise ValidationError(errors)

        with self._hold(appointment.appointment_id):
            current = self.get(appointment.appointment_id)
            status = current.status
            if 'status' in changes and changes['status'] != current.status:
                status = check_transition(current.status, changes['status'])

            candidate = current.model_copy(update=updates)
            moved = (candidate.date, candidate.time) != (current.date, current.time)
            if moved:
                if current.is_terminal:
                    raise InvalidTransition(current.status.value, AppointmentStatus.RESCHEDULED.value)
                if candidate.start_at() < self.clock():
                    raise ValidationError({'date': "Appointment date and time cannot be in the past"})

            now = self.clock()
            updates['status'] = status
            updates['updated_at'] = now.isoformat()
            self._write(current, updates)
            updated = current.model_copy(update=updates)
            self._announce(AppointmentEvent(
                kind="status_changed" if status != current.status and not moved else "updated",
                appointment_id=current.appointment_id,
                appointment=updated,
                previous=current,
            ))
        return updated

    def reschedule(self, appointment: Appointment, new_date: str, new_time: str) -> Appointment:
        """Move the appointment and tag it 'rescheduled'; the id stays the same"""
        errors = {}
        if not validate_date_format(new_date):
            errors['date'] = "Date must be in YYYY-MM-DD format"
        if not validate_time_format(new_time):
            errors['time'] = "Time must be in HH:MM format"

        with self._hold(appointment.appointment_id):
            current = self.get(appointment.appointment_id)
            check_transition(current.status, AppointmentStatus.RESCHEDULED)
            if errors:
                raise ValidationError(errors)

            now = self.clock()
            updates = {
                'date': new_date,
                'time': normalize_time(new_time),
                'status': AppointmentStatus.RESCHEDULED,
                'updated_at': now.isoformat(),
            }
            if not current.original_date:
                updates['original_date'] = current.date
                updates['original_time'] = current.time
            updated = current.model_copy(update=updates)
            if updated.start_at() < now:
                raise ValidationError({'date': "Appointment date and time cannot be in the past"})

            self._write(current, updates)
            logger.info(
                f"Rescheduled appointment {current.appointment_id} from "
                f"{current.date} {current.time} to {updated.date} {updated.time}"
            )
            self._announce(AppointmentEvent(
                kind="updated",
                appointment_id=current.appointment_id,
                appointment=updated,
                previous=current,
            ))
        return updated

    def delete(self, appointment_id: str) -> None:
        with self._hold(appointment_id):
            current = self.get(appointment_id)
            if not self.appointment_db.delete_appointment(appointment_id):
                raise NotFound("Appointment", appointment_id)
            logger.info(f"Deleted appointment {appointment_id}")
            try:
                self._emit(AppointmentEvent(kind="deleted", appointment_id=appointment_id))
            except Exception:
                logger.error(f"Reminder cleanup failed for {appointment_id}; restoring the appointment")
                self.appointment_db.create_appointment(current)
                raise

    def _write(self, current: Appointment, updates: Dict[str, Any]):
        """Apply updates only while the stored status is still the one the change was checked against"""
        if self.appointment_db.update_appointment(current.appointment_id, updates,
                                                  expected_status=current.status):
            return
        stored = self.appointment_db.get_appointment_by_id(current.appointment_id)
        if stored is None:
            raise NotFound("Appointment", current.appointment_id)
        requested = updates.get('status', current.status)
        raise InvalidTransition(stored.status.value, AppointmentStatus(requested).value)

    def _announce(self, event: AppointmentEvent):
        """Emit a change that is already written; a failing listener rolls the row back to event.previous"""
        try:
            self._emit(event)
        except Exception:
            previous = event.previous
            logger.error(f"Reminder update failed for {previous.appointment_id}; restoring the previous appointment")
            restore = {field: getattr(previous, field) for field in UPDATABLE_FIELDS}
            self.appointment_db.update_appointment(
                previous.appointment_id, restore, expected_status=event.appointment.status
            )
            raise
