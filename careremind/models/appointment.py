from enum import Enum
from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime

from ..utils.date_utils import combine_date_time, normalize_time


class AppointmentStatus(str, Enum):
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NO_SHOW = "no-show"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


class Appointment(BaseModel):
    appointment_id: str
    patient_id: str
    date: str  # YYYY-MM-DD
    time: str  # HH:MM, clinic local time
    duration_minutes: int = 30
    appointment_type: str
    doctor: Optional[str] = None
    notes: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.UPCOMING
    original_date: Optional[str] = None  # set on first reschedule
    original_time: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @field_validator('date', 'original_date')
    @classmethod
    def validate_date(cls, v):
        if v is None:
            return v
        try:
            datetime.strptime(v, '%Y-%m-%d')
            return v
        except ValueError:
            raise ValueError('Date must be in YYYY-MM-DD format')

    @field_validator('time', 'original_time')
    @classmethod
    def validate_time(cls, v):
        if v is None:
            return v
        try:
            return normalize_time(v)
        except ValueError:
            raise ValueError('Time must be in HH:MM format')

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def start_at(self, tz_name: Optional[str] = None) -> datetime:
        """Aware start datetime in the clinic timezone"""
        return combine_date_time(self.date, self.time, tz_name)

    def original_start_at(self, tz_name: Optional[str] = None) -> Optional[datetime]:
        if not self.original_date or not self.original_time:
            return None
        return combine_date_time(self.original_date, self.original_time, tz_name)

    def to_dict(self):
        return {
            "appointment_id": self.appointment_id,
            "patient_id": self.patient_id,
            "date": self.date,
            "time": self.time,
            "duration_minutes": self.duration_minutes,
            "appointment_type": self.appointment_type,
            "doctor": self.doctor or "",
            "notes": self.notes or "",
            "status": self.status.value,
            "original_date": self.original_date or "",
            "original_time": self.original_time or "",
            "created_at": self.created_at,
            "updated_at": self.updated_at or ""
        }
