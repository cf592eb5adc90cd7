"""
Flat {{variable}} substitution for reminder templates.

Placeholders match case-insensitively and ignore surrounding whitespace and
underscores, so {{ patient_name }}, {{PatientName}} and {{patientName}} all
resolve to the same data key. A key without a value renders as [key] so a
reminder with missing data can still be sent.
"""
import re
from typing import Any, Dict, Mapping, Optional

from .date_utils import format_date, format_time

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}\s][^{}]*?)\s*\}\}")

APPOINTMENT_VARIABLES = [
    "patientName",
    "appointmentDate",
    "appointmentTime",
    "doctorName",
    "clinicName",
    "clinicPhone",
    "clinicAddress",
]


def _normalize_key(key: str) -> str:
    return re.sub(r"[\s_]", "", str(key)).lower()


def render(template: Optional[str], data: Optional[Mapping[str, Any]] = None) -> str:
    """Replace every {{key}} in template with data[key]; unresolved keys become [key]"""
    if not template:
        return ""
    lookup = {}
    for key, value in (data or {}).items():
        if value is not None:
            lookup[_normalize_key(key)] = str(value)

    def _substitute(match):
        key = match.group(1)
        return lookup.get(_normalize_key(key), f"[{key}]")

    return PLACEHOLDER_PATTERN.sub(_substitute, str(template))


def find_placeholders(template: Optional[str]):
    """List placeholder names in order of appearance"""
    if not template:
        return []
    return [m.group(1) for m in PLACEHOLDER_PATTERN.finditer(str(template))]


def build_appointment_reminder_data(appointment, patient, clinic: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Data map for appointment reminders; patient name is resolved here, never stored on the appointment"""
    clinic = clinic or {}
    return {
        "patientName": patient.full_name if patient else None,
        "appointmentDate": format_date(appointment.date),
        "appointmentTime": format_time(appointment.time),
        "appointmentType": appointment.appointment_type or None,
        "doctorName": appointment.doctor or None,
        "clinicName": clinic.get("name"),
        "clinicPhone": clinic.get("phone"),
        "clinicAddress": clinic.get("address"),
    }
