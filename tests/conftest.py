"""
Pytest configuration for all tests.
Sets up the Python path and builds every service against a temporary
directory, a fake clock and a recording gateway.
"""

import os
import sys
import uuid
from datetime import datetime, timedelta

import pytest

# Add project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from careremind.agents.flow import ClinicFlow
from careremind.database.appointment_db import AppointmentDB
from careremind.database.patient_db import PatientDB
from careremind.database.reminder_db import ReminderDB
from careremind.database.template_db import TemplateDB
from careremind.models.reminder import DispatchResult, OffsetRule, ReminderPolicy
from careremind.services.notification_service import DispatchGateway
from careremind.utils.date_utils import get_clinic_timezone
from careremind.utils.locks import AppointmentLocks

CLINIC = {
    "name": "Test Clinic",
    "phone": "(555) 000-1111",
    "address": "1 Test Street",
}


def local(year, month, day, hour=0, minute=0):
    """Aware clinic-local datetime"""
    return get_clinic_timezone().localize(datetime(year, month, day, hour, minute))


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args):
        self.now = local(*args)

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(DispatchGateway):
    """Records every send; set fail_with to an exception to make sends fail"""

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.on_send = None

    def _send(self, recipient, channel, subject, body):
        if self.on_send:
            self.on_send(recipient, channel, subject, body)
        if self.fail_with:
            raise self.fail_with
        self.sent.append({
            "recipient": recipient,
            "channel": channel,
            "subject": subject,
            "body": body,
        })
        return DispatchResult(external_id=f"fake-{uuid.uuid4().hex[:6]}", delivered_ok=True)


@pytest.fixture
def clock():
    return FakeClock(local(2025, 3, 9, 10, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def policy():
    return ReminderPolicy(offsets=[
        OffsetRule(delta="-24h", label="1 Day Before"),
        OffsetRule(delta="-1h", label="1 Hour Before"),
    ])


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "appointments.db")


@pytest.fixture
def appointment_db(db_path):
    return AppointmentDB(db_path)


@pytest.fixture
def reminder_db(db_path):
    return ReminderDB(db_path)


@pytest.fixture
def template_db(db_path):
    db = TemplateDB(db_path)
    db.seed_default_templates()
    return db


@pytest.fixture
def patient_db(tmp_path):
    return PatientDB(str(tmp_path / "patients.csv"))


@pytest.fixture
def locks(tmp_path):
    return AppointmentLocks(str(tmp_path / "locks"), timeout=5)


@pytest.fixture
def patient(patient_db):
    return patient_db.create_patient({
        "first_name": "Asha",
        "last_name": "Verma",
        "dob": "1985-04-12",
        "phone": "+919876543210",
        "email": "asha.verma@example.com",
        "preferred_channel": "sms",
    })


@pytest.fixture
def flow(tmp_path, appointment_db, patient_db, template_db, reminder_db,
         gateway, locks, clock, policy):
    return ClinicFlow(
        appointment_db=appointment_db,
        patient_db=patient_db,
        template_db=template_db,
        reminder_db=reminder_db,
        gateway=gateway,
        locks=locks,
        clock=clock,
        policy=policy,
        clinic=CLINIC,
        export_dir=str(tmp_path / "exports"),
    )


@pytest.fixture
def appointment_data(patient):
    return {
        "patient_id": patient.patient_id,
        "date": "2025-03-10",
        "time": "14:00",
        "appointment_type": "Consultation",
        "doctor": "Dr Meera Iyer",
    }
