"""
Unit tests for the appointment lifecycle.

Covers:
- Creation and field validation
- Status transitions and terminal states
- Edits and reschedules
- Lifecycle events
- Stale snapshots, lock contention and listener failures
"""

import threading

import pytest

from careremind.models.appointment import AppointmentStatus
from careremind.services.appointment_service import AppointmentLifecycle, check_transition
from careremind.utils.errors import (
    AppointmentBusy,
    InvalidTransition,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from careremind.utils.locks import AppointmentLocks

NON_TERMINAL = [AppointmentStatus.UPCOMING, AppointmentStatus.RESCHEDULED]
TERMINAL = [AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW]


@pytest.fixture
def events():
    return []


@pytest.fixture
def lifecycle(appointment_db, patient_db, clock, events):
    return AppointmentLifecycle(appointment_db, patient_db, clock=clock, listeners=[events.append])


# =============================================================================
# Creation
# =============================================================================

class TestCreate:
    def test_creates_upcoming_appointment(self, lifecycle, appointment_db, appointment_data, events):
        appointment = lifecycle.create(appointment_data)

        assert appointment.status == AppointmentStatus.UPCOMING
        assert appointment.appointment_id.startswith("A")
        assert appointment_db.get_appointment_by_id(appointment.appointment_id) is not None
        assert [e.kind for e in events] == ["created"]
        assert events[0].reminders_enabled is True

    @pytest.mark.parametrize("field", ["patient_id", "date", "time", "appointment_type"])
    def test_missing_required_field(self, lifecycle, appointment_data, field, events):
        del appointment_data[field]
        with pytest.raises(ValidationError) as exc:
            lifecycle.create(appointment_data)
        assert field in exc.value.errors
        assert events == []

    def test_past_start_rejected(self, lifecycle, appointment_data, appointment_db):
        appointment_data["date"] = "2025-03-09"
        appointment_data["time"] = "09:59"
        with pytest.raises(ValidationError) as exc:
            lifecycle.create(appointment_data)
        assert "date" in exc.value.errors
        assert appointment_db.list_appointments() == []

    def test_bad_time_format(self, lifecycle, appointment_data):
        appointment_data["time"] = "2pm"
        with pytest.raises(ValidationError) as exc:
            lifecycle.create(appointment_data)
        assert exc.value.kind == "validation_error"
        assert "time" in exc.value.errors

    def test_unknown_patient(self, lifecycle, appointment_data):
        appointment_data["patient_id"] = "P9999"
        with pytest.raises(NotFound):
            lifecycle.create(appointment_data)


# =============================================================================
# Transitions
# =============================================================================

class TestTransitions:
    @pytest.mark.parametrize("target", [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    ])
    def test_upcoming_can_move(self, lifecycle, appointment_data, appointment_db, target):
        appointment = lifecycle.create(appointment_data)
        updated = lifecycle.transition(appointment, target.value)
        assert updated.status == target
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == target

    @pytest.mark.parametrize("terminal", TERMINAL)
    @pytest.mark.parametrize("target", list(AppointmentStatus))
    def test_terminal_states_accept_nothing(self, terminal, target):
        with pytest.raises(InvalidTransition):
            check_transition(terminal, target)

    def test_unknown_status_rejected(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        with pytest.raises(InvalidTransition):
            lifecycle.transition(appointment, "confirmed")

    def test_rejected_transition_writes_nothing(self, lifecycle, appointment_data, appointment_db, events):
        appointment = lifecycle.create(appointment_data)
        completed = lifecycle.transition(appointment, "completed")
        events.clear()
        with pytest.raises(InvalidTransition):
            lifecycle.transition(completed, "upcoming")
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == AppointmentStatus.COMPLETED
        assert events == []

    def test_transition_emits_event_with_previous(self, lifecycle, appointment_data, events):
        appointment = lifecycle.create(appointment_data)
        lifecycle.transition(appointment, "cancelled")
        event = events[-1]
        assert event.kind == "status_changed"
        assert event.previous.status == AppointmentStatus.UPCOMING
        assert event.appointment.status == AppointmentStatus.CANCELLED

    def test_upcoming_to_upcoming_is_not_a_transition(self):
        with pytest.raises(InvalidTransition):
            check_transition(AppointmentStatus.UPCOMING, "upcoming")


# =============================================================================
# Edits and reschedules
# =============================================================================

class TestUpdate:
    def test_edit_notes_keeps_status(self, lifecycle, appointment_data, events):
        appointment = lifecycle.create(appointment_data)
        updated = lifecycle.update(appointment, {"notes": "bring reports"})
        assert updated.notes == "bring reports"
        assert updated.status == AppointmentStatus.UPCOMING
        assert events[-1].kind == "updated"

    def test_edit_ignores_unknown_fields(self, lifecycle, appointment_data, appointment_db):
        appointment = lifecycle.create(appointment_data)
        lifecycle.update(appointment, {"patient_id": "P0002", "doctor": "Dr Asha Rao"})
        stored = appointment_db.get_appointment_by_id(appointment.appointment_id)
        assert stored.patient_id == appointment.patient_id
        assert stored.doctor == "Dr Asha Rao"

    def test_moving_into_the_past_rejected(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        with pytest.raises(ValidationError):
            lifecycle.update(appointment, {"date": "2025-03-01"})

    def test_moving_terminal_appointment_rejected(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        cancelled = lifecycle.transition(appointment, "cancelled")
        with pytest.raises(InvalidTransition):
            lifecycle.update(cancelled, {"date": "2025-03-12"})

    def test_status_change_through_update(self, lifecycle, appointment_data, events):
        appointment = lifecycle.create(appointment_data)
        updated = lifecycle.update(appointment, {"status": "no-show"})
        assert updated.status == AppointmentStatus.NO_SHOW
        assert events[-1].kind == "status_changed"

    def test_invalid_duration(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        with pytest.raises(ValidationError) as exc:
            lifecycle.update(appointment, {"duration_minutes": "abc"})
        assert "duration_minutes" in exc.value.errors


class TestReschedule:
    def test_reschedule_keeps_id_and_original_time(self, lifecycle, appointment_data, appointment_db):
        appointment = lifecycle.create(appointment_data)
        moved = lifecycle.reschedule(appointment, "2025-03-12", "09:00")

        assert moved.appointment_id == appointment.appointment_id
        assert moved.status == AppointmentStatus.RESCHEDULED
        assert (moved.date, moved.time) == ("2025-03-12", "09:00")
        assert (moved.original_date, moved.original_time) == ("2025-03-10", "14:00")

        stored = appointment_db.get_appointment_by_id(appointment.appointment_id)
        assert stored.status == AppointmentStatus.RESCHEDULED
        assert stored.original_date == "2025-03-10"

    def test_second_reschedule_keeps_first_original(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        moved = lifecycle.reschedule(appointment, "2025-03-12", "09:00")
        moved_again = lifecycle.reschedule(moved, "2025-03-14", "11:30")
        assert (moved_again.original_date, moved_again.original_time) == ("2025-03-10", "14:00")

    def test_reschedule_terminal_rejected(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        done = lifecycle.transition(appointment, "completed")
        with pytest.raises(InvalidTransition):
            lifecycle.reschedule(done, "2025-03-12", "09:00")

    def test_reschedule_into_past_rejected(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        with pytest.raises(ValidationError):
            lifecycle.reschedule(appointment, "2025-03-08", "09:00")


class TestDelete:
    def test_delete_emits_event(self, lifecycle, appointment_data, appointment_db, events):
        appointment = lifecycle.create(appointment_data)
        lifecycle.delete(appointment.appointment_id)
        assert appointment_db.get_appointment_by_id(appointment.appointment_id) is None
        assert events[-1].kind == "deleted"

    def test_delete_missing(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.delete("A-missing")


# =============================================================================
# Stale snapshots and concurrent changes
# =============================================================================

class TestStaleSnapshots:
    def test_stale_snapshot_cannot_leave_terminal_state(self, lifecycle, appointment_data, appointment_db, events):
        appointment = lifecycle.create(appointment_data)
        stale = lifecycle.get(appointment.appointment_id)
        lifecycle.transition(appointment, "cancelled")
        events.clear()

        with pytest.raises(InvalidTransition) as exc:
            lifecycle.transition(stale, "completed")

        assert exc.value.current == "cancelled"
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == AppointmentStatus.CANCELLED
        assert events == []

    def test_stale_snapshot_cannot_reschedule_completed(self, lifecycle, appointment_data, appointment_db):
        appointment = lifecycle.create(appointment_data)
        lifecycle.transition(appointment, "completed")
        with pytest.raises(InvalidTransition):
            lifecycle.reschedule(appointment, "2025-03-12", "09:00")
        stored = appointment_db.get_appointment_by_id(appointment.appointment_id)
        assert (stored.date, stored.time) == ("2025-03-10", "14:00")

    def test_stale_snapshot_cannot_edit_time_of_cancelled(self, lifecycle, appointment_data):
        appointment = lifecycle.create(appointment_data)
        lifecycle.transition(appointment, "cancelled")
        with pytest.raises(InvalidTransition):
            lifecycle.update(appointment, {"time": "16:00"})

    def test_store_write_is_conditional_on_status(self, lifecycle, appointment_data, appointment_db):
        appointment = lifecycle.create(appointment_data)
        lifecycle.transition(appointment, "cancelled")
        assert appointment_db.update_appointment(
            appointment.appointment_id,
            {"status": "completed", "updated_at": "2025-03-09T10:00:00+05:30"},
            expected_status="upcoming",
        ) is False
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == AppointmentStatus.CANCELLED

    def test_change_waits_for_appointment_lock(self, appointment_db, patient_db, clock, appointment_data, tmp_path):
        locks = AppointmentLocks(str(tmp_path / "locks"), timeout=0.2)
        lifecycle = AppointmentLifecycle(appointment_db, patient_db, clock=clock, locks=locks)
        appointment = lifecycle.create(appointment_data)
        errors = []

        def cancel():
            try:
                lifecycle.transition(appointment, "cancelled")
            except AppointmentBusy as e:
                errors.append(e)

        with locks.hold(appointment.appointment_id):
            worker = threading.Thread(target=cancel)
            worker.start()
            worker.join()

        assert len(errors) == 1
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == AppointmentStatus.UPCOMING


# =============================================================================
# Listener failures
# =============================================================================

def ledger_down(event):
    if event.kind != "created":
        raise StoreUnavailable("ledger unavailable")


class TestListenerFailure:
    @pytest.fixture
    def failing_lifecycle(self, appointment_db, patient_db, clock):
        return AppointmentLifecycle(appointment_db, patient_db, clock=clock, listeners=[ledger_down])

    def test_failed_reschedule_restores_appointment(self, failing_lifecycle, appointment_data, appointment_db):
        appointment = failing_lifecycle.create(appointment_data)
        with pytest.raises(StoreUnavailable):
            failing_lifecycle.reschedule(appointment, "2025-03-12", "09:00")

        stored = appointment_db.get_appointment_by_id(appointment.appointment_id)
        assert (stored.date, stored.time) == ("2025-03-10", "14:00")
        assert stored.status == AppointmentStatus.UPCOMING
        assert stored.original_date is None

    def test_failed_transition_restores_status(self, failing_lifecycle, appointment_data, appointment_db):
        appointment = failing_lifecycle.create(appointment_data)
        with pytest.raises(StoreUnavailable):
            failing_lifecycle.transition(appointment, "cancelled")
        assert appointment_db.get_appointment_by_id(appointment.appointment_id).status == AppointmentStatus.UPCOMING

    def test_failed_edit_restores_fields(self, failing_lifecycle, appointment_data, appointment_db):
        appointment = failing_lifecycle.create(appointment_data)
        with pytest.raises(StoreUnavailable):
            failing_lifecycle.update(appointment, {"time": "16:00", "notes": "fasting"})
        stored = appointment_db.get_appointment_by_id(appointment.appointment_id)
        assert stored.time == "14:00"
        assert stored.notes is None

    def test_failed_delete_restores_appointment(self, failing_lifecycle, appointment_data, appointment_db):
        appointment = failing_lifecycle.create(appointment_data)
        with pytest.raises(StoreUnavailable):
            failing_lifecycle.delete(appointment.appointment_id)
        assert appointment_db.get_appointment_by_id(appointment.appointment_id) is not None

    def test_failed_create_leaves_no_appointment(self, appointment_db, patient_db, clock, appointment_data):
        def refuse(event):
            raise StoreUnavailable("ledger unavailable")

        lifecycle = AppointmentLifecycle(appointment_db, patient_db, clock=clock, listeners=[refuse])
        with pytest.raises(StoreUnavailable):
            lifecycle.create(appointment_data)
        assert appointment_db.list_appointments() == []
