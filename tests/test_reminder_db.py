"""
Tests for the reminder ledger store.
"""

import pytest

from careremind.models.reminder import Channel, ReminderStatus, ScheduledReminder, SentReminder


def make_row(reminder_id="R1", rule_id="1-day-before", scheduled_for="2025-03-09T08:30:00+00:00"):
    return ScheduledReminder(
        reminder_id=reminder_id,
        appointment_id="A1",
        rule_id=rule_id,
        template_id="tpl-1-day-before",
        channel=Channel.SMS,
        recipient="+919876543210",
        scheduled_for=scheduled_for,
        created_at="2025-03-09T04:30:00+00:00",
    )


class TestScheduledRows:
    def test_insert_and_get(self, reminder_db):
        assert reminder_db.upsert_scheduled_reminder(make_row()) is True
        row = reminder_db.get_scheduled_reminder("R1")
        assert row.status == ReminderStatus.SCHEDULED
        assert row.channel == Channel.SMS
        assert reminder_db.get_active_reminder("A1", "1-day-before").reminder_id == "R1"

    def test_one_active_row_per_rule(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1"))
        assert reminder_db.upsert_scheduled_reminder(make_row("R2")) is False
        assert reminder_db.get_scheduled_reminder("R2") is None

    def test_new_row_allowed_after_cancel(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1"))
        reminder_db.transition_reminder("R1", ReminderStatus.CANCELLED, "t")
        assert reminder_db.upsert_scheduled_reminder(make_row("R2")) is True

    def test_update_while_scheduled(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row())
        moved = make_row(scheduled_for="2025-03-10T07:30:00+00:00")
        assert reminder_db.upsert_scheduled_reminder(moved) is True
        assert reminder_db.get_scheduled_reminder("R1").scheduled_for == "2025-03-10T07:30:00+00:00"

    def test_transitioned_rows_are_immutable(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row())
        assert reminder_db.transition_reminder("R1", ReminderStatus.SENT, "t") is True
        assert reminder_db.transition_reminder("R1", ReminderStatus.CANCELLED, "t") is False
        assert reminder_db.upsert_scheduled_reminder(make_row(scheduled_for="2025-04-01T00:00:00+00:00")) is False
        row = reminder_db.get_scheduled_reminder("R1")
        assert row.status == ReminderStatus.SENT
        assert row.scheduled_for == "2025-03-09T08:30:00+00:00"

    def test_due_rows(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1", "a", "2025-03-09T08:30:00+00:00"))
        reminder_db.upsert_scheduled_reminder(make_row("R2", "b", "2025-03-10T07:30:00+00:00"))
        due = reminder_db.get_due_reminders("2025-03-09T08:30:00+00:00")
        assert [r.reminder_id for r in due] == ["R1"]

    def test_cancel_for_appointment(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1", "a"))
        reminder_db.upsert_scheduled_reminder(make_row("R2", "b"))
        reminder_db.transition_reminder("R2", ReminderStatus.SENT, "t")
        assert reminder_db.cancel_reminders_for_appointment("A1", "t") == 1
        assert reminder_db.count_scheduled_by_status() == {
            "scheduled": 0, "sent": 1, "cancelled": 1, "failed": 0,
        }

    def test_replace_cancels_before_insert(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1"))
        moved = make_row("R2", scheduled_for="2025-03-11T03:30:00+00:00")
        created = reminder_db.replace_scheduled_reminders("A1", "t", [moved], cancel_all=True)
        assert [r.reminder_id for r in created] == ["R2"]
        assert reminder_db.get_scheduled_reminder("R1").status == ReminderStatus.CANCELLED
        assert reminder_db.get_active_reminder("A1", "1-day-before").reminder_id == "R2"

    def test_replace_skips_duplicate_active_rule(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row("R1"))
        assert reminder_db.replace_scheduled_reminders("A1", "t", [make_row("R2")]) == []
        assert reminder_db.get_active_reminder("A1", "1-day-before").reminder_id == "R1"

    @pytest.mark.parametrize("status", ["scheduled", ["sent", "cancelled"]])
    def test_status_filter(self, reminder_db, status):
        reminder_db.upsert_scheduled_reminder(make_row("R1", "a"))
        rows = reminder_db.list_scheduled_reminders({'status': status})
        assert len(rows) == (1 if status == "scheduled" else 0)


class TestSentRows:
    def test_record_and_count(self, reminder_db):
        sent = SentReminder(
            sent_id="S1", appointment_id="A1", channel=Channel.EMAIL,
            recipient="a@example.com", subject="Hi", content="Body",
            sent_at="2025-03-09T08:30:00+00:00", delivered_ok=False,
            error_kind="provider_unavailable", error_message="down",
        )
        assert reminder_db.upsert_sent_reminder(sent) is True
        # immutable once written
        assert reminder_db.upsert_sent_reminder(sent.model_copy(update={'content': "x"})) is False

        stored = reminder_db.get_sent_reminder("S1")
        assert stored.content == "Body"
        assert stored.delivered_ok is False
        assert reminder_db.count_sent() == 1
        assert reminder_db.count_sent(delivered_ok=True) == 0
        assert len(reminder_db.list_sent_reminders({'delivered_ok': False})) == 1

    def make_attempt(self, scheduled_reminder_id="R1"):
        return SentReminder(
            sent_id="S1", appointment_id="A1", scheduled_reminder_id=scheduled_reminder_id,
            channel=Channel.SMS, recipient="+919876543210", content="Body",
            sent_at="2025-03-09T08:30:00+00:00", delivered_ok=True,
        )

    def test_record_dispatch_moves_row_with_attempt(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row())
        sent = reminder_db.record_dispatch(self.make_attempt(), ReminderStatus.SENT)
        assert sent.cancelled_during_dispatch is False
        assert reminder_db.get_scheduled_reminder("R1").status == ReminderStatus.SENT
        assert reminder_db.get_sent_reminder("S1").scheduled_reminder_id == "R1"

    def test_record_dispatch_after_cancel(self, reminder_db):
        reminder_db.upsert_scheduled_reminder(make_row())
        reminder_db.transition_reminder("R1", ReminderStatus.CANCELLED, "t")
        sent = reminder_db.record_dispatch(self.make_attempt(), ReminderStatus.SENT)
        assert sent.cancelled_during_dispatch is True
        assert reminder_db.get_sent_reminder("S1").cancelled_during_dispatch is True
        assert reminder_db.get_scheduled_reminder("R1").status == ReminderStatus.CANCELLED
