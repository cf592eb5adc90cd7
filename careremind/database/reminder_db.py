import sqlite3
from typing import Optional, List, Dict, Any
from ..db import transaction
from ..models.reminder import ScheduledReminder, SentReminder, ReminderStatus
import logging

logger = logging.getLogger(__name__)

class ReminderDB:
    """
    The reminder ledger: scheduled rows plus the immutable record of every
    dispatch attempt. All writes are scoped by appointment id or row id.
    """

    def __init__(self, db_path: str = "data/appointments.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize ledger tables"""
        with transaction(self.db_path, "ledger schema") as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_reminders (
                    reminder_id TEXT PRIMARY KEY,
                    appointment_id TEXT NOT NULL,
                    rule_id TEXT NOT NULL,
                    template_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    scheduled_for TEXT NOT NULL,
                    status TEXT DEFAULT 'scheduled',
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    last_error TEXT
                )
            """)
            # at most one active row per (appointment, offset rule)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_scheduled_active
                ON scheduled_reminders (appointment_id, rule_id)
                WHERE status = 'scheduled'
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_scheduled_due
                ON scheduled_reminders (status, scheduled_for)
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sent_reminders (
                    sent_id TEXT PRIMARY KEY,
                    appointment_id TEXT NOT NULL,
                    scheduled_reminder_id TEXT,
                    template_id TEXT,
                    channel TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT,
                    content TEXT NOT NULL,
                    sent_at TEXT NOT NULL,
                    delivered_ok INTEGER DEFAULT 0,
                    external_id TEXT,
                    error_kind TEXT,
                    error_message TEXT,
                    resend_of TEXT,
                    cancelled_during_dispatch INTEGER DEFAULT 0
                )
            """)

    @staticmethod
    def _scheduled_from_row(row) -> ScheduledReminder:
        return ScheduledReminder(
            reminder_id=row['reminder_id'],
            appointment_id=row['appointment_id'],
            rule_id=row['rule_id'],
            template_id=row['template_id'],
            channel=row['channel'],
            recipient=row['recipient'],
            scheduled_for=row['scheduled_for'],
            status=row['status'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            last_error=row['last_error']
        )

    @staticmethod
    def _sent_from_row(row) -> SentReminder:
        return SentReminder(
            sent_id=row['sent_id'],
            appointment_id=row['appointment_id'],
            scheduled_reminder_id=row['scheduled_reminder_id'],
            template_id=row['template_id'],
            channel=row['channel'],
            recipient=row['recipient'],
            subject=row['subject'],
            content=row['content'],
            sent_at=row['sent_at'],
            delivered_ok=bool(row['delivered_ok']),
            external_id=row['external_id'],
            error_kind=row['error_kind'],
            error_message=row['error_message'],
            resend_of=row['resend_of'],
            cancelled_during_dispatch=bool(row['cancelled_during_dispatch'])
        )

    # -- scheduled rows --------------------------------------------------

    def upsert_scheduled_reminder(self, reminder: ScheduledReminder) -> bool:
        """
        Insert a scheduled row, or update it while it is still scheduled.
        Returns False when another active row already holds the
        (appointment_id, rule_id) key or the row has left 'scheduled'.
        """
        with transaction(self.db_path, "saving scheduled reminder") as cursor:
            try:
                cursor.execute("""
                    INSERT INTO scheduled_reminders
                    (reminder_id, appointment_id, rule_id, template_id, channel,
                     recipient, scheduled_for, status, created_at, updated_at, last_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(reminder_id) DO UPDATE SET
                        template_id = excluded.template_id,
                        channel = excluded.channel,
                        recipient = excluded.recipient,
                        scheduled_for = excluded.scheduled_for,
                        updated_at = excluded.updated_at
                    WHERE scheduled_reminders.status = 'scheduled'
                """, (
                    reminder.reminder_id, reminder.appointment_id, reminder.rule_id,
                    reminder.template_id, reminder.channel.value, reminder.recipient,
                    reminder.scheduled_for, reminder.status.value, reminder.created_at,
                    reminder.updated_at, reminder.last_error
                ))
            except sqlite3.IntegrityError as e:
                logger.warning(
                    f"Active reminder already exists for {reminder.appointment_id}/{reminder.rule_id}: {e}"
                )
                return False
            return cursor.rowcount > 0

    @staticmethod
    def _insert_scheduled(cursor, reminder: ScheduledReminder) -> bool:
        try:
            cursor.execute("""
                INSERT INTO scheduled_reminders
                (reminder_id, appointment_id, rule_id, template_id, channel,
                 recipient, scheduled_for, status, created_at, updated_at, last_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                reminder.reminder_id, reminder.appointment_id, reminder.rule_id,
                reminder.template_id, reminder.channel.value, reminder.recipient,
                reminder.scheduled_for, reminder.status.value, reminder.created_at,
                reminder.updated_at, reminder.last_error
            ))
        except sqlite3.IntegrityError as e:
            logger.warning(
                f"Active reminder already exists for {reminder.appointment_id}/{reminder.rule_id}: {e}"
            )
            return False
        return True

    def replace_scheduled_reminders(self, appointment_id: str, updated_at: str,
                                    reminders: List[ScheduledReminder], cancel_all: bool = False,
                                    cancel_ids: Optional[List[str]] = None) -> List[ScheduledReminder]:
        """
        Cancel, then insert, in one transaction: either every change for the
        appointment lands or none does. Returns the rows actually inserted.
        """
        with transaction(self.db_path, "replacing scheduled reminders") as cursor:
            if cancel_all:
                self.cancel_reminders_for_appointment(appointment_id, updated_at, cursor=cursor)
            for reminder_id in cancel_ids or []:
                cursor.execute("""
                    UPDATE scheduled_reminders
                    SET status = 'cancelled', updated_at = ?
                    WHERE reminder_id = ? AND status = 'scheduled'
                """, (updated_at, reminder_id))
            return [r for r in reminders if self._insert_scheduled(cursor, r)]

    def get_scheduled_reminder(self, reminder_id: str) -> Optional[ScheduledReminder]:
        with transaction(self.db_path, "getting scheduled reminder") as cursor:
            cursor.execute("SELECT * FROM scheduled_reminders WHERE reminder_id = ?", (reminder_id,))
            row = cursor.fetchone()
        return self._scheduled_from_row(row) if row else None

    def get_active_reminder(self, appointment_id: str, rule_id: str) -> Optional[ScheduledReminder]:
        with transaction(self.db_path, "getting active reminder") as cursor:
            cursor.execute("""
                SELECT * FROM scheduled_reminders
                WHERE appointment_id = ? AND rule_id = ? AND status = 'scheduled'
            """, (appointment_id, rule_id))
            row = cursor.fetchone()
        return self._scheduled_from_row(row) if row else None

    def list_scheduled_reminders(self, filters: Optional[Dict[str, Any]] = None) -> List[ScheduledReminder]:
        """
        Supported filters: appointment_id, rule_id, status (value or list),
        due_before (UTC ISO, inclusive), limit.
        """
        filters = filters or {}
        clauses = []
        values = []
        
        for field in ['appointment_id', 'rule_id']:
            if filters.get(field):
                clauses.append(f"{field} = ?")
                values.append(filters[field])
        
        status = filters.get('status')
        if status:
            statuses = status if isinstance(status, (list, tuple, set)) else [status]
            statuses = [ReminderStatus(s).value for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            values.extend(statuses)
        
        if filters.get('due_before'):
            clauses.append("scheduled_for <= ?")
            values.append(filters['due_before'])
        
        query = "SELECT * FROM scheduled_reminders"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY scheduled_for, reminder_id"
        if filters.get('limit'):
            query += " LIMIT ?"
            values.append(int(filters['limit']))
        
        with transaction(self.db_path, "listing scheduled reminders") as cursor:
            cursor.execute(query, values)
            rows = cursor.fetchall()
        return [self._scheduled_from_row(row) for row in rows]

    def get_due_reminders(self, now_iso: str, limit: int = 50) -> List[ScheduledReminder]:
        """Get scheduled reminders whose send time has arrived"""
        return self.list_scheduled_reminders({
            'status': ReminderStatus.SCHEDULED,
            'due_before': now_iso,
            'limit': limit
        })

    def transition_reminder(self, reminder_id: str, new_status: ReminderStatus,
                            updated_at: str, last_error: Optional[str] = None) -> bool:
        """
        Move a row out of 'scheduled'. Rows that already left 'scheduled' are
        immutable, so this returns False for them.
        """
        new_status = ReminderStatus(new_status)
        with transaction(self.db_path, "updating scheduled reminder") as cursor:
            cursor.execute("""
                UPDATE scheduled_reminders
                SET status = ?, updated_at = ?, last_error = ?
                WHERE reminder_id = ? AND status = 'scheduled'
            """, (new_status.value, updated_at, last_error, reminder_id))
            return cursor.rowcount > 0

    def cancel_reminders_for_appointment(self, appointment_id: str, updated_at: str,
                                         rule_id: Optional[str] = None, cursor=None) -> int:
        """
        Cancel every scheduled row of an appointment (optionally one rule); returns the count.
        Pass a cursor to join a transaction that is already open.
        """
        if cursor is None:
            with transaction(self.db_path, "cancelling reminders") as cursor:
                return self.cancel_reminders_for_appointment(appointment_id, updated_at, rule_id, cursor)
        query = """
            UPDATE scheduled_reminders
            SET status = 'cancelled', updated_at = ?
            WHERE appointment_id = ? AND status = 'scheduled'
        """
        values = [updated_at, appointment_id]
        if rule_id:
            query += " AND rule_id = ?"
            values.append(rule_id)
        cursor.execute(query, values)
        cancelled = cursor.rowcount
        if cancelled:
            logger.info(f"Cancelled {cancelled} scheduled reminder(s) for {appointment_id}")
        return cancelled

    # -- sent rows -------------------------------------------------------

    @staticmethod
    def _insert_sent(cursor, sent: SentReminder) -> bool:
        cursor.execute("""
            INSERT INTO sent_reminders
            (sent_id, appointment_id, scheduled_reminder_id, template_id, channel,
             recipient, subject, content, sent_at, delivered_ok, external_id,
             error_kind, error_message, resend_of, cancelled_during_dispatch)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(sent_id) DO NOTHING
        """, (
            sent.sent_id, sent.appointment_id, sent.scheduled_reminder_id,
            sent.template_id, sent.channel.value, sent.recipient, sent.subject,
            sent.content, sent.sent_at, int(sent.delivered_ok), sent.external_id,
            sent.error_kind, sent.error_message, sent.resend_of,
            int(sent.cancelled_during_dispatch)
        ))
        return cursor.rowcount > 0

    def upsert_sent_reminder(self, sent: SentReminder) -> bool:
        """Record a dispatch attempt. Sent rows are immutable: an existing sent_id is left untouched."""
        with transaction(self.db_path, "recording sent reminder") as cursor:
            return self._insert_sent(cursor, sent)

    def record_dispatch(self, sent: SentReminder, new_status: Optional[ReminderStatus] = None,
                        last_error: Optional[str] = None) -> SentReminder:
        """
        Record a dispatch attempt and, for a scheduled row, move that row to
        new_status in the same transaction. If the row already left
        'scheduled' the attempt is stored with cancelled_during_dispatch set.
        """
        with transaction(self.db_path, "recording dispatch") as cursor:
            if sent.scheduled_reminder_id and new_status is not None:
                cursor.execute("""
                    UPDATE scheduled_reminders
                    SET status = ?, updated_at = ?, last_error = ?
                    WHERE reminder_id = ? AND status = 'scheduled'
                """, (ReminderStatus(new_status).value, sent.sent_at, last_error, sent.scheduled_reminder_id))
                if cursor.rowcount == 0:
                    sent = sent.model_copy(update={'cancelled_during_dispatch': True})
            self._insert_sent(cursor, sent)
        return sent

    def get_sent_reminder(self, sent_id: str) -> Optional[SentReminder]:
        with transaction(self.db_path, "getting sent reminder") as cursor:
            cursor.execute("SELECT * FROM sent_reminders WHERE sent_id = ?", (sent_id,))
            row = cursor.fetchone()
        return self._sent_from_row(row) if row else None

    def list_sent_reminders(self, filters: Optional[Dict[str, Any]] = None) -> List[SentReminder]:
        """Supported filters: appointment_id, delivered_ok, sent_after (UTC ISO)"""
        filters = filters or {}
        clauses = []
        values = []
        if filters.get('appointment_id'):
            clauses.append("appointment_id = ?")
            values.append(filters['appointment_id'])
        if filters.get('delivered_ok') is not None:
            clauses.append("delivered_ok = ?")
            values.append(int(bool(filters['delivered_ok'])))
        if filters.get('sent_after'):
            clauses.append("sent_at >= ?")
            values.append(filters['sent_after'])
        query = "SELECT * FROM sent_reminders"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY sent_at, sent_id"
        with transaction(self.db_path, "listing sent reminders") as cursor:
            cursor.execute(query, values)
            rows = cursor.fetchall()
        return [self._sent_from_row(row) for row in rows]

    # -- counts ----------------------------------------------------------

    def count_scheduled_by_status(self) -> Dict[str, int]:
        with transaction(self.db_path, "counting scheduled reminders") as cursor:
            cursor.execute("SELECT status, COUNT(*) AS n FROM scheduled_reminders GROUP BY status")
            rows = cursor.fetchall()
        counts = {status.value: 0 for status in ReminderStatus}
        counts.update({row['status']: row['n'] for row in rows})
        return counts

    def count_sent(self, delivered_ok: Optional[bool] = None) -> int:
        query = "SELECT COUNT(*) AS n FROM sent_reminders"
        values = []
        if delivered_ok is not None:
            query += " WHERE delivered_ok = ?"
            values.append(int(delivered_ok))
        with transaction(self.db_path, "counting sent reminders") as cursor:
            cursor.execute(query, values)
            return cursor.fetchone()['n']
