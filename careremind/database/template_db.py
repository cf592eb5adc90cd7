import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from ..db import transaction
from ..models.reminder import ReminderTemplate, TemplateCategory, Channel
import logging

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES = [
    {
        "template_id": "tpl-1-week-before",
        "name": "1 Week Before",
        "category": TemplateCategory.APPOINTMENT_REMINDER,
        "subject": "Upcoming appointment at {{clinicName}}",
        "body": (
            "Hello {{patientName}}, this is a reminder of your {{appointmentType}} appointment "
            "with {{doctorName}} on {{appointmentDate}} at {{appointmentTime}}. "
            "Call {{clinicPhone}} if you need to reschedule."
        ),
    },
    {
        "template_id": "tpl-1-day-before",
        "name": "1 Day Before",
        "category": TemplateCategory.APPOINTMENT_REMINDER,
        "subject": "Appointment tomorrow at {{clinicName}}",
        "body": (
            "Hello {{patientName}}, your appointment with {{doctorName}} is tomorrow, "
            "{{appointmentDate}} at {{appointmentTime}}, at {{clinicAddress}}. "
            "Please arrive 15 minutes early."
        ),
    },
    {
        "template_id": "tpl-1-hour-before",
        "name": "1 Hour Before",
        "category": TemplateCategory.APPOINTMENT_REMINDER,
        "subject": "Appointment in 1 hour",
        "body": (
            "Hi {{patientName}}, see you at {{appointmentTime}} today with {{doctorName}}. "
            "{{clinicName}}, {{clinicPhone}}"
        ),
    },
    {
        "template_id": "tpl-follow-up",
        "name": "Follow-up",
        "category": TemplateCategory.FOLLOW_UP,
        "subject": "Time for your follow-up",
        "body": (
            "Hello {{patientName}}, {{doctorName}} would like to see you for a follow-up. "
            "Call {{clinicName}} on {{clinicPhone}} to book."
        ),
    },
]

class TemplateDB:
    def __init__(self, db_path: str = "data/appointments.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize reminder_templates table"""
        with transaction(self.db_path, "templates schema") as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS reminder_templates (
                    template_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    channel TEXT,
                    subject TEXT,
                    body TEXT NOT NULL,
                    active INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    @staticmethod
    def _from_row(row) -> ReminderTemplate:
        return ReminderTemplate(
            template_id=row['template_id'],
            name=row['name'],
            category=row['category'],
            channel=row['channel'] or None,
            subject=row['subject'],
            body=row['body'],
            active=bool(row['active']),
            created_at=row['created_at']
        )

    def create_template(self, data: Dict[str, Any]) -> ReminderTemplate:
        """Create a template; category/channel strings are validated by the model"""
        template = ReminderTemplate(
            template_id=data.get('template_id') or f"T{uuid.uuid4().hex[:8]}",
            name=data['name'],
            category=data.get('category', TemplateCategory.APPOINTMENT_REMINDER),
            channel=data.get('channel'),
            subject=data.get('subject'),
            body=data['body'],
            active=data.get('active', True),
            created_at=datetime.now(tz=timezone.utc).isoformat()
        )
        with transaction(self.db_path, "creating template") as cursor:
            cursor.execute("""
                INSERT INTO reminder_templates
                (template_id, name, category, channel, subject, body, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                template.template_id, template.name, template.category.value,
                template.channel.value if template.channel else None,
                template.subject, template.body, int(template.active), template.created_at
            ))
        logger.info(f"Created template {template.template_id} ({template.name})")
        return template

    def get_template(self, template_id: str) -> Optional[ReminderTemplate]:
        with transaction(self.db_path, "getting template") as cursor:
            cursor.execute("SELECT * FROM reminder_templates WHERE template_id = ?", (template_id,))
            row = cursor.fetchone()
        return self._from_row(row) if row else None

    def list_templates(self, category: Optional[TemplateCategory] = None,
                       active_only: bool = False) -> List[ReminderTemplate]:
        clauses = []
        values = []
        if category:
            clauses.append("category = ?")
            values.append(TemplateCategory(category).value)
        if active_only:
            clauses.append("active = 1")
        query = "SELECT * FROM reminder_templates"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, name"
        with transaction(self.db_path, "listing templates") as cursor:
            cursor.execute(query, values)
            rows = cursor.fetchall()
        return [self._from_row(row) for row in rows]

    def update_template(self, template_id: str, updates: Dict[str, Any]) -> bool:
        set_clauses = []
        values = []
        for field, value in updates.items():
            if field in ['name', 'subject', 'body']:
                set_clauses.append(f"{field} = ?")
                values.append(value)
            elif field == 'category':
                set_clauses.append("category = ?")
                values.append(TemplateCategory(value).value)
            elif field == 'channel':
                set_clauses.append("channel = ?")
                values.append(Channel(value).value if value else None)
            elif field == 'active':
                set_clauses.append("active = ?")
                values.append(int(bool(value)))
        if not set_clauses:
            return False
        values.append(template_id)
        with transaction(self.db_path, "updating template") as cursor:
            cursor.execute(
                f"UPDATE reminder_templates SET {', '.join(set_clauses)} WHERE template_id = ?",
                values
            )
            return cursor.rowcount > 0

    def set_active(self, template_id: str, active: bool) -> bool:
        """Deactivated templates stay readable so existing ledger rows remain valid"""
        return self.update_template(template_id, {'active': active})

    def find_default_template(self, rule_label: str = "",
                              category: TemplateCategory = TemplateCategory.APPOINTMENT_REMINDER,
                              channel: Optional[Channel] = None) -> Optional[ReminderTemplate]:
        """Pick the active template whose name matches the rule label, else the first active one of the category"""
        candidates = self.list_templates(category=category, active_only=True)
        if channel:
            channel = Channel(channel)
            candidates = [t for t in candidates if t.channel in (None, channel)]
        if not candidates:
            return None
        label = (rule_label or "").strip().lower()
        for template in candidates:
            if label and label in template.name.lower():
                return template
        return candidates[0]

    def seed_default_templates(self) -> int:
        """Insert the default templates that are not present yet"""
        created = 0
        for data in DEFAULT_TEMPLATES:
            if self.get_template(data['template_id']) is None:
                self.create_template(data)
                created += 1
        return created
