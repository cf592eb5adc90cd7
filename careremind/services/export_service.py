import os
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import pandas as pd

from ..database.appointment_db import AppointmentDB
from ..database.patient_db import PatientDB
from ..database.reminder_db import ReminderDB
from ..models.appointment import AppointmentStatus
from ..models.reminder import ReminderStatus
from ..utils.date_utils import get_current_time, to_local

logger = logging.getLogger(__name__)


class ExportService:
    def __init__(self, reminder_db: ReminderDB, appointment_db: AppointmentDB,
                 patient_db: PatientDB, export_dir: str = "exports",
                 clock: Callable[[], datetime] = get_current_time):
        self.reminder_db = reminder_db
        self.appointment_db = appointment_db
        self.patient_db = patient_db
        self.export_dir = export_dir
        self.clock = clock

    def reminder_stats(self) -> Dict[str, int]:
        """Counts straight from the reminder ledger"""
        by_status = self.reminder_db.count_scheduled_by_status()
        stats = {status.value: by_status.get(status.value, 0) for status in ReminderStatus}
        stats['dispatched'] = self.reminder_db.count_sent()
        stats['delivered'] = self.reminder_db.count_sent(delivered_ok=True)
        stats['delivery_failures'] = self.reminder_db.count_sent(delivered_ok=False)
        return stats

    def dashboard_stats(self) -> Dict[str, Any]:
        today = to_local(self.clock()).strftime('%Y-%m-%d')
        todays = self.appointment_db.list_appointments({'date_from': today, 'date_to': today})
        by_status = self.appointment_db.count_by_status()
        return {
            'todays_appointments': len(todays),
            'upcoming': by_status.get(AppointmentStatus.UPCOMING.value, 0)
                        + by_status.get(AppointmentStatus.RESCHEDULED.value, 0),
            'no_shows': by_status.get(AppointmentStatus.NO_SHOW.value, 0),
            'total_patients': self.patient_db.count_patients(),
            'reminders_sent': self.reminder_db.count_sent(delivered_ok=True),
        }

    def export_reminder_ledger(self, appointment_id: Optional[str] = None) -> str:
        """Export scheduled and sent reminders to one Excel workbook; returns the path, or "" when empty"""
        filters = {'appointment_id': appointment_id} if appointment_id else None
        scheduled = self.reminder_db.list_scheduled_reminders(filters)
        sent = self.reminder_db.list_sent_reminders(filters)
        if not scheduled and not sent:
            logger.warning("No reminder data found")
            return ""

        scheduled_rows = [{
            'Reminder ID': r.reminder_id,
            'Appointment ID': r.appointment_id,
            'Rule': r.rule_id,
            'Template': r.template_id,
            'Channel': r.channel.value,
            'Recipient': r.recipient,
            'Scheduled For': r.scheduled_for,
            'Status': r.status.value,
            'Last Error': r.last_error or '',
        } for r in scheduled]
        sent_rows = [{
            'Sent ID': s.sent_id,
            'Appointment ID': s.appointment_id,
            'Scheduled Reminder': s.scheduled_reminder_id or '',
            'Template': s.template_id or '',
            'Channel': s.channel.value,
            'Recipient': s.recipient,
            'Sent At': s.sent_at,
            'Delivered': 'Yes' if s.delivered_ok else 'No',
            'External ID': s.external_id or '',
            'Error': f"{s.error_kind}: {s.error_message}" if s.error_kind else '',
            'Resend Of': s.resend_of or '',
            'Cancelled During Dispatch': 'Yes' if s.cancelled_during_dispatch else 'No',
        } for s in sent]

        os.makedirs(self.export_dir, exist_ok=True)
        filename = f"reminder_ledger_{self.clock().strftime('%Y%m%d_%H%M%S')}.xlsx"
        filepath = os.path.join(self.export_dir, filename)
        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            pd.DataFrame(scheduled_rows).to_excel(writer, sheet_name='Scheduled', index=False)
            pd.DataFrame(sent_rows).to_excel(writer, sheet_name='Sent', index=False)

        logger.info(f"Exported reminder ledger: {filepath}")
        return filepath
