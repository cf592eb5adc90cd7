from typing import Optional, List, Dict, Any
from ..db import transaction
from ..models.appointment import Appointment
import logging

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = [
    'date', 'time', 'duration_minutes', 'appointment_type', 'doctor', 'notes',
    'status', 'original_date', 'original_time', 'updated_at'
]

class AppointmentDB:
    def __init__(self, db_path: str = "data/appointments.db"):
        self.db_path = db_path
        self._init_db()

    def _init_db(self):
        """Initialize appointments table"""
        with transaction(self.db_path, "appointments schema") as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS appointments (
                    appointment_id TEXT PRIMARY KEY,
                    patient_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    time TEXT NOT NULL,
                    duration_minutes INTEGER NOT NULL DEFAULT 30,
                    appointment_type TEXT NOT NULL,
                    doctor TEXT,
                    notes TEXT,
                    status TEXT DEFAULT 'upcoming',
                    original_date TEXT,
                    original_time TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS ix_appointments_patient
                ON appointments (patient_id, date, time)
            """)

    @staticmethod
    def _from_row(row) -> Appointment:
        return Appointment(
            appointment_id=row['appointment_id'],
            patient_id=row['patient_id'],
            date=row['date'],
            time=row['time'],
            duration_minutes=row['duration_minutes'],
            appointment_type=row['appointment_type'],
            doctor=row['doctor'],
            notes=row['notes'],
            status=row['status'],
            original_date=row['original_date'],
            original_time=row['original_time'],
            created_at=row['created_at'],
            updated_at=row['updated_at']
        )

    def create_appointment(self, appointment: Appointment) -> Appointment:
        """Create a new appointment"""
        with transaction(self.db_path, "creating appointment") as cursor:
            cursor.execute("""
                INSERT INTO appointments 
                (appointment_id, patient_id, date, time, duration_minutes,
                 appointment_type, doctor, notes, status, original_date,
                 original_time, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                appointment.appointment_id, appointment.patient_id, appointment.date,
                appointment.time, appointment.duration_minutes, appointment.appointment_type,
                appointment.doctor, appointment.notes, appointment.status.value,
                appointment.original_date, appointment.original_time,
                appointment.created_at, appointment.updated_at
            ))
        logger.info(f"Created appointment {appointment.appointment_id}")
        return appointment

    def get_appointment_by_id(self, appointment_id: str) -> Optional[Appointment]:
        """Get appointment by ID"""
        with transaction(self.db_path, "getting appointment") as cursor:
            cursor.execute("SELECT * FROM appointments WHERE appointment_id = ?", (appointment_id,))
            row = cursor.fetchone()
        
        if row:
            return self._from_row(row)
        return None

    def update_appointment(self, appointment_id: str, updates: Dict[str, Any],
                           expected_status: Optional[Any] = None) -> bool:
        """
        Update appointment fields; returns False when no row matched.
        With expected_status the write only applies while the stored status
        still equals it.
        """
        set_clauses = []
        values = []

        for field, value in updates.items():
            if field in UPDATABLE_FIELDS:
                set_clauses.append(f"{field} = ?")
                values.append(value.value if hasattr(value, 'value') else value)

        query = f"UPDATE appointments SET {', '.join(set_clauses)} WHERE appointment_id = ?"
        values.append(appointment_id)
        if expected_status is not None:
            query += " AND status = ?"
            values.append(expected_status.value if hasattr(expected_status, 'value') else expected_status)
        with transaction(self.db_path, "updating appointment") as cursor:
            cursor.execute(query, values)
            return cursor.rowcount > 0

    def delete_appointment(self, appointment_id: str) -> bool:
        with transaction(self.db_path, "deleting appointment") as cursor:
            cursor.execute("DELETE FROM appointments WHERE appointment_id = ?", (appointment_id,))
            return cursor.rowcount > 0

    def get_appointments_by_patient(self, patient_id: str) -> List[Appointment]:
        """Get appointments for a patient"""
        return self.list_appointments({'patient_id': patient_id})

    def list_appointments(self, filters: Optional[Dict[str, Any]] = None) -> List[Appointment]:
        """
        List appointments. Supported filters: patient_id, status (value or list),
        date_from / date_to (YYYY-MM-DD, inclusive).
        """
        filters = filters or {}
        clauses = []
        values = []
        
        if filters.get('patient_id'):
            clauses.append("patient_id = ?")
            values.append(filters['patient_id'])
        
        status = filters.get('status')
        if status:
            statuses = status if isinstance(status, (list, tuple, set)) else [status]
            statuses = [s.value if hasattr(s, 'value') else s for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            values.extend(statuses)
        
        if filters.get('date_from'):
            clauses.append("date >= ?")
            values.append(filters['date_from'])
        
        if filters.get('date_to'):
            clauses.append("date <= ?")
            values.append(filters['date_to'])
        
        query = "SELECT * FROM appointments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY date, time"
        
        with transaction(self.db_path, "listing appointments") as cursor:
            cursor.execute(query, values)
            rows = cursor.fetchall()
        
        return [self._from_row(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        with transaction(self.db_path, "counting appointments") as cursor:
            cursor.execute("SELECT status, COUNT(*) AS n FROM appointments GROUP BY status")
            rows = cursor.fetchall()
        return {row['status']: row['n'] for row in rows}
