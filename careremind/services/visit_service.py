from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel

from ..models.appointment import Appointment, AppointmentStatus
from ..utils.date_utils import get_current_time


class VisitSummary(BaseModel):
    last_visit: Optional[Appointment] = None
    next_visit: Optional[Appointment] = None

    def to_dict(self):
        return {
            "last_visit": self.last_visit.date if self.last_visit else None,
            "last_visit_time": self.last_visit.time if self.last_visit else None,
            "next_visit": self.next_visit.date if self.next_visit else None,
            "next_visit_time": self.next_visit.time if self.next_visit else None,
        }


def compute_visits(appointments: Iterable[Appointment], patient_id: str,
                   now: Optional[datetime] = None) -> VisitSummary:
    """
    Last visit: latest completed appointment strictly before now.
    Next visit: earliest upcoming appointment strictly after now.
    """
    now = now or get_current_time()
    timed = [(a.start_at(), a) for a in appointments if a.patient_id == patient_id]

    past = [(start, a) for start, a in timed
            if a.status == AppointmentStatus.COMPLETED and start < now]
    future = [(start, a) for start, a in timed
              if a.status == AppointmentStatus.UPCOMING and start > now]

    last_visit = max(past, key=lambda pair: pair[0])[1] if past else None
    next_visit = min(future, key=lambda pair: pair[0])[1] if future else None
    return VisitSummary(last_visit=last_visit, next_visit=next_visit)
