from pydantic import BaseModel, field_validator
from typing import Optional
from datetime import datetime

from .reminder import Channel


class Patient(BaseModel):
    patient_id: str
    first_name: str
    last_name: str
    dob: Optional[str] = None  # YYYY-MM-DD format
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_channel: Channel = Channel.SMS
    preferred_language: str = "en"
    created_at: Optional[str] = None

    @field_validator('dob')
    @classmethod
    def validate_dob(cls, v):
        if not v:
            return None
        try:
            datetime.strptime(v, '%Y-%m-%d')
            return v
        except ValueError:
            raise ValueError('DOB must be in YYYY-MM-DD format')

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def address_for(self, channel: Channel) -> Optional[str]:
        """Recipient address for a channel: email for email, phone for SMS/WhatsApp"""
        if Channel(channel) == Channel.EMAIL:
            return self.email or None
        return self.phone or None

    def to_dict(self):
        return {
            "patient_id": self.patient_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "dob": self.dob or "",
            "phone": self.phone or "",
            "email": self.email or "",
            "preferred_channel": self.preferred_channel.value,
            "preferred_language": self.preferred_language,
            "created_at": self.created_at or ""
        }
