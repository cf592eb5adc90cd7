import re
from enum import Enum
from pydantic import BaseModel, field_validator, model_validator
from typing import List, Optional
from datetime import timedelta

from ..utils.date_utils import parse_duration


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class ReminderStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class TemplateCategory(str, Enum):
    APPOINTMENT_REMINDER = "appointment-reminder"
    FOLLOW_UP = "follow-up"
    CUSTOM = "custom"


class ReminderTemplate(BaseModel):
    template_id: str
    name: str
    category: TemplateCategory = TemplateCategory.APPOINTMENT_REMINDER
    channel: Optional[Channel] = None  # hint only
    subject: Optional[str] = None
    body: str
    active: bool = True
    created_at: Optional[str] = None

    def to_dict(self):
        return {
            "template_id": self.template_id,
            "name": self.name,
            "category": self.category.value,
            "channel": self.channel.value if self.channel else "",
            "subject": self.subject or "",
            "body": self.body,
            "active": int(self.active),
            "created_at": self.created_at or ""
        }


class OffsetRule(BaseModel):
    """Signed delta from appointment start, e.g. -24h fires a day before"""
    delta: timedelta
    label: str = ""
    rule_id: Optional[str] = None
    enabled: bool = True
    template_id: Optional[str] = None

    @field_validator('delta', mode='before')
    @classmethod
    def parse_delta(cls, v):
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @model_validator(mode='after')
    def default_rule_id(self):
        if not self.rule_id:
            slug = re.sub(r'[^a-z0-9]+', '-', self.label.lower()).strip('-')
            self.rule_id = slug or f"offset{int(self.delta.total_seconds())}s"
        return self


class ReminderPolicy(BaseModel):
    offsets: List[OffsetRule] = []
    enabled: bool = True
    reschedule_anchor: str = "new"  # new, original

    @field_validator('reschedule_anchor')
    @classmethod
    def validate_anchor(cls, v):
        if v not in ("new", "original"):
            raise ValueError("reschedule_anchor must be 'new' or 'original'")
        return v

    @model_validator(mode='after')
    def unique_rule_ids(self):
        seen = set()
        for rule in self.offsets:
            if rule.rule_id in seen:
                raise ValueError(f"Duplicate offset rule id: {rule.rule_id}")
            seen.add(rule.rule_id)
        return self

    @classmethod
    def default(cls, reschedule_anchor: str = "new") -> "ReminderPolicy":
        return cls(
            offsets=[
                OffsetRule(delta="-7d", label="1 Week Before"),
                OffsetRule(delta="-24h", label="1 Day Before"),
                OffsetRule(delta="-1h", label="1 Hour Before"),
            ],
            reschedule_anchor=reschedule_anchor,
        )

    @property
    def active_rules(self) -> List[OffsetRule]:
        return [rule for rule in self.offsets if rule.enabled]


class ScheduledReminder(BaseModel):
    reminder_id: str
    appointment_id: str
    rule_id: str
    template_id: str
    channel: Channel
    recipient: str
    scheduled_for: str  # UTC ISO format
    status: ReminderStatus = ReminderStatus.SCHEDULED
    created_at: str
    updated_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self):
        return {
            "reminder_id": self.reminder_id,
            "appointment_id": self.appointment_id,
            "rule_id": self.rule_id,
            "template_id": self.template_id,
            "channel": self.channel.value,
            "recipient": self.recipient,
            "scheduled_for": self.scheduled_for,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at or "",
            "last_error": self.last_error or ""
        }


class SentReminder(BaseModel):
    sent_id: str
    appointment_id: str
    scheduled_reminder_id: Optional[str] = None
    template_id: Optional[str] = None
    channel: Channel
    recipient: str
    subject: Optional[str] = None
    content: str
    sent_at: str
    delivered_ok: bool = False
    external_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    resend_of: Optional[str] = None
    cancelled_during_dispatch: bool = False

    def to_dict(self):
        return {
            "sent_id": self.sent_id,
            "appointment_id": self.appointment_id,
            "scheduled_reminder_id": self.scheduled_reminder_id or "",
            "template_id": self.template_id or "",
            "channel": self.channel.value,
            "recipient": self.recipient,
            "subject": self.subject or "",
            "content": self.content,
            "sent_at": self.sent_at,
            "delivered_ok": int(self.delivered_ok),
            "external_id": self.external_id or "",
            "error_kind": self.error_kind or "",
            "error_message": self.error_message or "",
            "resend_of": self.resend_of or "",
            "cancelled_during_dispatch": int(self.cancelled_during_dispatch)
        }


class DispatchResult(BaseModel):
    external_id: Optional[str] = None
    delivered_ok: bool = True
