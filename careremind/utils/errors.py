from typing import Dict, Optional


class CareRemindError(Exception):
    """Base class for every error the reminder core surfaces to callers"""

    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class ValidationError(CareRemindError):
    kind = "validation_error"

    def __init__(self, errors: Dict[str, str], message: str = "Invalid appointment data"):
        super().__init__(message)
        self.errors = dict(errors)

    def to_dict(self):
        return {"kind": self.kind, "message": self.message, "errors": self.errors}


class InvalidTransition(CareRemindError):
    kind = "invalid_transition"

    def __init__(self, current: Optional[str], requested: str):
        super().__init__(f"Cannot move appointment from {current!r} to {requested!r}")
        self.current = current
        self.requested = requested


class StoreUnavailable(CareRemindError):
    kind = "store_unavailable"


class NotFound(CareRemindError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InactiveTemplate(CareRemindError):
    kind = "inactive_template"


class InvalidRecipient(CareRemindError):
    kind = "invalid_recipient"


class ProviderUnavailable(CareRemindError):
    kind = "provider_unavailable"


class AppointmentBusy(CareRemindError):
    kind = "appointment_busy"
