"""
Typed failures raised by the request lifecycle services.

Each error carries the HTTP status the API layer should answer with and a
short ``kind`` string clients can switch on.  None of them are retried by
the services themselves.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class BloodLinkError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.kind, "detail": self.message, **self.extra()}


class ValidationError(BloodLinkError):
    """Missing or malformed input; the caller can fix it."""

    status_code = 400
    kind = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def extra(self) -> dict[str, Any]:
        return {"field": self.field} if self.field else {}


class NotFoundError(BloodLinkError):
    status_code = 404
    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any = None):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id

    def extra(self) -> dict[str, Any]:
        return {"entity": self.entity}


class AuthorizationError(BloodLinkError):
    """Role or ownership mismatch."""

    status_code = 403
    kind = "forbidden"


class InvalidStateError(BloodLinkError):
    """The operation is not allowed in the request's current lifecycle state."""

    status_code = 409
    kind = "invalid_state"

    def __init__(self, message: str, current_status: Any):
        super().__init__(message)
        self.current_status = getattr(current_status, "value", current_status)

    def extra(self) -> dict[str, Any]:
        return {"current_status": self.current_status}


class IncompatibilityError(BloodLinkError):
    status_code = 400
    kind = "incompatible_blood_group"

    def __init__(self, donor_group: Any, recipient_group: Any):
        self.donor_group = getattr(donor_group, "value", donor_group)
        self.recipient_group = getattr(recipient_group, "value", recipient_group)
        super().__init__(f"Blood group {self.donor_group} cannot donate to {self.recipient_group}")

    def extra(self) -> dict[str, Any]:
        return {"donor_group": self.donor_group, "recipient_group": self.recipient_group}


class EligibilityError(BloodLinkError):
    """Donor is unavailable or still inside the donation cooldown."""

    status_code = 400
    kind = "not_eligible"

    def __init__(self, message: str, next_eligible_date: datetime | None = None):
        super().__init__(message)
        self.next_eligible_date = next_eligible_date

    def extra(self) -> dict[str, Any]:
        if self.next_eligible_date is None:
            return {}
        return {"next_eligible_date": self.next_eligible_date.isoformat()}
