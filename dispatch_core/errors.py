"""
Typed dispatch errors.

Each error carries the HTTP status and machine-readable code the gateway
returns. Services raise these; route handlers never build error payloads.
"""

from typing import Optional


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)

    def to_payload(self) -> dict:
        return {"code": self.code, "detail": self.detail}


class ValidationError(DispatchError):
    """Malformed input (400). Carries every violated field, not just the first."""

    status_code = 400
    code = "validation_error"

    def __init__(self, detail: str = "Invalid request", errors: Optional[list[dict]] = None):
        super().__init__(detail)
        self.errors = errors or []

    @classmethod
    def from_fields(cls, violations: dict[str, str]) -> "ValidationError":
        errors = [{"field": f, "message": m} for f, m in violations.items()]
        return cls(f"Invalid fields: {', '.join(violations)}", errors)

    def to_payload(self) -> dict:
        return {"code": self.code, "detail": self.detail, "errors": self.errors}


class NotFoundError(DispatchError):
    """Unknown order, agent or assignment (404)."""

    status_code = 404
    code = "not_found"


class ConflictError(DispatchError):
    """Order already assigned, duplicate resource, or agent still loaded (409)."""

    status_code = 409
    code = "conflict"


class PreconditionFailedError(DispatchError):
    """Agent is not Active (409)."""

    status_code = 409
    code = "precondition_failed"


class CapacityExceededError(DispatchError):
    """Agent is at capacity (409)."""

    status_code = 409
    code = "capacity_exceeded"


class InvalidTransitionError(DispatchError):
    """Illegal assignment status edge (409)."""

    status_code = 409
    code = "invalid_transition"


class InvariantViolation(DispatchError):
    """Internal consistency failure. Always a defect; surfaced as 500 with a generic message."""

    status_code = 500
    code = "internal_error"

    def to_payload(self) -> dict:
        return {"code": self.code, "detail": "Internal consistency error"}
