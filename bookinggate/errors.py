from __future__ import annotations

from typing import Any, Dict, Optional

from bookinggate.utils.canonical import canonical_json


class BookingGateError(Exception):
    """Base class for errors surfaced to API and CLI callers."""

    error_code = "BOOKINGGATE_ERROR"

    def __init__(self, message: str, *, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = str(message)
        if error_code:
            self.error_code = str(error_code)
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error_code": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ConditionError(BookingGateError, ValueError):
    """A condition tree does not fit the supported expression grammar."""

    error_code = "CONDITION_MALFORMED"

    def __init__(self, message: str, *, path: str = "$"):
        self.path = path
        super().__init__(f"{message} (at {path})", details={"path": path})


class RuleValidationError(BookingGateError, ValueError):
    error_code = "RULE_INVALID"


class NotFoundError(BookingGateError, LookupError):
    error_code = "NOT_FOUND"


class ConflictError(BookingGateError):
    """
    A concurrent or duplicate write lost. Callers may retry against the
    current state.
    """

    error_code = "CONFLICT"
    retryable = True


class RuleConflictError(ConflictError):
    error_code = "RULE_KEY_CONFLICT"


class PolicyVersionConflictError(ConflictError):
    error_code = "POLICY_VERSION_CONFLICT"


class PolicyIntegrityError(BookingGateError):
    """
    Stored policy data violates an invariant. Never auto-corrected.
    """

    error_code = "POLICY_INTEGRITY_VIOLATION"

    def __str__(self) -> str:
        return f"{self.error_code}: {canonical_json(self.to_dict())}"
