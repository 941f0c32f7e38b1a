"""
Error taxonomy for entitlement operations.

Components raise these; the HTTP layer renders them with ``status_code``.
Each concrete error carries a stable ``code`` so clients can tell an expired
token from an unbound device and pick the right remediation.
"""

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base for every typed failure raised by the core."""

    status_code = 500
    code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


# ---- Conflict ----
class ConflictError(EntitlementError):
    status_code = 409
    code = "Conflict"

class DuplicateKey(ConflictError):
    code = "DuplicateKey"

class DuplicateCode(ConflictError):
    code = "DuplicateCode"

class AlreadyBound(ConflictError):
    code = "AlreadyBound"

class DuplicateTokenValue(ConflictError):
    code = "DuplicateTokenValue"


# ---- NotFound ----
class NotFoundError(EntitlementError):
    status_code = 404
    code = "NotFound"

class CustomerNotFound(NotFoundError):
    code = "CustomerNotFound"

class DeviceNotFound(NotFoundError):
    code = "DeviceNotFound"

class TokenNotFound(NotFoundError):
    code = "TokenNotFound"

class NotBound(NotFoundError):
    code = "NotBound"

class UnknownDevice(NotFoundError):
    code = "UnknownDevice"

class UnknownToken(NotFoundError):
    code = "UnknownToken"


# ---- Unauthorized ----
class UnauthorizedError(EntitlementError):
    status_code = 401
    code = "Unauthorized"

class TokenExpired(UnauthorizedError):
    code = "TokenExpired"

class DeviceNotEntitled(UnauthorizedError):
    status_code = 403
    code = "DeviceNotEntitled"


# ---- Validation ----
class ValidationFailed(EntitlementError):
    status_code = 422
    code = "ValidationFailed"


# ---- Transient ----
class TransientError(EntitlementError):
    """Storage timeout or contention; safe to retry with backoff."""

    status_code = 503
    code = "Transient"

class TokenGenerationExhausted(TransientError):
    code = "TokenGenerationExhausted"


# ---- Invariant violation ----
class InvariantViolation(EntitlementError):
    """Structurally impossible state; signals a cascade bug. Never repaired."""

    status_code = 500
    code = "InvariantViolation"

class OrphanToken(InvariantViolation):
    code = "OrphanToken"
