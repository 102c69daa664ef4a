"""
Engine error taxonomy.

Validation and conflict errors carry a reason code the clients map to UI
messages. Dependency and invariant failures only ever expose a generic
message; the detail goes to the log.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for every error the engine reports to callers"""

    status_code = 400
    public = True
    default_code = "ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_response(self) -> dict:
        if self.public:
            return {"detail": self.message, "code": self.code}
        return {"detail": "The operation could not be completed", "code": self.code}


class ValidationFailed(EngineError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class NotFound(EngineError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDenied(EngineError):
    status_code = 403
    default_code = "FORBIDDEN"


class ConflictError(EngineError):
    """Illegal transition, lost race, or state that no longer allows the operation"""

    status_code = 409
    default_code = "CONFLICT"


class DependencyFailure(EngineError):
    """An external collaborator (payment, storage) failed; nothing was applied"""

    status_code = 502
    public = False
    default_code = "DEPENDENCY_FAILED"


class InvariantViolation(EngineError):
    """Indicates a bug: double posting, negative balances and the like"""

    status_code = 500
    public = False
    default_code = "INTERNAL_ERROR"
