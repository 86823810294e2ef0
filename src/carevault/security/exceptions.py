"""
CareVault Security Errors
Transport-neutral error kinds raised by the security core.
"""

from datetime import datetime
from typing import Any, Dict


class SecurityCoreError(Exception):
    """Base error; `code` is mapped to a status by the transport layer"""
    code = "INTERNAL"
    retryable = True

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class NotFoundError(SecurityCoreError):
    code = "NOT_FOUND"


class ConflictError(SecurityCoreError):
    code = "CONFLICT"


class UnauthorizedError(SecurityCoreError):
    code = "UNAUTHORIZED"


class ForbiddenError(SecurityCoreError):
    code = "FORBIDDEN"


class RateLimitedError(SecurityCoreError):
    """Attempts are locked out until unlock_at"""
    code = "TOO_MANY_REQUESTS"

    def __init__(self, message: str, unlock_at: datetime, **details: Any):
        super().__init__(message, unlock_at=unlock_at.isoformat(), **details)
        self.unlock_at = unlock_at


class ExpiredError(SecurityCoreError):
    code = "EXPIRED"


class ValidationError(SecurityCoreError):
    code = "BAD_REQUEST"


class ConfigurationError(SecurityCoreError):
    """Deployment is misconfigured; the operation cannot succeed until fixed"""
    code = "CONFIGURATION_ERROR"
    retryable = False
