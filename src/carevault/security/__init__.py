"""
CareVault Security Module
MFA engine, envelope-encryption key manager, policy layer and security event log
"""

from .exceptions import (
    ConfigurationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    SecurityCoreError,
    UnauthorizedError,
    ValidationError,
)
from .context import SecurityContext
from .collaborators import (
    BcryptPasswordHasher,
    LoggingNotificationChannel,
    NotificationChannel,
    NotificationDispatcher,
    PasswordHasher,
    get_notification_dispatcher,
)
from .audit import SecurityEventLog
from .policy import MFAPolicy, PolicyManager
from .mfa_system import LoginVerificationResult, MFASetupResult, MFASystemManager
from .key_manager import EncryptionKeyManager, load_master_key

__all__ = [
    # Errors
    "SecurityCoreError",
    "NotFoundError",
    "ConflictError",
    "UnauthorizedError",
    "ForbiddenError",
    "RateLimitedError",
    "ExpiredError",
    "ValidationError",
    "ConfigurationError",

    # Identity & collaborators
    "SecurityContext",
    "PasswordHasher",
    "BcryptPasswordHasher",
    "NotificationChannel",
    "LoggingNotificationChannel",
    "NotificationDispatcher",
    "get_notification_dispatcher",

    # Components
    "SecurityEventLog",
    "MFAPolicy",
    "PolicyManager",
    "MFASystemManager",
    "MFASetupResult",
    "LoginVerificationResult",
    "EncryptionKeyManager",
    "load_master_key",
]
