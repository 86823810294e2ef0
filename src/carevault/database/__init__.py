"""
CareVault Database Package
Security models, portable column types and session helpers.
"""

from .types import (
    ADMIN_ROLES,
    MFASecret,
    OTPChallenge,
    PendingOTP,
    Role,
    TOTPSecret,
    VerifiedDestination,
    utc_now,
)
from .models import (
    BACKUP_CODE_USED,
    Base,
    EncryptionKey,
    EventSeverity,
    ImmutableRecordError,
    KeyPurpose,
    KeyStatus,
    MFAConfiguration,
    MFAMethod,
    RotationSchedule,
    SecurityEvent,
    SecurityEventType,
    SecuritySetting,
    SessionStatus,
    User,
    UserSession,
    create_all_tables,
)

__all__ = [
    "ADMIN_ROLES",
    "BACKUP_CODE_USED",
    "Base",
    "EncryptionKey",
    "EventSeverity",
    "ImmutableRecordError",
    "KeyPurpose",
    "KeyStatus",
    "MFAConfiguration",
    "MFAMethod",
    "MFASecret",
    "OTPChallenge",
    "PendingOTP",
    "Role",
    "RotationSchedule",
    "SecurityEvent",
    "SecurityEventType",
    "SecuritySetting",
    "SessionStatus",
    "TOTPSecret",
    "User",
    "UserSession",
    "VerifiedDestination",
    "create_all_tables",
    "utc_now",
]
