"""
CareVault Database Models
SQLAlchemy 2.0 models for MFA, trusted devices, encryption keys and the
security event trail.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import (
    JSON, Boolean, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Uuid, event, inspect, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from carevault.database.types import (
    ADMIN_ROLES, MFASecret, MFASecretType, Role, RoleSet, UTCDateTime, utc_now
)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )


class ImmutableRecordError(Exception):
    """Raised when an append-only record is modified or deleted"""
    pass


# ============================================
# Enums
# ============================================

class MFAMethod(str, Enum):
    TOTP = "TOTP"
    SMS = "SMS"
    EMAIL = "EMAIL"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"


class KeyStatus(str, Enum):
    """Encryption key lifecycle states"""
    ACTIVE = "ACTIVE"
    ROTATING = "ROTATING"
    RETIRED = "RETIRED"
    COMPROMISED = "COMPROMISED"

    @property
    def is_terminal(self) -> bool:
        return self in (KeyStatus.RETIRED, KeyStatus.COMPROMISED)


class KeyPurpose(str, Enum):
    PHI_ENCRYPTION = "PHI_ENCRYPTION"
    SSN_ENCRYPTION = "SSN_ENCRYPTION"
    PAYMENT_CREDENTIAL_ENCRYPTION = "PAYMENT_CREDENTIAL_ENCRYPTION"
    API_KEY_ENCRYPTION = "API_KEY_ENCRYPTION"
    SECRET_ENCRYPTION = "SECRET_ENCRYPTION"


class RotationSchedule(str, Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"

    @property
    def months(self) -> int:
        return {"MONTHLY": 1, "QUARTERLY": 3, "YEARLY": 12}[self.value]


class EventSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class SecurityEventType(str, Enum):
    """Security-relevant actions recorded in the event trail"""
    # MFA
    LOGIN_MFA_SUCCESS = "LOGIN_MFA_SUCCESS"
    LOGIN_MFA_FAILURE = "LOGIN_MFA_FAILURE"
    MFA_SETUP_STARTED = "MFA_SETUP_STARTED"
    MFA_SETUP_FAILURE = "MFA_SETUP_FAILURE"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_LOCKED = "MFA_LOCKED"
    MFA_BACKUP_CODE_USED = "MFA_BACKUP_CODE_USED"
    MFA_BACKUP_CODES_REGENERATED = "MFA_BACKUP_CODES_REGENERATED"
    MFA_RECOVERY_USED = "MFA_RECOVERY_USED"
    MFA_OTP_SENT = "MFA_OTP_SENT"

    # Trusted devices & credentials
    TRUSTED_DEVICE_ADDED = "TRUSTED_DEVICE_ADDED"
    TRUSTED_DEVICE_REMOVED = "TRUSTED_DEVICE_REMOVED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"

    # Encryption keys
    ENCRYPTION_KEY_CREATED = "ENCRYPTION_KEY_CREATED"
    ENCRYPTION_KEY_ROTATED = "ENCRYPTION_KEY_ROTATED"
    ENCRYPTION_KEY_RETIRED = "ENCRYPTION_KEY_RETIRED"
    ENCRYPTION_KEY_COMPROMISED = "ENCRYPTION_KEY_COMPROMISED"
    PHI_ACCESSED = "PHI_ACCESSED"
    PHI_ACCESS_DENIED = "PHI_ACCESS_DENIED"

    # Administration
    CONFIG_CHANGED = "CONFIG_CHANGED"
    PERMISSION_DENIED = "PERMISSION_DENIED"


# ============================================
# Models
# ============================================

class User(Base, TimestampMixin):
    """Portal user, owned by the identity layer"""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[Role] = mapped_column(SQLEnum(Role), nullable=False, default=Role.STAFF)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)

    mfa_configurations: Mapped[List["MFAConfiguration"]] = relationship(
        "MFAConfiguration",
        back_populates="user",
        cascade="all, delete-orphan"
    )


BACKUP_CODE_USED = "USED"


class MFAConfiguration(Base, TimestampMixin):
    """One second factor of a user"""
    __tablename__ = "mfa_configurations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    method: Mapped[MFAMethod] = mapped_column(SQLEnum(MFAMethod), nullable=False)
    secret: Mapped[MFASecret] = mapped_column(MFASecretType, nullable=False)
    # bumped whenever secret changes so challenge consumption can compare-and-swap
    secret_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    # Backup codes (hashed, consumed slots hold BACKUP_CODE_USED)
    backup_codes: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    backup_codes_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Lockout
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    setup_failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    user: Mapped["User"] = relationship("User", back_populates="mfa_configurations")

    __table_args__ = (
        UniqueConstraint("user_id", "method", name="uq_mfa_configurations_user_method"),
        Index("ix_mfa_configurations_user_id", "user_id"),
    )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    @property
    def backup_codes_remaining(self) -> int:
        return sum(1 for code in self.backup_codes or [] if code != BACKUP_CODE_USED)


class UserSession(Base, TimestampMixin):
    """Trusted device created by "remember this device" after MFA"""
    __tablename__ = "user_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # SHA-256 of the token handed to the client
    session_token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    device_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    device_type: Mapped[Optional[str]] = mapped_column(String(20))
    browser: Mapped[Optional[str]] = mapped_column(String(50))
    os: Mapped[Optional[str]] = mapped_column(String(50))
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    remember_device: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mfa_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus),
        default=SessionStatus.ACTIVE,
        nullable=False
    )
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    terminated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    terminated_reason: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index("ix_user_sessions_user_status", "user_id", "status"),
    )


class EncryptionKey(Base, TimestampMixin):
    """One version of a per-purpose data encryption key"""
    __tablename__ = "encryption_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key_identifier: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    purpose: Mapped[KeyPurpose] = mapped_column(SQLEnum(KeyPurpose), nullable=False)
    status: Mapped[KeyStatus] = mapped_column(
        SQLEnum(KeyStatus),
        default=KeyStatus.ACTIVE,
        nullable=False
    )
    algorithm: Mapped[str] = mapped_column(String(20), default="AES-256-GCM", nullable=False)
    key_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # DEK wrapped by the master key, never stored in the clear
    encrypted_dek: Mapped[str] = mapped_column(Text, nullable=False)

    activated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    rotated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    retired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    rotation_schedule: Mapped[Optional[RotationSchedule]] = mapped_column(SQLEnum(RotationSchedule))
    next_rotation_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    previous_key_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("encryption_keys.id"))

    allowed_roles: Mapped[FrozenSet[Role]] = mapped_column(
        RoleSet,
        default=lambda: ADMIN_ROLES,
        nullable=False
    )
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    compromised_reason: Mapped[Optional[str]] = mapped_column(Text)

    previous_key: Mapped[Optional["EncryptionKey"]] = relationship(
        "EncryptionKey",
        remote_side=[id]
    )

    __table_args__ = (
        Index("ix_encryption_keys_org_purpose", "organization_id", "purpose"),
        Index("ix_encryption_keys_status_rotation", "status", "next_rotation_at"),
        # one ACTIVE key per (organization, purpose)
        Index(
            "uq_encryption_keys_active_purpose",
            "organization_id",
            "purpose",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def to_metadata(self) -> Dict[str, Any]:
        """Key description safe to hand to callers"""
        return {
            "id": str(self.id),
            "key_identifier": self.key_identifier,
            "purpose": self.purpose.value,
            "status": self.status.value,
            "algorithm": self.algorithm,
            "key_version": self.key_version,
            "rotation_schedule": self.rotation_schedule.value if self.rotation_schedule else None,
            "next_rotation_at": self.next_rotation_at,
            "activated_at": self.activated_at,
            "rotated_at": self.rotated_at,
            "retired_at": self.retired_at,
            "previous_key_id": str(self.previous_key_id) if self.previous_key_id else None,
            "allowed_roles": sorted(role.value for role in self.allowed_roles),
            "last_accessed_at": self.last_accessed_at,
            "access_count": self.access_count,
            "compromised_reason": self.compromised_reason,
            "created_at": self.created_at,
        }


class SecuritySetting(Base, TimestampMixin):
    """Organization-wide MFA policy"""
    __tablename__ = "security_settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    mfa_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mfa_required_for_roles: Mapped[FrozenSet[Role]] = mapped_column(
        RoleSet,
        default=frozenset,
        nullable=False
    )
    mfa_grace_period_days: Mapped[int] = mapped_column(Integer, default=7, nullable=False)


class SecurityEvent(Base):
    """Append-only security event trail"""
    __tablename__ = "security_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[SecurityEventType] = mapped_column(SQLEnum(SecurityEventType), nullable=False)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45))
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    severity: Mapped[EventSeverity] = mapped_column(
        SQLEnum(EventSeverity),
        default=EventSeverity.INFO,
        nullable=False
    )
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_security_events_org_type", "organization_id", "event_type"),
        Index("ix_security_events_user_id", "user_id"),
        Index("ix_security_events_created_at", "created_at"),
    )


@event.listens_for(SecurityEvent, "before_update")
def prevent_security_event_update(mapper, connection, target):
    """Only a pending recovery request may change, and only to success=True"""
    state = inspect(target)
    changed = {
        attr.key for attr in state.attrs
        if attr.history.has_changes()
    }
    if not changed:
        return

    success_history = state.attrs.success.history
    if (
        changed == {"success"}
        and target.event_type == SecurityEventType.MFA_RECOVERY_USED
        and True not in (success_history.deleted or ())
        and target.success is True
    ):
        return

    raise ImmutableRecordError(
        f"Security event {target.id} is append-only (attempted change: {sorted(changed)})"
    )


@event.listens_for(SecurityEvent, "before_delete")
def prevent_security_event_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Security event {target.id} cannot be deleted")


def create_all_tables(engine) -> None:
    """Create all tables in the database"""
    Base.metadata.create_all(engine)
