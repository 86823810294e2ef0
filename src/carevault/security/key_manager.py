"""
CareVault Encryption Key Manager
Envelope encryption: per-purpose data encryption keys (DEKs) wrapped by a
master key, with rotation, retirement and role-gated field encryption.
"""

import calendar
import re
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carevault.core.config import settings
from carevault.core.crypto import (
    ALGORITHM,
    CryptoError,
    decode_key,
    decrypt,
    encrypt,
    extract_key_id,
    generate_encryption_key,
    generate_key_identifier,
    key_fingerprint,
    unwrap_key,
    wrap_key,
)
from carevault.core.logging import LoggerMixin
from carevault.database.models import (
    EncryptionKey,
    EventSeverity,
    KeyPurpose,
    KeyStatus,
    RotationSchedule,
    SecurityEvent,
    SecurityEventType,
)
from carevault.database.types import ADMIN_ROLES, to_role_set, utc_now

from .audit import SecurityEventLog
from .context import SecurityContext
from .exceptions import (
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from .policy import PolicyManager

SSN_PATTERN = re.compile(r"^\d{3}-?\d{2}-?\d{4}$")
SSN_KEY_PURPOSES = (KeyPurpose.SSN_ENCRYPTION, KeyPurpose.PHI_ENCRYPTION)
MAX_AUDIT_LOG_LIMIT = 100


def load_master_key() -> bytes:
    """Master key from secure configuration; there is no generated fallback"""
    encoded = settings.ENCRYPTION_MASTER_KEY
    if not encoded:
        raise ConfigurationError("Encryption master key not configured")
    try:
        return decode_key(encoded.strip())
    except CryptoError as e:
        raise ConfigurationError(f"Encryption master key is malformed: {e}") from e


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of shorter months"""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class EncryptionKeyManager(LoggerMixin):
    """Key lifecycle and field-level encryption for one organization's caller"""

    def __init__(
        self,
        db: Session,
        policy: Optional[PolicyManager] = None,
        event_log: Optional[SecurityEventLog] = None,
        master_key_source: Callable[[], bytes] = load_master_key,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.master_key_source = master_key_source
        self.event_log = event_log or SecurityEventLog(db, clock=clock)
        self.policy = policy or PolicyManager(db, event_log=self.event_log, clock=clock)

    # ============================================
    # Lifecycle
    # ============================================

    def create_key(
        self,
        ctx: SecurityContext,
        purpose: KeyPurpose,
        rotation_schedule: Optional[RotationSchedule] = None,
        allowed_roles: Optional[Iterable[Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create the first ACTIVE key for a purpose.

        Returns the key identifier and a fingerprint of the new DEK; the key
        itself never leaves this method unwrapped.
        """
        self.policy.require_admin(ctx, "create_encryption_key")
        purpose = self._parse_enum(KeyPurpose, purpose, "key purpose")
        schedule = self._parse_enum(RotationSchedule, rotation_schedule, "rotation schedule") \
            if rotation_schedule else None
        try:
            roles = to_role_set(allowed_roles) if allowed_roles else self._default_roles()
        except ValueError as e:
            raise ValidationError(f"Unknown role: {e}") from e

        if self._active_key(ctx.organization_id, purpose) is not None:
            raise ConflictError(
                f"An active {purpose.value} key already exists; rotate it instead",
                purpose=purpose.value,
            )

        master_key = self._master_key()
        now = self.clock()
        raw_key = generate_encryption_key()

        key = EncryptionKey(
            key_identifier=generate_key_identifier(purpose.value),
            organization_id=ctx.organization_id,
            purpose=purpose,
            status=KeyStatus.ACTIVE,
            algorithm=ALGORITHM,
            key_version=1,
            encrypted_dek=wrap_key(raw_key, master_key),
            activated_at=now,
            rotation_schedule=schedule,
            next_rotation_at=add_months(now, schedule.months) if schedule else None,
            allowed_roles=roles,
        )
        self.db.add(key)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"An active {purpose.value} key already exists") from e

        self.event_log.record_for(
            ctx,
            SecurityEventType.ENCRYPTION_KEY_CREATED,
            metadata={"keyId": key.key_identifier, "purpose": purpose.value, "version": 1},
        )
        self.logger.info(f"Encryption key created: {key.key_identifier}")

        return {
            "id": key.id,
            "key_identifier": key.key_identifier,
            "purpose": purpose,
            "fingerprint": key_fingerprint(raw_key),
        }

    def list_keys(
        self,
        ctx: SecurityContext,
        purpose: Optional[KeyPurpose] = None,
        status: Optional[KeyStatus] = None,
    ) -> List[Dict[str, Any]]:
        self.policy.require_admin(ctx, "list_encryption_keys")
        query = self.db.query(EncryptionKey).filter(EncryptionKey.organization_id == ctx.organization_id)

        if purpose:
            query = query.filter(EncryptionKey.purpose == self._parse_enum(KeyPurpose, purpose, "key purpose"))

        if status:
            query = query.filter(EncryptionKey.status == self._parse_enum(KeyStatus, status, "key status"))

        return [key.to_metadata() for key in query.order_by(EncryptionKey.created_at.desc()).all()]

    def get_key(self, ctx: SecurityContext, key_identifier: str) -> Dict[str, Any]:
        self.policy.require_admin(ctx, "get_encryption_key")
        return self._get_org_key(ctx, key_identifier).to_metadata()

    def rotate_key(self, ctx: SecurityContext, key_identifier: str) -> Dict[str, Any]:
        """
        Replace an ACTIVE key with a new version in one transaction.

        The old key moves to ROTATING so existing ciphertext keeps decrypting
        while it is migrated; any older ROTATING key of the same purpose is
        retired.
        """
        self.policy.require_admin(ctx, "rotate_encryption_key")
        key = self._get_org_key(ctx, key_identifier)
        if key.status != KeyStatus.ACTIVE:
            raise ConflictError(f"Only an active key can be rotated (status: {key.status.value})")

        master_key = self._master_key()
        now = self.clock()

        superseded = (
            self.db.query(EncryptionKey)
            .filter(
                EncryptionKey.organization_id == ctx.organization_id,
                EncryptionKey.purpose == key.purpose,
                EncryptionKey.status == KeyStatus.ROTATING,
            )
            .all()
        )
        for old_key in superseded:
            old_key.status = KeyStatus.RETIRED
            old_key.retired_at = now

        # status compare-and-swap: a concurrent rotation sees rowcount 0
        result = self.db.execute(
            update(EncryptionKey)
            .where(EncryptionKey.id == key.id, EncryptionKey.status == KeyStatus.ACTIVE)
            .values(status=KeyStatus.ROTATING, rotated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError("Encryption key was rotated concurrently")
        self.db.expire(key)

        raw_key = generate_encryption_key()
        new_key = EncryptionKey(
            key_identifier=generate_key_identifier(key.purpose.value),
            organization_id=ctx.organization_id,
            purpose=key.purpose,
            status=KeyStatus.ACTIVE,
            algorithm=key.algorithm,
            key_version=key.key_version + 1,
            encrypted_dek=wrap_key(raw_key, master_key),
            activated_at=now,
            rotation_schedule=key.rotation_schedule,
            next_rotation_at=add_months(now, key.rotation_schedule.months) if key.rotation_schedule else None,
            previous_key_id=key.id,
            allowed_roles=key.allowed_roles,
        )
        self.db.add(new_key)
        try:
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Encryption key was rotated concurrently") from e

        for old_key in superseded:
            self.event_log.record_for(
                ctx,
                SecurityEventType.ENCRYPTION_KEY_RETIRED,
                metadata={"keyId": old_key.key_identifier, "reason": "superseded_by_rotation"},
                commit=False,
            )
        self.event_log.record_for(
            ctx,
            SecurityEventType.ENCRYPTION_KEY_ROTATED,
            metadata={
                "keyId": key_identifier,
                "newKeyId": new_key.key_identifier,
                "purpose": new_key.purpose.value,
                "version": new_key.key_version,
            },
            severity=EventSeverity.WARNING,
        )
        self.logger.info(f"Encryption key rotated: {key_identifier} -> {new_key.key_identifier}")

        return {
            "old_key_identifier": key_identifier,
            "new_key_identifier": new_key.key_identifier,
            "new_key_id": new_key.id,
            "fingerprint": key_fingerprint(raw_key),
        }

    def retire_key(self, ctx: SecurityContext, key_identifier: str) -> Dict[str, Any]:
        self.policy.require_admin(ctx, "retire_encryption_key")
        key = self._get_org_key(ctx, key_identifier)
        now = self.clock()

        self._transition(key, KeyStatus.RETIRED, retired_at=now)
        self.event_log.record_for(
            ctx,
            SecurityEventType.ENCRYPTION_KEY_RETIRED,
            metadata={"keyId": key_identifier},
        )
        self.logger.info(f"Encryption key retired: {key_identifier}")
        return {"success": True, "key_identifier": key_identifier, "status": KeyStatus.RETIRED}

    def mark_compromised(self, ctx: SecurityContext, key_identifier: str, reason: str) -> Dict[str, Any]:
        """Take a key out of service; its ciphertext only opens for forensic decrypt"""
        self.policy.require_admin(ctx, "mark_key_compromised")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to mark a key compromised")

        key = self._get_org_key(ctx, key_identifier)
        now = self.clock()

        self._transition(key, KeyStatus.COMPROMISED, retired_at=now, compromised_reason=reason.strip())
        self.event_log.record_for(
            ctx,
            SecurityEventType.ENCRYPTION_KEY_COMPROMISED,
            metadata={"keyId": key_identifier, "reason": reason.strip()},
            severity=EventSeverity.CRITICAL,
        )
        self.logger.critical(f"Encryption key marked compromised: {key_identifier}")
        return {"success": True, "key_identifier": key_identifier, "status": KeyStatus.COMPROMISED}

    def keys_due_for_rotation(self, ctx: SecurityContext) -> List[Dict[str, Any]]:
        self.policy.require_admin(ctx, "keys_due_for_rotation")
        keys = (
            self.db.query(EncryptionKey)
            .filter(
                EncryptionKey.organization_id == ctx.organization_id,
                EncryptionKey.status == KeyStatus.ACTIVE,
                EncryptionKey.next_rotation_at.is_not(None),
                EncryptionKey.next_rotation_at <= self.clock(),
            )
            .order_by(EncryptionKey.next_rotation_at)
            .all()
        )
        return [key.to_metadata() for key in keys]

    def get_audit_log(self, ctx: SecurityContext, key_identifier: str, limit: int = 50) -> List[SecurityEvent]:
        self.policy.require_admin(ctx, "get_key_audit_log")
        if not 1 <= limit <= MAX_AUDIT_LOG_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_AUDIT_LOG_LIMIT}")

        self._get_org_key(ctx, key_identifier)
        return self.event_log.get_key_events(ctx.organization_id, key_identifier, limit)

    # ============================================
    # Field encryption
    # ============================================

    def encrypt_value(self, ctx: SecurityContext, key_identifier: str, value: str) -> str:
        """Encrypt a value under an ACTIVE key the caller's role may use"""
        key = self._get_org_key(ctx, key_identifier)
        return self._encrypt_with(ctx, key, value, "encrypt")

    def decrypt_value(self, ctx: SecurityContext, encrypted_value: str, forensic: bool = False) -> str:
        """
        Decrypt a value with the key recorded in its envelope.

        ACTIVE, ROTATING and RETIRED keys decrypt. COMPROMISED keys only
        decrypt for an administrator asking for a forensic decrypt.
        """
        key_identifier = extract_key_id(encrypted_value)
        if key_identifier is None:
            raise ValidationError("Value is not encrypted or has invalid format")

        key = self._get_org_key(ctx, key_identifier)
        self._check_role(ctx, key, "decrypt")

        severity = EventSeverity.INFO
        if key.status == KeyStatus.COMPROMISED:
            if not (forensic and ctx.is_admin):
                self.event_log.record_for(
                    ctx,
                    SecurityEventType.PHI_ACCESS_DENIED,
                    success=False,
                    metadata={"keyId": key_identifier, "operation": "decrypt", "reason": "key_compromised"},
                )
                raise ForbiddenError("Encryption key is compromised; data is unavailable")
            severity = EventSeverity.CRITICAL

        dek = self._unwrap(key)
        try:
            plaintext = decrypt(encrypted_value, dek)
        except CryptoError as e:
            self.event_log.record_for(
                ctx,
                SecurityEventType.PHI_ACCESSED,
                success=False,
                metadata={"keyId": key_identifier, "operation": "decrypt", "reason": "integrity_check_failed"},
            )
            raise ValidationError("Decryption failed: data is corrupted or was tampered with") from e

        self._touch(key)
        self.event_log.record_for(
            ctx,
            SecurityEventType.PHI_ACCESSED,
            metadata={
                "keyId": key_identifier,
                "operation": "forensic_decrypt" if severity == EventSeverity.CRITICAL else "decrypt",
                "keyStatus": key.status.value,
            },
            severity=severity,
        )
        return plaintext

    def reencrypt_value(self, ctx: SecurityContext, encrypted_value: str) -> str:
        """Move a ciphertext onto the current ACTIVE key of its purpose"""
        plaintext = self.decrypt_value(ctx, encrypted_value)
        old_key = self._get_org_key(ctx, extract_key_id(encrypted_value))

        active = self._active_key(ctx.organization_id, old_key.purpose)
        if active is None:
            raise NotFoundError(f"No active {old_key.purpose.value} key")
        if active.id == old_key.id:
            return encrypted_value

        return self._encrypt_with(ctx, active, plaintext, "reencrypt")

    def encrypt_ssn(self, ctx: SecurityContext, key_identifier: str, ssn: str) -> Dict[str, str]:
        """Encrypt an SSN exactly as supplied and return its last four digits"""
        ssn = (ssn or "").strip()
        if not SSN_PATTERN.match(ssn):
            raise ValidationError("Invalid SSN format")

        key = self._get_org_key(ctx, key_identifier)
        if key.purpose not in SSN_KEY_PURPOSES:
            raise NotFoundError("Encryption key not found or not suitable for SSN encryption")

        encrypted = self._encrypt_with(ctx, key, ssn, "encrypt_ssn")
        digits = ssn.replace("-", "")
        return {"encrypted": encrypted, "last4": digits[-4:]}

    # ============================================
    # Helpers
    # ============================================

    def _encrypt_with(self, ctx: SecurityContext, key: EncryptionKey, value: str, operation: str) -> str:
        self._check_role(ctx, key, operation)
        if key.status != KeyStatus.ACTIVE:
            raise NotFoundError("Encryption key not found or not active")

        encrypted = encrypt(value, self._unwrap(key), key.key_identifier)

        self._touch(key)
        self.event_log.record_for(
            ctx,
            SecurityEventType.PHI_ACCESSED,
            metadata={"keyId": key.key_identifier, "operation": operation, "purpose": key.purpose.value},
        )
        return encrypted

    def _check_role(self, ctx: SecurityContext, key: EncryptionKey, operation: str) -> None:
        """Role gate, applied before the key status is considered"""
        if ctx.role in (key.allowed_roles or frozenset()):
            return

        self.event_log.record_for(
            ctx,
            SecurityEventType.PHI_ACCESS_DENIED,
            success=False,
            metadata={"keyId": key.key_identifier, "operation": operation, "role": ctx.role.value},
        )
        self.logger.warning(f"Role {ctx.role.value} denied {operation} with key {key.key_identifier}")
        raise ForbiddenError("You do not have permission to use this encryption key")

    def _master_key(self) -> bytes:
        return self.master_key_source()

    def _unwrap(self, key: EncryptionKey) -> bytes:
        try:
            return unwrap_key(key.encrypted_dek, self._master_key())
        except CryptoError as e:
            self.logger.error(f"Unable to unwrap DEK for key {key.key_identifier}: {e}")
            raise ConfigurationError("Unable to unwrap data encryption key; check the master key") from e

    def _touch(self, key: EncryptionKey) -> None:
        """Access telemetry as an atomic increment"""
        self.db.execute(
            update(EncryptionKey)
            .where(EncryptionKey.id == key.id)
            .values(access_count=EncryptionKey.access_count + 1, last_accessed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.expire(key, ["access_count", "last_accessed_at"])

    def _transition(self, key: EncryptionKey, target: KeyStatus, **values: Any) -> None:
        """Move ACTIVE/ROTATING keys into a terminal state"""
        if key.status.is_terminal:
            raise ConflictError(
                f"Key is already {key.status.value} and cannot become {target.value}",
                status=key.status.value,
            )

        result = self.db.execute(
            update(EncryptionKey)
            .where(
                EncryptionKey.id == key.id,
                EncryptionKey.status.in_([KeyStatus.ACTIVE, KeyStatus.ROTATING]),
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(key)
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError("Encryption key changed concurrently")

    def _get_org_key(self, ctx: SecurityContext, key_identifier: Optional[str]) -> EncryptionKey:
        key = (
            self.db.query(EncryptionKey)
            .filter(
                EncryptionKey.key_identifier == key_identifier,
                EncryptionKey.organization_id == ctx.organization_id,
            )
            .first()
        )
        if key is None:
            raise NotFoundError("Encryption key not found")
        return key

    def _active_key(self, organization_id: uuid.UUID, purpose: KeyPurpose) -> Optional[EncryptionKey]:
        return (
            self.db.query(EncryptionKey)
            .filter(
                EncryptionKey.organization_id == organization_id,
                EncryptionKey.purpose == purpose,
                EncryptionKey.status == KeyStatus.ACTIVE,
            )
            .first()
        )

    def _default_roles(self):
        roles = to_role_set(settings.DEFAULT_KEY_ALLOWED_ROLES)
        return roles or ADMIN_ROLES

    def _parse_enum(self, enum_cls, value: Any, label: str):
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(str(value).upper())
        except ValueError as e:
            raise ValidationError(f"Unknown {label}: {value}") from e
