"""
CareVault Multi-Factor Authentication (MFA) System
TOTP + SMS/email one-time codes + backup codes + recovery + trusted devices
"""

import base64
import io
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import qrcode
from sqlalchemy import update
from sqlalchemy.orm import Session

from carevault.core.config import Settings, settings as app_settings
from carevault.core.crypto import (
    generate_backup_codes,
    generate_device_fingerprint,
    generate_otp,
    generate_session_token,
    generate_totp_secret,
    generate_totp_uri,
    hash_code,
    hash_session_token,
    mask_for_display,
    secure_compare,
    sha256_hex,
    verify_totp,
)
from carevault.core.logging import LoggerMixin
from carevault.database.models import (
    BACKUP_CODE_USED,
    EventSeverity,
    MFAConfiguration,
    MFAMethod,
    SecurityEventType,
    SessionStatus,
    User,
    UserSession,
)
from carevault.database.types import (
    OTPChallenge,
    PendingOTP,
    TOTPSecret,
    VerifiedDestination,
    ensure_utc,
    utc_now,
)

from .audit import SecurityEventLog
from .collaborators import (
    BcryptPasswordHasher,
    NotificationDispatcher,
    PasswordHasher,
    get_notification_dispatcher,
)
from .context import SecurityContext
from .exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from .policy import PolicyManager

CAS_RETRIES = 3
TOTP_CODE_LENGTH = 6
BACKUP_CODE_LENGTH = 8
MIN_PASSWORD_LENGTH = 8

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{7,14}$")


@dataclass
class MFASetupResult:
    """MFA setup result; secrets here are shown to the user exactly once"""
    mfa_id: uuid.UUID
    method: MFAMethod
    secret: Optional[str] = None
    qr_code: Optional[str] = None
    provisioning_uri: Optional[str] = None
    backup_codes: Optional[List[str]] = None
    destination: Optional[str] = None
    dev_code: Optional[str] = None


@dataclass
class LoginVerificationResult:
    method: MFAMethod
    used_backup_code: bool = False
    backup_codes_remaining: Optional[int] = None
    device_token: Optional[str] = None


def normalize_phone_number(phone_number: str) -> str:
    """Strip formatting and check the result looks like an E.164 number"""
    cleaned = re.sub(r"[\s\-().]", "", phone_number or "")
    if not PHONE_PATTERN.match(cleaned):
        raise ValidationError("A valid phone number is required for SMS MFA")
    return cleaned


def describe_device(user_agent: Optional[str]) -> Dict[str, str]:
    """Coarse device metadata from a user-agent string"""
    ua = user_agent or ""

    if "Firefox" in ua:
        browser = "Firefox"
    elif "Edg" in ua:
        browser = "Edge"
    elif "OPR" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Chrome" in ua:
        browser = "Chrome"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    if "Windows" in ua:
        os_name = "Windows"
    elif "iPhone" in ua or "iPad" in ua:
        os_name = "iOS"
    elif "Mac OS" in ua:
        os_name = "macOS"
    elif "Android" in ua:
        os_name = "Android"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"

    return {
        "device_type": "mobile" if "Mobile" in ua else "desktop",
        "browser": browser,
        "os": os_name,
    }


class MFASystemManager(LoggerMixin):
    """MFA configuration lifecycle and trusted devices for one request"""

    def __init__(
        self,
        db: Session,
        password_hasher: Optional[PasswordHasher] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        policy: Optional[PolicyManager] = None,
        event_log: Optional[SecurityEventLog] = None,
        clock: Callable[[], datetime] = utc_now,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.clock = clock
        self.config = config or app_settings
        self.password_hasher = password_hasher or BcryptPasswordHasher()
        self.dispatcher = dispatcher or get_notification_dispatcher()
        self.event_log = event_log or SecurityEventLog(db, clock=clock)
        self.policy = policy or PolicyManager(db, event_log=self.event_log, clock=clock)

        self.issuer_name = self.config.MFA_ISSUER_NAME
        self.max_attempts = self.config.MFA_MAX_ATTEMPTS
        self.lockout_duration = timedelta(minutes=self.config.MFA_LOCKOUT_MINUTES)
        self.otp_lifetime = timedelta(minutes=self.config.MFA_OTP_EXPIRY_MINUTES)
        self.recovery_lifetime = timedelta(minutes=self.config.MFA_RECOVERY_TOKEN_MINUTES)
        self.trusted_device_lifetime = timedelta(days=self.config.TRUSTED_DEVICE_DAYS)
        self.backup_codes_count = self.config.MFA_BACKUP_CODES_COUNT
        self.totp_window = self.config.TOTP_VALID_WINDOW

        # QR code rendering
        self.qr_size = 10
        self.qr_border = 4

    # ============================================
    # Status & setup
    # ============================================

    def get_status(self, ctx: SecurityContext) -> Dict[str, Any]:
        """MFA status for the caller, without secrets"""
        configs = self._user_configs(ctx)
        totp_config = next((c for c in configs if c.method == MFAMethod.TOTP), None)

        return {
            "enabled": any(c.verified for c in configs),
            "methods": [
                {
                    "id": c.id,
                    "method": c.method,
                    "verified": c.verified,
                    "verified_at": c.verified_at,
                    "last_used_at": c.last_used_at,
                    "backup_codes_used": c.backup_codes_used,
                    "created_at": c.created_at,
                }
                for c in configs
            ],
            "backup_codes_remaining": totp_config.backup_codes_remaining if totp_config else None,
        }

    def setup(
        self,
        ctx: SecurityContext,
        method: MFAMethod,
        phone_number: Optional[str] = None
    ) -> MFASetupResult:
        """Create or replace the caller's unverified configuration for a method"""
        method = self._parse_method(method)
        now = self.clock()

        existing = self._find_config(ctx, method)
        if existing is not None and existing.verified:
            raise ConflictError(f"{method.value} MFA is already configured and verified")
        if existing is not None and existing.is_locked(now):
            raise RateLimitedError(
                self._locked_message(existing.locked_until),
                unlock_at=existing.locked_until,
            )

        result_kwargs: Dict[str, Any] = {}
        backup_hashes: List[str] = []
        otp: Optional[str] = None

        if method == MFAMethod.TOTP:
            secret = generate_totp_secret()
            provisioning_uri = generate_totp_uri(secret, ctx.email, self.issuer_name)
            backup_codes = generate_backup_codes(self.backup_codes_count)
            backup_hashes = [hash_code(code) for code in backup_codes]
            mfa_secret = TOTPSecret(secret=secret)
            result_kwargs.update(
                secret=secret,
                provisioning_uri=provisioning_uri,
                qr_code=self._generate_qr_code(provisioning_uri),
                backup_codes=backup_codes,
            )
        else:
            if method == MFAMethod.SMS:
                if not phone_number:
                    raise ValidationError("Phone number is required for SMS MFA")
                destination = normalize_phone_number(phone_number)
            else:
                destination = ctx.email
            otp = generate_otp()
            mfa_secret = PendingOTP(
                destination=destination,
                code_hash=hash_code(otp),
                expires_at=now + self.otp_lifetime,
            )
            result_kwargs["destination"] = mask_for_display(destination)

        if existing is None:
            existing = MFAConfiguration(
                user_id=ctx.user_id,
                method=method,
                secret=mfa_secret,
                backup_codes=backup_hashes,
            )
            self.db.add(existing)
        else:
            existing.secret = mfa_secret
            existing.secret_version += 1
            existing.backup_codes = backup_hashes
            existing.backup_codes_used = 0
        self.db.flush()

        self.event_log.record_for(
            ctx,
            SecurityEventType.MFA_SETUP_STARTED,
            metadata={"mfaId": str(existing.id), "method": method.value},
        )

        if otp is not None:
            self.dispatcher.dispatch(mfa_secret.destination, otp)
            if self.config.expose_dev_secrets:
                result_kwargs["dev_code"] = otp

        self.logger.info(f"{method.value} MFA setup initiated for user: {ctx.user_id}")
        return MFASetupResult(mfa_id=existing.id, method=method, **result_kwargs)

    def resend_otp(self, ctx: SecurityContext, method: MFAMethod) -> Dict[str, Any]:
        """Issue a fresh SMS/email code for setup or, once verified, for login"""
        method = self._parse_method(method)
        if method == MFAMethod.TOTP:
            raise ValidationError("One-time codes are only sent for SMS and email MFA")

        config = self._find_config(ctx, method)
        if config is None:
            raise NotFoundError(f"No {method.value} MFA configuration found")

        now = self.clock()
        if config.is_locked(now):
            raise RateLimitedError(self._locked_message(config.locked_until), unlock_at=config.locked_until)

        otp = generate_otp()
        expires_at = now + self.otp_lifetime
        destination = config.secret.destination
        if config.verified:
            config.secret = VerifiedDestination(
                destination=destination,
                challenge=OTPChallenge(code_hash=hash_code(otp), expires_at=expires_at),
            )
        else:
            config.secret = PendingOTP(
                destination=destination,
                code_hash=hash_code(otp),
                expires_at=expires_at,
            )
        config.secret_version += 1

        self.event_log.record_for(
            ctx,
            SecurityEventType.MFA_OTP_SENT,
            metadata={"mfaId": str(config.id), "method": method.value, "purpose": "login" if config.verified else "setup"},
        )
        self.dispatcher.dispatch(destination, otp)

        result: Dict[str, Any] = {
            "sent": True,
            "destination": mask_for_display(destination),
            "expires_at": expires_at,
            "message": f"Verification code sent to your {method.value.lower()}",
        }
        if self.config.expose_dev_secrets:
            result["dev_code"] = otp
        return result

    def verify_setup(self, ctx: SecurityContext, mfa_id: uuid.UUID, code: str) -> Dict[str, Any]:
        """Verify the first code for a configuration and enable it"""
        config = (
            self.db.query(MFAConfiguration)
            .filter(MFAConfiguration.id == mfa_id, MFAConfiguration.user_id == ctx.user_id)
            .first()
        )
        if config is None:
            raise NotFoundError("MFA configuration not found")
        if config.verified:
            raise ConflictError("MFA is already verified")

        now = self.clock()
        if self._lockout_active(config, now):
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_SETUP_FAILURE,
                success=False,
                metadata={"mfaId": str(config.id), "reason": "locked"},
            )
            raise RateLimitedError(self._locked_message(config.locked_until), unlock_at=config.locked_until)

        code = (code or "").strip()
        secret = config.secret
        if isinstance(secret, TOTPSecret):
            valid = verify_totp(secret.secret, code, for_time=now, valid_window=self.totp_window)
        elif isinstance(secret, PendingOTP):
            if secret.is_expired(now):
                self.event_log.record_for(
                    ctx,
                    SecurityEventType.MFA_SETUP_FAILURE,
                    success=False,
                    metadata={"mfaId": str(config.id), "reason": "expired"},
                )
                raise ExpiredError("Verification code has expired. Please request a new one.")
            valid = secure_compare(hash_code(code), secret.code_hash)
        else:
            valid = False

        if not valid:
            attempts, locked_until = self._register_failure(config, "setup_failed_attempts", now)
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_SETUP_FAILURE,
                success=False,
                metadata={"mfaId": str(config.id), "attempts": attempts},
            )
            self._raise_invalid_code(ctx, attempts, locked_until)

        config.verified = True
        config.verified_at = now
        config.setup_failed_attempts = 0
        config.failed_attempts = 0
        config.locked_until = None
        if isinstance(secret, PendingOTP):
            config.secret = VerifiedDestination(destination=secret.destination)
            config.secret_version += 1

        self.event_log.record_for(
            ctx,
            SecurityEventType.MFA_ENABLED,
            metadata={"mfaId": str(config.id), "method": config.method.value},
        )
        self.logger.info(f"{config.method.value} MFA enabled for user: {ctx.user_id}")
        return {"verified": True, "method": config.method}

    # ============================================
    # Login
    # ============================================

    def verify_at_login(
        self,
        ctx: SecurityContext,
        code: str,
        remember_device: bool = False
    ) -> LoginVerificationResult:
        """Second-factor check during login against the caller's verified methods"""
        configs = [c for c in self._user_configs(ctx) if c.verified]
        if not configs:
            raise NotFoundError("No MFA configured for this account")

        now = self.clock()
        locked = [c for c in configs if self._lockout_active(c, now)]
        if locked:
            unlock_at = max(c.locked_until for c in locked)
            self.event_log.record_for(
                ctx,
                SecurityEventType.LOGIN_MFA_FAILURE,
                success=False,
                metadata={"reason": "locked"},
            )
            raise RateLimitedError(self._locked_message(unlock_at), unlock_at=unlock_at)

        code = (code or "").strip()
        totp_config = next((c for c in configs if c.method == MFAMethod.TOTP), None)
        primary = totp_config or configs[0]

        used_config: Optional[MFAConfiguration] = None
        used_backup_code = False

        if len(code) == TOTP_CODE_LENGTH:
            if totp_config is not None and verify_totp(
                totp_config.secret.secret, code, for_time=now, valid_window=self.totp_window
            ):
                used_config = totp_config
            else:
                for config in configs:
                    if config.method != MFAMethod.TOTP and self._consume_challenge(config, code, now):
                        used_config = config
                        break
        elif len(code) == BACKUP_CODE_LENGTH and totp_config is not None:
            if self._consume_backup_code(totp_config, code):
                used_config = totp_config
                used_backup_code = True

        if used_config is None:
            attempts, locked_until = self._register_failure(primary, "failed_attempts", now)
            self.event_log.record_for(
                ctx,
                SecurityEventType.LOGIN_MFA_FAILURE,
                success=False,
                metadata={"attempts": attempts},
            )
            self._raise_invalid_code(ctx, attempts, locked_until)

        for config in {used_config.id: used_config, primary.id: primary}.values():
            config.failed_attempts = 0
            config.setup_failed_attempts = 0
            config.locked_until = None
        used_config.last_used_at = now

        result = LoginVerificationResult(method=used_config.method, used_backup_code=used_backup_code)

        if used_backup_code:
            result.backup_codes_remaining = used_config.backup_codes_remaining
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_BACKUP_CODE_USED,
                metadata={"mfaId": str(used_config.id), "remainingCodes": result.backup_codes_remaining},
                commit=False,
            )
            if result.backup_codes_remaining <= 2:
                self.logger.warning(
                    f"User {ctx.user_id} has {result.backup_codes_remaining} backup codes left"
                )

        if remember_device:
            result.device_token = self._create_trusted_device(ctx, now)

        self.event_log.record_for(
            ctx,
            SecurityEventType.LOGIN_MFA_SUCCESS,
            metadata={
                "method": used_config.method.value,
                "usedBackupCode": used_backup_code,
                "rememberDevice": remember_device,
            },
        )
        return result

    # ============================================
    # Disable & backup codes
    # ============================================

    def disable(self, ctx: SecurityContext, method: MFAMethod, password: str) -> Dict[str, Any]:
        """Remove one MFA method after password re-authentication"""
        method = self._parse_method(method)
        self._reauthenticate(ctx, password, SecurityEventType.MFA_DISABLED)

        if self.policy.is_mfa_mandatory(ctx.organization_id, ctx.role):
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_DISABLED,
                success=False,
                metadata={"method": method.value, "reason": "required_by_policy"},
            )
            raise ForbiddenError("MFA is required by organization policy and cannot be disabled")

        config = self._find_config(ctx, method)
        if config is None:
            raise NotFoundError("MFA configuration not found")

        self.db.delete(config)
        self.event_log.record_for(
            ctx,
            SecurityEventType.MFA_DISABLED,
            metadata={"method": method.value},
            severity=EventSeverity.WARNING,
        )
        self.logger.info(f"{method.value} MFA disabled for user: {ctx.user_id}")
        return {"disabled": True, "method": method}

    def regenerate_backup_codes(self, ctx: SecurityContext, password: str) -> List[str]:
        """Replace the whole backup code set of the caller's verified TOTP method"""
        self._reauthenticate(ctx, password, SecurityEventType.MFA_BACKUP_CODES_REGENERATED)

        config = self._find_config(ctx, MFAMethod.TOTP)
        if config is None or not config.verified:
            raise NotFoundError("No verified TOTP MFA found")

        backup_codes = generate_backup_codes(self.backup_codes_count)
        config.backup_codes = [hash_code(code) for code in backup_codes]
        config.backup_codes_used = 0

        self.event_log.record_for(
            ctx,
            SecurityEventType.MFA_BACKUP_CODES_REGENERATED,
            metadata={"mfaId": str(config.id), "codesGenerated": len(backup_codes)},
        )
        self.logger.info(f"Backup codes regenerated for user: {ctx.user_id}")
        return backup_codes

    # ============================================
    # Recovery
    # ============================================

    def request_recovery(self, ctx: SecurityContext) -> Dict[str, Any]:
        """Send a time-limited recovery token to the caller's email"""
        token = generate_session_token()
        expires_at = self.clock() + self.recovery_lifetime

        self.event_log.create_recovery_request(ctx, sha256_hex(token), expires_at)
        self.dispatcher.dispatch(ctx.email, token)

        result: Dict[str, Any] = {
            "message": "Recovery instructions have been sent to your email",
            "expires_at": expires_at,
        }
        if self.config.expose_dev_secrets:
            result["dev_token"] = token
        return result

    def complete_recovery(self, ctx: SecurityContext, token: str, new_password: str) -> Dict[str, Any]:
        """Reset all MFA, trusted devices and the password using a recovery token"""
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        pending = self.event_log.find_pending_recovery(ctx.user_id, ctx.organization_id)
        if pending is None:
            raise NotFoundError("No pending recovery request found")

        metadata = pending.metadata_ or {}
        token_hash = metadata.get("tokenHash")
        if not token_hash or not metadata.get("expiresAt"):
            raise ValidationError("Invalid recovery request")

        now = self.clock()
        if now > ensure_utc(datetime.fromisoformat(metadata["expiresAt"])):
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_RECOVERY_USED,
                success=False,
                metadata={"reason": "expired"},
            )
            raise ExpiredError("Recovery token has expired")

        if not secure_compare(sha256_hex(token or ""), token_hash):
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_RECOVERY_USED,
                success=False,
                metadata={"reason": "invalid_token"},
            )
            raise UnauthorizedError("Invalid recovery token")

        user = self.db.get(User, ctx.user_id)
        if user is None:
            raise NotFoundError("User not found")

        for config in self._user_configs(ctx):
            self.db.delete(config)
        terminated = self._terminate_trusted_devices(ctx.user_id, now, "mfa_recovery")
        user.hashed_password = self.password_hasher.hash_password(new_password)

        self.event_log.complete_recovery_request(pending)
        self.event_log.record_for(
            ctx,
            SecurityEventType.PASSWORD_CHANGED,
            metadata={"reason": "mfa_recovery", "trustedDevicesTerminated": terminated},
            severity=EventSeverity.WARNING,
        )
        self.logger.warning(f"MFA reset through recovery for user: {ctx.user_id}")
        return {"success": True, "message": "MFA has been reset. Please set up MFA again."}

    # ============================================
    # Trusted devices
    # ============================================

    def check_trusted_device(self, ctx: SecurityContext, device_token: str) -> bool:
        """True if the token belongs to an active trusted device on this browser and network"""
        if not device_token:
            return False

        now = self.clock()
        session = (
            self.db.query(UserSession)
            .filter(
                UserSession.session_token == hash_session_token(device_token),
                UserSession.user_id == ctx.user_id,
                UserSession.status == SessionStatus.ACTIVE,
                UserSession.remember_device.is_(True),
                UserSession.expires_at > now,
            )
            .first()
        )
        if session is None:
            return False

        fingerprint = generate_device_fingerprint(ctx.user_agent, ctx.ip_address)
        if not secure_compare(session.device_fingerprint, fingerprint):
            self.logger.warning(f"Trusted device token presented from a different device: {session.id}")
            return False

        session.last_activity_at = now
        self.db.commit()
        return True

    def list_trusted_devices(self, ctx: SecurityContext) -> List[Dict[str, Any]]:
        sessions = (
            self.db.query(UserSession)
            .filter(
                UserSession.user_id == ctx.user_id,
                UserSession.status == SessionStatus.ACTIVE,
                UserSession.remember_device.is_(True),
                UserSession.expires_at > self.clock(),
            )
            .order_by(UserSession.created_at.desc())
            .all()
        )
        return [
            {
                "id": s.id,
                "device_type": s.device_type,
                "browser": s.browser,
                "os": s.os,
                "ip_address": s.ip_address,
                "last_activity_at": s.last_activity_at,
                "created_at": s.created_at,
                "expires_at": s.expires_at,
            }
            for s in sessions
        ]

    def remove_trusted_device(self, ctx: SecurityContext, session_id: uuid.UUID) -> None:
        session = (
            self.db.query(UserSession)
            .filter(
                UserSession.id == session_id,
                UserSession.user_id == ctx.user_id,
                UserSession.status == SessionStatus.ACTIVE,
            )
            .first()
        )
        if session is None:
            raise NotFoundError("Device not found")

        self._terminate(session, self.clock(), "user_removed")
        self.event_log.record_for(
            ctx,
            SecurityEventType.TRUSTED_DEVICE_REMOVED,
            metadata={"sessionId": str(session.id)},
        )

    def remove_all_trusted_devices(self, ctx: SecurityContext) -> int:
        count = self._terminate_trusted_devices(ctx.user_id, self.clock(), "user_removed_all")
        self.event_log.record_for(
            ctx,
            SecurityEventType.TRUSTED_DEVICE_REMOVED,
            metadata={"count": count, "all": True},
        )
        return count

    def _create_trusted_device(self, ctx: SecurityContext, now: datetime) -> str:
        """Persist a remember-device session; the plaintext token is returned once"""
        token = generate_session_token()
        session = UserSession(
            user_id=ctx.user_id,
            organization_id=ctx.organization_id,
            session_token=hash_session_token(token),
            device_fingerprint=generate_device_fingerprint(ctx.user_agent, ctx.ip_address),
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            expires_at=now + self.trusted_device_lifetime,
            remember_device=True,
            mfa_verified=True,
            last_activity_at=now,
            **describe_device(ctx.user_agent),
        )
        self.db.add(session)
        self.db.flush()

        self.event_log.record_for(
            ctx,
            SecurityEventType.TRUSTED_DEVICE_ADDED,
            metadata={"sessionId": str(session.id), "deviceType": session.device_type},
            commit=False,
        )
        return token

    def _terminate_trusted_devices(self, user_id: uuid.UUID, now: datetime, reason: str) -> int:
        sessions = (
            self.db.query(UserSession)
            .filter(
                UserSession.user_id == user_id,
                UserSession.status == SessionStatus.ACTIVE,
                UserSession.remember_device.is_(True),
            )
            .all()
        )
        for session in sessions:
            self._terminate(session, now, reason)
        return len(sessions)

    def _terminate(self, session: UserSession, now: datetime, reason: str) -> None:
        session.status = SessionStatus.TERMINATED
        session.terminated_at = now
        session.terminated_reason = reason

    # ============================================
    # Helpers
    # ============================================

    def _parse_method(self, method: Any) -> MFAMethod:
        try:
            return MFAMethod(str(method.value if isinstance(method, MFAMethod) else method).upper())
        except ValueError as e:
            raise ValidationError(f"Unsupported MFA method: {method}") from e

    def _user_configs(self, ctx: SecurityContext) -> List[MFAConfiguration]:
        return (
            self.db.query(MFAConfiguration)
            .filter(MFAConfiguration.user_id == ctx.user_id)
            .order_by(MFAConfiguration.created_at)
            .all()
        )

    def _find_config(self, ctx: SecurityContext, method: MFAMethod) -> Optional[MFAConfiguration]:
        return (
            self.db.query(MFAConfiguration)
            .filter(MFAConfiguration.user_id == ctx.user_id, MFAConfiguration.method == method)
            .first()
        )

    def _reauthenticate(self, ctx: SecurityContext, password: str, event_type: SecurityEventType) -> User:
        user = self.db.get(User, ctx.user_id)
        if user is None:
            raise NotFoundError("User not found")

        if not self.password_hasher.verify_password(password or "", user.hashed_password):
            self.event_log.record_for(
                ctx,
                event_type,
                success=False,
                metadata={"reason": "invalid_password"},
            )
            raise UnauthorizedError("Invalid password")
        return user

    def _lockout_active(self, config: MFAConfiguration, now: datetime) -> bool:
        """True while locked; an expired lockout is cleared with both counters"""
        if config.locked_until is None:
            return False
        if config.locked_until > now:
            return True

        config.locked_until = None
        config.failed_attempts = 0
        config.setup_failed_attempts = 0
        self.db.commit()
        self.logger.info(f"MFA lockout expired for configuration: {config.id}")
        return False

    def _compare_and_swap(self, config: MFAConfiguration, condition, values: Dict[str, Any]) -> bool:
        """Guarded UPDATE of one configuration; False if the row changed underneath"""
        result = self.db.execute(
            update(MFAConfiguration)
            .where(MFAConfiguration.id == config.id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(config)
        return result.rowcount == 1

    def _register_failure(
        self,
        config: MFAConfiguration,
        counter: str,
        now: datetime
    ) -> Tuple[int, Optional[datetime]]:
        """Increment a failure counter, locking the configuration at the limit"""
        column = getattr(MFAConfiguration, counter)
        for _ in range(CAS_RETRIES):
            observed = getattr(config, counter)
            attempts = observed + 1
            values: Dict[str, Any] = {counter: attempts}
            locked_until = None
            if attempts >= self.max_attempts:
                locked_until = now + self.lockout_duration
                values["locked_until"] = locked_until
            if self._compare_and_swap(config, column == observed, values):
                return attempts, locked_until
        raise ConflictError("MFA state changed concurrently, please retry")

    def _consume_backup_code(self, config: MFAConfiguration, code: str) -> bool:
        code_hash = hash_code(code)
        for _ in range(CAS_RETRIES):
            codes = list(config.backup_codes or [])
            index = next(
                (i for i, stored in enumerate(codes)
                 if stored != BACKUP_CODE_USED and secure_compare(stored, code_hash)),
                None,
            )
            if index is None:
                return False

            observed = config.backup_codes_used
            codes[index] = BACKUP_CODE_USED
            if self._compare_and_swap(
                config,
                MFAConfiguration.backup_codes_used == observed,
                {"backup_codes": codes, "backup_codes_used": observed + 1},
            ):
                return True
        raise ConflictError("MFA state changed concurrently, please retry")

    def _consume_challenge(self, config: MFAConfiguration, code: str, now: datetime) -> bool:
        """Match and clear the login challenge of a verified SMS/email method"""
        secret = config.secret
        if not isinstance(secret, VerifiedDestination) or secret.challenge is None:
            return False
        if secret.challenge.is_expired(now):
            return False
        if not secure_compare(hash_code(code), secret.challenge.code_hash):
            return False

        observed = config.secret_version
        return self._compare_and_swap(
            config,
            MFAConfiguration.secret_version == observed,
            {
                "secret": VerifiedDestination(destination=secret.destination),
                "secret_version": observed + 1,
            },
        )

    def _raise_invalid_code(
        self,
        ctx: SecurityContext,
        attempts: int,
        locked_until: Optional[datetime]
    ) -> None:
        if locked_until is not None:
            self.event_log.record_for(
                ctx,
                SecurityEventType.MFA_LOCKED,
                success=False,
                metadata={"attempts": attempts, "lockedUntil": locked_until.isoformat()},
            )
            self.logger.warning(f"MFA locked for user {ctx.user_id} after {attempts} failed attempts")
            raise UnauthorizedError(
                f"Too many failed attempts. Locked for {self.config.MFA_LOCKOUT_MINUTES} minutes.",
                remaining_attempts=0,
                locked_until=locked_until.isoformat(),
            )

        remaining = max(self.max_attempts - attempts, 0)
        raise UnauthorizedError(
            f"Invalid verification code. {remaining} attempts remaining.",
            remaining_attempts=remaining,
        )

    def _locked_message(self, unlock_at: datetime) -> str:
        return f"Too many failed attempts. Try again after {unlock_at.isoformat()}"

    def _generate_qr_code(self, provisioning_uri: str) -> str:
        """Generate QR code image as base64 data URI"""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=self.qr_size,
            border=self.qr_border,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        qr_base64 = base64.b64encode(buffer.getvalue()).decode()
        return f"data:image/png;base64,{qr_base64}"
