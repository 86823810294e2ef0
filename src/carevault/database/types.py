"""
CareVault Column Types
Portable column types shared by the security models.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, Optional, Union

from sqlalchemy import JSON, DateTime
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Role(str, Enum):
    """Practice portal roles"""
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    PROVIDER = "PROVIDER"
    STAFF = "STAFF"
    BILLER = "BILLER"

    @property
    def is_admin(self) -> bool:
        return self in ADMIN_ROLES


ADMIN_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.ADMIN})


def to_role_set(roles: Optional[Iterable[Any]]) -> FrozenSet[Role]:
    """Coerce role names or Role members into a frozenset of Role"""
    if roles is None:
        return frozenset()
    return frozenset(Role(str(r).upper()) if not isinstance(r, Role) else r for r in roles)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime that always round-trips as UTC.
    SQLite drops tzinfo on storage, so values are normalized on the way in
    and tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value)


class RoleSet(TypeDecorator):
    """Set of roles stored as a sorted JSON list of role names"""
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return sorted(role.value for role in to_role_set(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return to_role_set(value)


# ============================================
# MFA secret variants
# ============================================

def _dump_dt(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def _load_dt(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class OTPChallenge:
    """Login code issued against a verified SMS/email destination"""
    code_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class TOTPSecret:
    kind: ClassVar[str] = "totp"
    secret: str


@dataclass(frozen=True)
class PendingOTP:
    """SMS/email destination awaiting its setup code"""
    kind: ClassVar[str] = "pending_otp"
    destination: str
    code_hash: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class VerifiedDestination:
    kind: ClassVar[str] = "verified_destination"
    destination: str
    challenge: Optional[OTPChallenge] = None


MFASecret = Union[TOTPSecret, PendingOTP, VerifiedDestination]


def secret_to_dict(secret: MFASecret) -> Dict[str, Any]:
    if isinstance(secret, TOTPSecret):
        return {"kind": secret.kind, "secret": secret.secret}
    if isinstance(secret, PendingOTP):
        return {
            "kind": secret.kind,
            "destination": secret.destination,
            "code_hash": secret.code_hash,
            "expires_at": _dump_dt(secret.expires_at),
        }
    if isinstance(secret, VerifiedDestination):
        data: Dict[str, Any] = {"kind": secret.kind, "destination": secret.destination}
        if secret.challenge is not None:
            data["challenge"] = {
                "code_hash": secret.challenge.code_hash,
                "expires_at": _dump_dt(secret.challenge.expires_at),
            }
        return data
    raise TypeError(f"Unsupported MFA secret type: {type(secret).__name__}")


def secret_from_dict(data: Dict[str, Any]) -> MFASecret:
    kind = data.get("kind")
    if kind == TOTPSecret.kind:
        return TOTPSecret(secret=data["secret"])
    if kind == PendingOTP.kind:
        return PendingOTP(
            destination=data["destination"],
            code_hash=data["code_hash"],
            expires_at=_load_dt(data["expires_at"]),
        )
    if kind == VerifiedDestination.kind:
        challenge = data.get("challenge")
        return VerifiedDestination(
            destination=data["destination"],
            challenge=OTPChallenge(
                code_hash=challenge["code_hash"],
                expires_at=_load_dt(challenge["expires_at"]),
            ) if challenge else None,
        )
    raise ValueError(f"Unknown MFA secret kind: {kind!r}")


class MFASecretType(TypeDecorator):
    """MFA secret variant persisted as a JSON document tagged by kind"""
    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return secret_to_dict(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return secret_from_dict(value)
