"""
CareVault Policy Layer
Organization MFA policy, the administrator gate and security event review.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from sqlalchemy.orm import Session

from carevault.core.logging import LoggerMixin
from carevault.database.models import (
    EventSeverity, MFAConfiguration, SecurityEventType, SecuritySetting
)
from carevault.database.types import Role, to_role_set, utc_now

from .audit import SecurityEventLog
from .context import SecurityContext
from .exceptions import ForbiddenError, ValidationError

DEFAULT_GRACE_PERIOD_DAYS = 7
MAX_GRACE_PERIOD_DAYS = 30
MAX_EVENT_PAGE_SIZE = 500
MAX_STATS_HOURS = 720
MAX_DETECTION_HOURS = 168


@dataclass(frozen=True)
class MFAPolicy:
    mfa_required: bool = False
    mfa_required_for_roles: FrozenSet[Role] = field(default_factory=frozenset)
    mfa_grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS

    def applies_to(self, role: Role) -> bool:
        return self.mfa_required or role in self.mfa_required_for_roles

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mfa_required": self.mfa_required,
            "mfa_required_for_roles": sorted(r.value for r in self.mfa_required_for_roles),
            "mfa_grace_period_days": self.mfa_grace_period_days,
        }


class PolicyManager(LoggerMixin):
    """Reads and maintains per-organization security policy"""

    def __init__(
        self,
        db: Session,
        event_log: Optional[SecurityEventLog] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.clock = clock
        self.event_log = event_log or SecurityEventLog(db, clock=clock)

    def require_admin(self, ctx: SecurityContext, action: str = "admin_operation") -> None:
        """Raise ForbiddenError unless the caller is an OWNER or ADMIN"""
        if ctx.is_admin:
            return

        self.event_log.record_for(
            ctx,
            SecurityEventType.PERMISSION_DENIED,
            success=False,
            metadata={"action": action, "role": ctx.role.value},
        )
        self.logger.warning(f"Access denied for user {ctx.user_id}: {action} requires administrator")
        raise ForbiddenError("Administrator access required")

    def _load_policy(self, organization_id: uuid.UUID) -> MFAPolicy:
        setting = (
            self.db.query(SecuritySetting)
            .filter(SecuritySetting.organization_id == organization_id)
            .first()
        )
        if setting is None:
            return MFAPolicy()

        return MFAPolicy(
            mfa_required=setting.mfa_required,
            mfa_required_for_roles=setting.mfa_required_for_roles or frozenset(),
            mfa_grace_period_days=setting.mfa_grace_period_days,
        )

    def get_mfa_policy(self, ctx: SecurityContext) -> MFAPolicy:
        self.require_admin(ctx, "get_mfa_policy")
        return self._load_policy(ctx.organization_id)

    def update_mfa_policy(
        self,
        ctx: SecurityContext,
        mfa_required: bool,
        required_roles: Iterable[Any] = (),
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
    ) -> MFAPolicy:
        """Create or replace the organization's MFA policy"""
        self.require_admin(ctx, "update_mfa_policy")

        if not 0 <= grace_period_days <= MAX_GRACE_PERIOD_DAYS:
            raise ValidationError(
                f"Grace period must be between 0 and {MAX_GRACE_PERIOD_DAYS} days",
                grace_period_days=grace_period_days,
            )
        try:
            roles = to_role_set(required_roles)
        except ValueError as e:
            raise ValidationError(f"Unknown role: {e}") from e

        setting = (
            self.db.query(SecuritySetting)
            .filter(SecuritySetting.organization_id == ctx.organization_id)
            .first()
        )
        if setting is None:
            setting = SecuritySetting(organization_id=ctx.organization_id)
            self.db.add(setting)

        setting.mfa_required = mfa_required
        setting.mfa_required_for_roles = roles
        setting.mfa_grace_period_days = grace_period_days

        policy = MFAPolicy(mfa_required, roles, grace_period_days)
        self.event_log.record_for(
            ctx,
            SecurityEventType.CONFIG_CHANGED,
            metadata={"setting": "mfa_policy", **policy.to_dict()},
            severity=EventSeverity.WARNING,
        )
        self.logger.info(f"MFA policy updated for organization {ctx.organization_id}")
        return policy

    def is_mfa_mandatory(self, organization_id: uuid.UUID, role: Role) -> bool:
        return self._load_policy(organization_id).applies_to(role)

    def check_mfa_required(self, ctx: SecurityContext) -> Dict[str, Any]:
        """Whether the caller must enrol in MFA and whether they already have"""
        policy = self._load_policy(ctx.organization_id)
        has_verified_mfa = (
            self.db.query(MFAConfiguration.id)
            .filter(
                MFAConfiguration.user_id == ctx.user_id,
                MFAConfiguration.verified.is_(True),
            )
            .first()
            is not None
        )
        return {
            "required": policy.applies_to(ctx.role),
            "has_verified_mfa": has_verified_mfa,
            "grace_period_days": policy.mfa_grace_period_days,
        }

    # ============================================
    # Security event review
    # ============================================

    def list_security_events(
        self,
        ctx: SecurityContext,
        event_types: Iterable[Any] = (),
        severity: Optional[Any] = None,
        success: Optional[bool] = None,
        user_id: Optional[uuid.UUID] = None,
        ip_address: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Page through the organization's security events, newest first"""
        self.require_admin(ctx, "list_security_events")

        if not 1 <= limit <= MAX_EVENT_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_EVENT_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        try:
            filters = {
                "event_types": [SecurityEventType(t) for t in event_types],
                "severity": EventSeverity(severity) if severity else None,
                "success": success,
                "user_id": user_id,
                "ip_address": ip_address,
                "start": start,
                "end": end,
            }
        except ValueError as e:
            raise ValidationError(f"Invalid event filter: {e}") from e

        events = self.event_log.list_events(ctx.organization_id, limit=limit, offset=offset, **filters)
        total = self.event_log.count_events(ctx.organization_id, **filters)
        return {
            "events": events,
            "total": total,
            "has_more": offset + len(events) < total,
        }

    def get_security_event_stats(self, ctx: SecurityContext, hours: int = 24) -> Dict[str, Any]:
        """Event counts for a dashboard over the last `hours` (up to 30 days)"""
        self.require_admin(ctx, "get_security_event_stats")
        self._check_window(hours, MAX_STATS_HOURS)

        now = self.clock()
        stats = self.event_log.get_event_stats(ctx.organization_id, now - timedelta(hours=hours), now)
        stats["period_hours"] = hours
        return stats

    def detect_suspicious_activity(self, ctx: SecurityContext, hours: int = 24) -> Dict[str, Any]:
        """Alerts for attack patterns in the last `hours` (up to 7 days)"""
        self.require_admin(ctx, "detect_suspicious_activity")
        self._check_window(hours, MAX_DETECTION_HOURS)

        now = self.clock()
        since = now - timedelta(hours=hours)
        alerts = self.event_log.detect_suspicious_activity(ctx.organization_id, since)
        if alerts:
            self.logger.warning(
                f"{len(alerts)} suspicious activity alerts for organization {ctx.organization_id}"
            )
        return {
            "alerts": alerts,
            "total_events": self.event_log.count_events(ctx.organization_id, start=since),
            "period_hours": hours,
            "analyzed_at": now,
        }

    def _check_window(self, hours: int, maximum: int) -> None:
        if not 1 <= hours <= maximum:
            raise ValidationError(f"hours must be between 1 and {maximum}")
