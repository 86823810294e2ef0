"""
CareVault Security Event Log
Append-only audit trail shared by the MFA engine, key manager and policy layer.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from carevault.core.logging import LoggerMixin
from carevault.database.models import EventSeverity, SecurityEvent, SecurityEventType
from carevault.database.types import utc_now

RECOVERY_REQUEST = "recovery_request"

# Suspicious activity thresholds, per analysis window
REPEATED_FAILURE_THRESHOLD = 5
BRUTE_FORCE_THRESHOLD = 10
PHI_ACCESS_THRESHOLD = 100
LOCKOUT_THRESHOLD = 3

VERIFICATION_FAILURES = (
    SecurityEventType.LOGIN_MFA_FAILURE,
    SecurityEventType.MFA_SETUP_FAILURE,
)


@dataclass(frozen=True)
class SecurityAlert:
    """A pattern in the event trail an administrator should look at"""
    type: str
    severity: EventSeverity
    message: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class SecurityEventLog(LoggerMixin):
    """Records security events and mirrors them to the application log"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def record(
        self,
        event_type: SecurityEventType,
        organization_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[EventSeverity] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        commit: bool = True,
    ) -> SecurityEvent:
        """
        Persist one security event.

        Severity defaults to INFO for successes and WARNING for failures.
        With commit=False the event joins the caller's transaction.
        """
        if severity is None:
            severity = EventSeverity.INFO if success else EventSeverity.WARNING

        security_event = SecurityEvent(
            event_type=event_type,
            organization_id=organization_id,
            user_id=user_id,
            success=success,
            severity=severity,
            metadata_=metadata or {},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self.clock(),
        )

        try:
            self.db.add(security_event)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except Exception as e:
            self.logger.error(f"Failed to record security event {event_type.value}: {e}")
            self.db.rollback()
            raise

        self.log_with_context(
            self._get_log_level(severity),
            f"Security Event: {event_type.value} "
            f"(success={success}, user={user_id or 'N/A'}, IP: {ip_address or 'N/A'})",
            {"organization_id": str(organization_id), **(metadata or {})},
        )
        return security_event

    def record_for(
        self,
        ctx,
        event_type: SecurityEventType,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[EventSeverity] = None,
        commit: bool = True,
    ) -> SecurityEvent:
        """Record an event attributed to the caller in a SecurityContext"""
        return self.record(
            event_type,
            organization_id=ctx.organization_id,
            user_id=ctx.user_id,
            success=success,
            metadata=metadata,
            severity=severity,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            commit=commit,
        )

    # ============================================
    # Recovery requests
    # ============================================

    def create_recovery_request(self, ctx, token_hash: str, expires_at: datetime) -> SecurityEvent:
        """Pending recovery lives in the trail as an unsuccessful MFA_RECOVERY_USED event"""
        return self.record_for(
            ctx,
            SecurityEventType.MFA_RECOVERY_USED,
            success=False,
            metadata={
                "type": RECOVERY_REQUEST,
                "tokenHash": token_hash,
                "expiresAt": expires_at.isoformat(),
            },
            severity=EventSeverity.WARNING,
        )

    def find_pending_recovery(
        self,
        user_id: uuid.UUID,
        organization_id: uuid.UUID
    ) -> Optional[SecurityEvent]:
        return (
            self.db.query(SecurityEvent)
            .filter(
                SecurityEvent.user_id == user_id,
                SecurityEvent.organization_id == organization_id,
                SecurityEvent.event_type == SecurityEventType.MFA_RECOVERY_USED,
                SecurityEvent.success.is_(False),
                SecurityEvent.metadata_["type"].as_string() == RECOVERY_REQUEST,
            )
            .order_by(desc(SecurityEvent.created_at))
            .first()
        )

    def complete_recovery_request(self, pending: SecurityEvent) -> None:
        """The single permitted mutation: flip a pending request to success"""
        pending.success = True
        self.db.flush()

    # ============================================
    # Queries
    # ============================================

    def get_key_events(
        self,
        organization_id: uuid.UUID,
        key_identifier: str,
        limit: int = 50
    ) -> List[SecurityEvent]:
        """Events whose metadata references the key"""
        return (
            self.db.query(SecurityEvent)
            .filter(
                SecurityEvent.organization_id == organization_id,
                or_(
                    SecurityEvent.metadata_["keyId"].as_string() == key_identifier,
                    SecurityEvent.metadata_["newKeyId"].as_string() == key_identifier,
                ),
            )
            .order_by(desc(SecurityEvent.created_at))
            .limit(limit)
            .all()
        )

    def _filtered_query(
        self,
        organization_id: uuid.UUID,
        event_types: Optional[Iterable[SecurityEventType]] = None,
        severity: Optional[EventSeverity] = None,
        user_id: Optional[uuid.UUID] = None,
        success: Optional[bool] = None,
        ip_address: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        query = self.db.query(SecurityEvent).filter(
            SecurityEvent.organization_id == organization_id
        )

        if event_types:
            query = query.filter(SecurityEvent.event_type.in_(list(event_types)))

        if severity:
            query = query.filter(SecurityEvent.severity == severity)

        if user_id:
            query = query.filter(SecurityEvent.user_id == user_id)

        if success is not None:
            query = query.filter(SecurityEvent.success.is_(success))

        if ip_address:
            query = query.filter(SecurityEvent.ip_address == ip_address)

        if start:
            query = query.filter(SecurityEvent.created_at >= start)

        if end:
            query = query.filter(SecurityEvent.created_at <= end)

        return query

    def list_events(
        self,
        organization_id: uuid.UUID,
        limit: int = 100,
        offset: int = 0,
        **filters: Any,
    ) -> List[SecurityEvent]:
        """
        Newest-first page of events.

        Filters: event_types, severity, user_id, success, ip_address,
        start and end (inclusive bounds on created_at).
        """
        return (
            self._filtered_query(organization_id, **filters)
            .order_by(desc(SecurityEvent.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_events(self, organization_id: uuid.UUID, **filters: Any) -> int:
        return self._filtered_query(organization_id, **filters).count()

    # ============================================
    # Analysis
    # ============================================

    def get_event_stats(
        self,
        organization_id: uuid.UUID,
        since: datetime,
        now: datetime
    ) -> Dict[str, Any]:
        """Counts by type, severity and outcome, plus an hourly histogram of the last day"""
        events = self._filtered_query(organization_id, start=since).all()

        by_event_type: Dict[str, int] = defaultdict(int)
        by_severity = {severity.value: 0 for severity in EventSeverity}
        hourly_distribution: Dict[int, int] = defaultdict(int)
        success_count = 0

        for event in events:
            by_event_type[event.event_type.value] += 1
            by_severity[event.severity.value] += 1
            if event.success:
                success_count += 1

            hours_ago = int((now - event.created_at).total_seconds() // 3600)
            if 0 <= hours_ago < 24:
                hourly_distribution[hours_ago] += 1

        return {
            "total_events": len(events),
            "by_event_type": dict(by_event_type),
            "by_severity": by_severity,
            "success_count": success_count,
            "failure_count": len(events) - success_count,
            "mfa_events": {
                "mfa_success": by_event_type.get(SecurityEventType.LOGIN_MFA_SUCCESS.value, 0),
                "mfa_failure": by_event_type.get(SecurityEventType.LOGIN_MFA_FAILURE.value, 0),
                "backup_codes_used": by_event_type.get(SecurityEventType.MFA_BACKUP_CODE_USED.value, 0),
                "lockouts": by_event_type.get(SecurityEventType.MFA_LOCKED.value, 0),
            },
            "hourly_distribution": dict(hourly_distribution),
        }

    def detect_suspicious_activity(
        self,
        organization_id: uuid.UUID,
        since: datetime
    ) -> List[SecurityAlert]:
        """
        Scan recent events for attack patterns.

        Flags repeated failed verifications from one IP address, repeated
        MFA failures against one user, PHI access bursts by one user and
        clusters of lockouts. CRITICAL alerts come first, newest first
        within a severity.
        """
        events = (
            self._filtered_query(organization_id, start=since)
            .order_by(desc(SecurityEvent.created_at))
            .all()
        )

        failures_by_ip: Dict[str, List[SecurityEvent]] = defaultdict(list)
        mfa_failures_by_user: Dict[uuid.UUID, List[SecurityEvent]] = defaultdict(list)
        phi_access_by_user: Dict[uuid.UUID, List[SecurityEvent]] = defaultdict(list)
        lockouts: List[SecurityEvent] = []

        for event in events:
            if event.event_type in VERIFICATION_FAILURES and event.ip_address:
                failures_by_ip[event.ip_address].append(event)
            if event.event_type == SecurityEventType.LOGIN_MFA_FAILURE and event.user_id:
                mfa_failures_by_user[event.user_id].append(event)
            if event.event_type == SecurityEventType.PHI_ACCESSED and event.user_id:
                phi_access_by_user[event.user_id].append(event)
            if event.event_type == SecurityEventType.MFA_LOCKED:
                lockouts.append(event)

        alerts: List[SecurityAlert] = []

        for ip_address, attempts in failures_by_ip.items():
            if len(attempts) >= BRUTE_FORCE_THRESHOLD:
                alerts.append(SecurityAlert(
                    type="BRUTE_FORCE_ATTEMPT",
                    severity=EventSeverity.CRITICAL,
                    message=f"Potential brute force attack: {len(attempts)} failed verifications from IP {ip_address}",
                    details={
                        "ip_address": ip_address,
                        "attempt_count": len(attempts),
                        "target_users": sorted({str(a.user_id) for a in attempts if a.user_id}),
                    },
                    timestamp=attempts[0].created_at,
                ))
            elif len(attempts) >= REPEATED_FAILURE_THRESHOLD:
                alerts.append(SecurityAlert(
                    type="MULTIPLE_FAILED_VERIFICATIONS",
                    severity=EventSeverity.WARNING,
                    message=f"Multiple failed verifications ({len(attempts)}) from IP {ip_address}",
                    details={"ip_address": ip_address, "attempt_count": len(attempts)},
                    timestamp=attempts[0].created_at,
                ))

        for user_id, failures in mfa_failures_by_user.items():
            if len(failures) >= REPEATED_FAILURE_THRESHOLD:
                alerts.append(SecurityAlert(
                    type="MFA_BYPASS_ATTEMPT",
                    severity=EventSeverity.CRITICAL,
                    message=f"Potential MFA bypass attempt: {len(failures)} failed verifications for user {user_id}",
                    details={"user_id": str(user_id), "failure_count": len(failures)},
                    timestamp=failures[0].created_at,
                ))

        for user_id, accesses in phi_access_by_user.items():
            if len(accesses) >= PHI_ACCESS_THRESHOLD:
                alerts.append(SecurityAlert(
                    type="UNUSUAL_PHI_ACCESS_VOLUME",
                    severity=EventSeverity.WARNING,
                    message=f"Unusual PHI access volume: {len(accesses)} accesses by user {user_id}",
                    details={"user_id": str(user_id), "access_count": len(accesses)},
                    timestamp=accesses[0].created_at,
                ))

        if len(lockouts) >= LOCKOUT_THRESHOLD:
            alerts.append(SecurityAlert(
                type="MULTIPLE_ACCOUNT_LOCKOUTS",
                severity=EventSeverity.WARNING,
                message=f"{len(lockouts)} MFA lockouts since {since.isoformat()}",
                details={
                    "lockout_count": len(lockouts),
                    "affected_users": sorted({str(e.user_id) for e in lockouts if e.user_id}),
                },
                timestamp=lockouts[0].created_at,
            ))

        alerts.sort(key=lambda a: (a.severity != EventSeverity.CRITICAL, -a.timestamp.timestamp()))
        return alerts

    def _get_log_level(self, severity: EventSeverity) -> int:
        """Convert event severity to logging level"""
        level_mapping = {
            EventSeverity.INFO: logging.INFO,
            EventSeverity.WARNING: logging.WARNING,
            EventSeverity.CRITICAL: logging.CRITICAL,
        }
        return level_mapping.get(severity, logging.INFO)
