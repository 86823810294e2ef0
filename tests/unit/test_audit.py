"""
Unit tests for the security event log.
"""
import logging
import uuid

from carevault.database.models import EventSeverity, SecurityEvent, SecurityEventType


class TestSecurityEventLog:
    """Test cases for SecurityEventLog."""

    def test_record_defaults(self, db_session, event_log, organization_id, clock):
        """Test severity defaults and persisted fields."""
        ok = event_log.record(SecurityEventType.MFA_ENABLED, organization_id)
        failed = event_log.record(
            SecurityEventType.LOGIN_MFA_FAILURE, organization_id, success=False
        )

        assert ok.severity == EventSeverity.INFO
        assert failed.severity == EventSeverity.WARNING
        assert ok.created_at == clock.now
        assert ok.metadata_ == {}
        assert db_session.query(SecurityEvent).count() == 2

    def test_record_for_context(self, event_log, provider_ctx):
        recorded = event_log.record_for(
            provider_ctx,
            SecurityEventType.PHI_ACCESSED,
            metadata={"keyId": "phi_encryption_x_1", "operation": "decrypt"},
        )

        assert recorded.user_id == provider_ctx.user_id
        assert recorded.organization_id == provider_ctx.organization_id
        assert recorded.ip_address == "203.0.113.10"
        assert recorded.metadata_["operation"] == "decrypt"

    def test_uncommitted_record_joins_transaction(self, db_session, event_log, organization_id):
        event_log.record(SecurityEventType.MFA_BACKUP_CODE_USED, organization_id, commit=False)
        db_session.rollback()

        assert db_session.query(SecurityEvent).count() == 0

    def test_mirrors_to_application_log(self, event_log, organization_id):
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        event_log.logger.addHandler(handler)
        try:
            event_log.record(
                SecurityEventType.ENCRYPTION_KEY_COMPROMISED,
                organization_id,
                severity=EventSeverity.CRITICAL,
            )
        finally:
            event_log.logger.removeHandler(handler)

        assert records[-1].levelno == logging.CRITICAL
        assert "ENCRYPTION_KEY_COMPROMISED" in records[-1].getMessage()

    def test_get_key_events_matches_both_key_fields(self, event_log, organization_id, clock):
        event_log.record(SecurityEventType.ENCRYPTION_KEY_CREATED, organization_id, metadata={"keyId": "k1"})
        clock.advance(minutes=1)
        event_log.record(
            SecurityEventType.ENCRYPTION_KEY_ROTATED,
            organization_id,
            metadata={"keyId": "k1", "newKeyId": "k2"},
        )
        clock.advance(minutes=1)
        event_log.record(SecurityEventType.PHI_ACCESSED, organization_id, metadata={"keyId": "k2"})

        k1_events = event_log.get_key_events(organization_id, "k1")
        k2_events = event_log.get_key_events(organization_id, "k2")

        assert [e.event_type for e in k1_events] == [
            SecurityEventType.ENCRYPTION_KEY_ROTATED,
            SecurityEventType.ENCRYPTION_KEY_CREATED,
        ]
        assert [e.event_type for e in k2_events] == [
            SecurityEventType.PHI_ACCESSED,
            SecurityEventType.ENCRYPTION_KEY_ROTATED,
        ]
        assert len(event_log.get_key_events(organization_id, "k1", limit=1)) == 1

    def test_key_events_scoped_to_organization(self, event_log, organization_id):
        event_log.record(SecurityEventType.PHI_ACCESSED, uuid.uuid4(), metadata={"keyId": "k1"})
        assert event_log.get_key_events(organization_id, "k1") == []

    def test_list_events_filters(self, event_log, staff_ctx, admin_ctx):
        event_log.record_for(staff_ctx, SecurityEventType.LOGIN_MFA_FAILURE, success=False)
        event_log.record_for(staff_ctx, SecurityEventType.LOGIN_MFA_SUCCESS)
        event_log.record_for(admin_ctx, SecurityEventType.LOGIN_MFA_SUCCESS)

        org = staff_ctx.organization_id
        assert len(event_log.list_events(org)) == 3
        assert len(event_log.list_events(org, user_id=staff_ctx.user_id)) == 2
        assert len(event_log.list_events(org, success=False)) == 1
        assert len(event_log.list_events(org, event_types=[SecurityEventType.LOGIN_MFA_SUCCESS])) == 2
