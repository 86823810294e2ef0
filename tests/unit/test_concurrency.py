"""
Unit tests for compare-and-swap updates under interleaved sessions.

Two sessions share one file-backed SQLite database, so each holds its own
identity map and can act on state the other has already changed.
"""
import pyotp
import pytest
from sqlalchemy.orm import sessionmaker

from carevault.database.models import Base, EncryptionKey, KeyPurpose, KeyStatus, MFAConfiguration, MFAMethod, User
from carevault.database.session import create_db_engine
from carevault.database.types import Role
from carevault.security.context import SecurityContext
from carevault.security.exceptions import ConflictError, RateLimitedError, UnauthorizedError
from carevault.security.key_manager import EncryptionKeyManager
from carevault.security.mfa_system import MFASystemManager


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'carevault.db'}", echo=False)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sessions(file_engine):
    """Two independent sessions on the same database"""
    factory = sessionmaker(autoflush=True, expire_on_commit=False, bind=file_engine)
    first, second = factory(), factory()
    try:
        yield first, second
    finally:
        first.close()
        second.close()


@pytest.fixture
def fresh_session(file_engine):
    """Reads committed state without any cached objects"""
    session = sessionmaker(bind=file_engine)()
    try:
        yield session
    finally:
        session.close()


def create_user(db, organization_id, role, password_hasher, password):
    user = User(
        organization_id=organization_id,
        email=f"{role.value.lower()}@clinic.example",
        role=role,
        hashed_password=password_hasher.hash_password(password),
    )
    db.add(user)
    db.commit()
    return SecurityContext(
        user_id=user.id,
        organization_id=organization_id,
        role=role,
        email=user.email,
        ip_address="203.0.113.10",
    )


def wrong_totp(secret, clock):
    totp = pyotp.TOTP(secret)
    accepted = {totp.at(clock.now, offset) for offset in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in accepted)


class TestMFAConcurrency:

    @pytest.fixture
    def managers(self, sessions, password_hasher, dispatcher, clock, dev_settings):
        return [
            MFASystemManager(
                db,
                password_hasher=password_hasher,
                dispatcher=dispatcher,
                clock=clock,
                config=dev_settings,
            )
            for db in sessions
        ]

    @pytest.fixture
    def enrolled(self, sessions, managers, organization_id, password_hasher, password, clock):
        """Staff user with verified TOTP, enrolled through the first session"""
        ctx = create_user(sessions[0], organization_id, Role.STAFF, password_hasher, password)
        setup = managers[0].setup(ctx, MFAMethod.TOTP)
        managers[0].verify_setup(ctx, setup.mfa_id, pyotp.TOTP(setup.secret).at(clock.now))
        clock.advance(seconds=90)
        return ctx, setup

    def test_stale_failure_counter_still_locks(self, sessions, managers, enrolled, fresh_session, clock):
        first_db, second_db = sessions
        ctx, setup = enrolled

        config = first_db.get(MFAConfiguration, setup.mfa_id)
        config.failed_attempts = 4
        first_db.commit()
        assert second_db.get(MFAConfiguration, setup.mfa_id).failed_attempts == 4

        with pytest.raises(UnauthorizedError) as first_error:
            managers[0].verify_at_login(ctx, wrong_totp(setup.secret, clock))
        assert first_error.value.details["remaining_attempts"] == 0

        # the second session still believes four attempts were used
        with pytest.raises(UnauthorizedError) as second_error:
            managers[1].verify_at_login(ctx, wrong_totp(setup.secret, clock))
        assert second_error.value.details["remaining_attempts"] == 0

        stored = fresh_session.get(MFAConfiguration, setup.mfa_id)
        assert stored.failed_attempts == 6
        assert stored.locked_until == clock.now + managers[0].lockout_duration

        with pytest.raises(RateLimitedError):
            managers[1].verify_at_login(ctx, pyotp.TOTP(setup.secret).at(clock.now))

    def test_backup_code_consumed_once_across_sessions(self, sessions, managers, enrolled, fresh_session):
        first_db, second_db = sessions
        ctx, setup = enrolled
        code = setup.backup_codes[0]

        # both sessions hold the code as unused
        assert second_db.get(MFAConfiguration, setup.mfa_id).backup_codes_used == 0

        assert managers[0].verify_at_login(ctx, code).used_backup_code is True

        with pytest.raises(UnauthorizedError):
            managers[1].verify_at_login(ctx, code)

        stored = fresh_session.get(MFAConfiguration, setup.mfa_id)
        assert stored.backup_codes_used == 1
        assert stored.failed_attempts == 1


class TestKeyRotationConcurrency:

    def test_second_rotation_conflicts(
        self, sessions, organization_id, password_hasher, password, clock, master_key, fresh_session
    ):
        first_db, second_db = sessions
        managers = [
            EncryptionKeyManager(db, master_key_source=lambda: master_key, clock=clock)
            for db in sessions
        ]
        owner = create_user(first_db, organization_id, Role.OWNER, password_hasher, password)
        key_identifier = managers[0].create_key(owner, KeyPurpose.PHI_ENCRYPTION)["key_identifier"]

        # both sessions see the key as ACTIVE
        assert second_db.query(EncryptionKey).one().status == KeyStatus.ACTIVE

        rotated = managers[0].rotate_key(owner, key_identifier)

        with pytest.raises(ConflictError):
            managers[1].rotate_key(owner, key_identifier)

        statuses = {
            key.key_identifier: key.status
            for key in fresh_session.query(EncryptionKey).all()
        }
        assert statuses == {
            key_identifier: KeyStatus.ROTATING,
            rotated["new_key_identifier"]: KeyStatus.ACTIVE,
        }
