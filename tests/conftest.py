"""
PyTest configuration and shared fixtures for the CareVault test suite.
"""
import os

# keep test runs from writing rotating log files
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENVIRONMENT", "development")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from carevault.core.config import Settings
from carevault.core.crypto import generate_encryption_key, decode_key
from carevault.database.models import Base, User
from carevault.database.types import Role
from carevault.security.audit import SecurityEventLog
from carevault.security.collaborators import BcryptPasswordHasher, NotificationDispatcher
from carevault.security.context import SecurityContext
from carevault.security.key_manager import EncryptionKeyManager
from carevault.security.mfa_system import MFASystemManager
from carevault.security.policy import PolicyManager

PASSWORD = "correct horse battery"
CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FrozenClock:
    """Injectable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel:
    """Notification channel that keeps every code it is asked to send"""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    def send_otp(self, destination: str, code: str) -> None:
        self.sent.append((destination, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture
def test_db():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_db) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(autoflush=True, expire_on_commit=False, bind=test_db)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def dispatcher(channel) -> NotificationDispatcher:
    # no executor: delivery runs inline so tests can read the code
    return NotificationDispatcher(channel)


@pytest.fixture
def password_hasher() -> BcryptPasswordHasher:
    return BcryptPasswordHasher(rounds=4)


@pytest.fixture
def password() -> str:
    """Password every test user is created with"""
    return PASSWORD


@pytest.fixture
def dev_settings() -> Settings:
    return Settings(ENVIRONMENT="development", LOG_TO_FILE=False)


@pytest.fixture
def organization_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_context(db_session, password_hasher, organization_id):
    """Create a user with the given role and return its SecurityContext."""

    def _make(
        role: Role = Role.STAFF,
        organization: uuid.UUID = None,
        ip_address: str = "203.0.113.10",
        user_agent: str = CHROME_WINDOWS_UA,
    ) -> SecurityContext:
        org = organization or organization_id
        user = User(
            organization_id=org,
            email=f"{role.value.lower()}-{uuid.uuid4().hex[:8]}@clinic.example",
            role=role,
            hashed_password=password_hasher.hash_password(PASSWORD),
        )
        db_session.add(user)
        db_session.commit()
        return SecurityContext(
            user_id=user.id,
            organization_id=org,
            role=role,
            email=user.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    return _make


@pytest.fixture
def owner_ctx(make_context) -> SecurityContext:
    return make_context(Role.OWNER)


@pytest.fixture
def admin_ctx(make_context) -> SecurityContext:
    return make_context(Role.ADMIN)


@pytest.fixture
def provider_ctx(make_context) -> SecurityContext:
    return make_context(Role.PROVIDER)


@pytest.fixture
def staff_ctx(make_context) -> SecurityContext:
    return make_context(Role.STAFF)


@pytest.fixture
def event_log(db_session, clock) -> SecurityEventLog:
    return SecurityEventLog(db_session, clock=clock)


@pytest.fixture
def policy(db_session, event_log, clock) -> PolicyManager:
    return PolicyManager(db_session, event_log=event_log, clock=clock)


@pytest.fixture
def mfa(db_session, password_hasher, dispatcher, policy, event_log, clock, dev_settings) -> MFASystemManager:
    return MFASystemManager(
        db_session,
        password_hasher=password_hasher,
        dispatcher=dispatcher,
        policy=policy,
        event_log=event_log,
        clock=clock,
        config=dev_settings,
    )


@pytest.fixture
def master_key() -> bytes:
    return decode_key(generate_encryption_key())


@pytest.fixture
def key_manager(db_session, policy, event_log, clock, master_key) -> EncryptionKeyManager:
    return EncryptionKeyManager(
        db_session,
        policy=policy,
        event_log=event_log,
        master_key_source=lambda: master_key,
        clock=clock,
    )
