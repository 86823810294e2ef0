"""
CareVault Collaborators
Password hashing and outbound notification interfaces used by the security core.
"""

import atexit
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Optional, Protocol

import bcrypt

from carevault.core.config import settings
from carevault.core.crypto import mask_for_display
from carevault.core.logging import LoggerMixin, get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def verify_password(self, plaintext: str, hashed: str) -> bool:
        ...

    def hash_password(self, plaintext: str) -> str:
        ...


class BcryptPasswordHasher:
    """Password hashing using bcrypt"""

    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or settings.BCRYPT_ROUNDS

    def verify_password(self, plaintext: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # malformed stored hash
            return False

    def hash_password(self, plaintext: str) -> str:
        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")


class NotificationChannel(Protocol):
    def send_otp(self, destination: str, code: str) -> None:
        ...


class LoggingNotificationChannel(LoggerMixin):
    """Stand-in channel that records deliveries without the code or full destination"""

    def send_otp(self, destination: str, code: str) -> None:
        self.logger.info(f"One-time code dispatched to {mask_for_display(destination)}")


class NotificationDispatcher(LoggerMixin):
    """
    Fire-and-forget delivery of one-time codes.
    Delivery failures are logged and never reach the caller.
    """

    def __init__(self, channel: NotificationChannel, executor: Optional[Executor] = None):
        self.channel = channel
        self.executor = executor

    def dispatch(self, destination: str, code: str) -> None:
        if self.executor is None:
            self._deliver(destination, code)
        else:
            self.executor.submit(self._deliver, destination, code)

    def _deliver(self, destination: str, code: str) -> None:
        try:
            self.channel.send_otp(destination, code)
        except Exception as e:
            self.logger.error(
                f"Notification delivery to {mask_for_display(destination)} failed: {e}"
            )


_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """Process-wide dispatcher backed by a small thread pool"""
    global _dispatcher
    if _dispatcher is None:
        executor = ThreadPoolExecutor(
            max_workers=settings.NOTIFICATION_WORKERS,
            thread_name_prefix="carevault-notify",
        )
        atexit.register(executor.shutdown, wait=True)
        _dispatcher = NotificationDispatcher(LoggingNotificationChannel(), executor)
        logger.debug("Notification dispatcher started")
    return _dispatcher
