"""
CareVault Core Configuration
Environment-specific settings for the MFA and key management core.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    CareVault Configuration Settings
    """

    # Application
    APP_NAME: str = "CareVault"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "production"
    DEBUG: bool = False

    # Database
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)
    DATABASE_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("logs")
    LOG_TO_FILE: bool = True

    # Envelope encryption (base64 encoded 32-byte key, supplied by the secret store)
    ENCRYPTION_MASTER_KEY: Optional[str] = None
    DEFAULT_KEY_ALLOWED_ROLES: List[str] = ["OWNER", "ADMIN"]

    # MFA
    MFA_ISSUER_NAME: str = "CareVault"
    MFA_MAX_ATTEMPTS: int = 5
    MFA_LOCKOUT_MINUTES: int = 15
    MFA_BACKUP_CODES_COUNT: int = 10
    MFA_OTP_EXPIRY_MINUTES: int = 10
    MFA_RECOVERY_TOKEN_MINUTES: int = 30
    TOTP_VALID_WINDOW: int = 1  # steps before/after for clock drift
    TRUSTED_DEVICE_DAYS: int = 30

    # Collaborators
    NOTIFICATION_WORKERS: int = 2
    BCRYPT_ROUNDS: int = 12

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> str:
        return str(v).strip().lower()

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str) and v:
            return v
        # Default to SQLite for development
        return "sqlite:///./carevault.db"

    @field_validator("DEFAULT_KEY_ALLOWED_ROLES", mode="before")
    @classmethod
    def assemble_allowed_roles(cls, v: Any) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip().upper() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("MFA_MAX_ATTEMPTS", "MFA_LOCKOUT_MINUTES", "MFA_BACKUP_CODES_COUNT")
    @classmethod
    def ensure_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def expose_dev_secrets(self) -> bool:
        """Raw OTPs and recovery tokens are echoed back only in development."""
        return self.ENVIRONMENT == "development"

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
