# config.py — Validated application settings for TaskHub
# Settings are read once from the environment (and an optional .env file).
# A missing DATABASE_URL or an inconsistent OAuth/session setup aborts startup.

import logging
import secrets
from functools import lru_cache
from typing import List, Optional

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("taskhub.config")

DEV_ENVIRONMENTS = ("development", "test")


class ConfigurationError(RuntimeError):
    """Raised when the process environment cannot produce valid settings."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "TaskHub"
    APP_DESCRIPTION: str = "Collaborative task and project management API"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:5000,http://localhost:5173"

    # Database (required)
    DATABASE_URL: str
    SQL_ECHO: bool = False

    # Sessions
    SESSION_SECRET: str = ""
    SESSION_COOKIE_NAME: str = "taskhub_sid"
    SESSION_MAX_AGE_SECONDS: int = 7 * 24 * 60 * 60  # one week, no sliding renewal
    SESSION_COOKIE_SECURE: Optional[bool] = None
    MAX_SESSIONS_PER_USER: int = 10

    # Google OAuth
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_CALLBACK_URL: str = "http://localhost:5000/api/auth/google/callback"
    OAUTH_STATE_EXPIRE_SECONDS: int = 10 * 60
    OAUTH_SUCCESS_REDIRECT: str = "/"
    OAUTH_FAILURE_REDIRECT: str = "/login"

    # Access control
    ENFORCE_DELETE_OWNERSHIP: bool = True
    MIN_PASSWORD_LENGTH: int = 6

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if bool(self.GOOGLE_CLIENT_ID) != bool(self.GOOGLE_CLIENT_SECRET):
            raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set together")

        if not self.SESSION_SECRET:
            if self.ENVIRONMENT not in DEV_ENVIRONMENTS:
                raise ValueError("SESSION_SECRET must be set outside development")
            self.SESSION_SECRET = secrets.token_urlsafe(48)
            logger.warning("SESSION_SECRET not set. Generated an ephemeral secret; sessions will not survive a restart.")

        if self.SESSION_COOKIE_SECURE is None:
            self.SESSION_COOKIE_SECURE = self.ENVIRONMENT == "production"
        return self

    @property
    def google_oauth_enabled(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Build the settings once; raise ConfigurationError with a readable reason."""
    try:
        return Settings()
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err.get("loc", ())) or "settings"
            if err.get("type") == "missing":
                problems.append(f"{loc} is required")
            else:
                problems.append(f"{loc}: {err.get('msg')}")
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems)) from e
