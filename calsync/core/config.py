# calsync/core/config.py
from typing import List, Literal, Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Environment settings
    ENVIRONMENT: Literal["development", "testing", "production"] = "development"

    # API settings
    API_V1_STR: str = "/api/v1"
    SERVER_HOST: str = "http://localhost:8000"

    # CORS settings
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:3000",
    ]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None  # Path to log file if file logging is enabled
    LOG_THROTTLE_SECONDS: int = 60

    # Database settings
    SQLALCHEMY_DATABASE_URI: str = "sqlite:///./calsync.db"

    # Fernet key for tokens and CalDAV passwords at rest
    TOKEN_ENCRYPTION_KEY: str = ""

    # Outbound call timeouts (in seconds)
    CONNECT_TIMEOUT: float = 10
    REQUEST_TIMEOUT: float = 30
    DISCOVERY_TIMEOUT: float = 15

    # Token refresh
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300
    TOKEN_REFRESH_THRESHOLD_SECONDS: int = 2 * 60 * 60
    TOKEN_REFRESH_MAX_ATTEMPTS: int = 8
    TOKEN_REFRESH_SWEEP_SECONDS: int = 15 * 60
    REFRESH_LOCK_TIMEOUT_SECONDS: float = 90
    REFRESH_LOCK_WAIT_SECONDS: float = 30
    REFRESH_LOCK_POLL_SECONDS: float = 0.2

    # Multi-calendar fetch
    MAX_CALENDAR_FETCH_CONCURRENCY: int = 5
    CALENDAR_FETCH_TIMEOUT: float = 45

    # Health monitoring
    HEALTH_MIN_BACKOFF_MS: int = 5 * 60 * 1000
    HEALTH_MAX_BACKOFF_MS: int = 60 * 60 * 1000
    HEALTH_JITTER_MS: int = 30 * 1000
    HEALTH_CHECK_INTERVAL_SECONDS: int = 60
    HEALTH_UNHEALTHY_THRESHOLD: int = 3
    HEALTH_RECOVERY_THRESHOLD: int = 2

    # Background refresh sweep and health scheduler; tests turn them off
    BACKGROUND_JOBS_ENABLED: bool = True

    # Which active integration becomes primary when the primary goes away
    PRIMARY_PROMOTION_ORDER: Literal["oldest", "newest"] = "oldest"

    # Google
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_CLIENT_SECRETS_JSON: str = ""

    # Outlook / Microsoft Graph
    OUTLOOK_CLIENT_ID: str = ""
    OUTLOOK_CLIENT_SECRET: str = ""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )


# Create settings instance
settings = Settings()
