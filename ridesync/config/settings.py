import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using an absolute path for SQLite when DATABASE_URL is unset.

    SQLite is only meant for local development; production deployments
    must point DATABASE_URL at PostgreSQL.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info("Using DATABASE_URL from environment")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "ridesync.db"
    db_url = f"sqlite:///{db_path.resolve()}"
    logger.warning(f"Using SQLite database (LOCAL DEV ONLY): {db_url}")
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str = Field(default="", validation_alias="LOG_FILE")
    log_rotation: str = Field(default="10 MB", validation_alias="LOG_ROTATION")
    log_retention: str = Field(default="7 days", validation_alias="LOG_RETENTION")

    auth_secret_key: str = Field(default="", validation_alias="AUTH_SECRET_KEY")
    auth_algorithm: str = Field(default="HS256", validation_alias="AUTH_ALGORITHM")

    strava_client_id: str = Field(default="", validation_alias="STRAVA_CLIENT_ID")
    strava_client_secret: str = Field(default="", validation_alias="STRAVA_CLIENT_SECRET")
    strava_token_url: str = Field(default="https://www.strava.com/oauth/token", validation_alias="STRAVA_TOKEN_URL")
    strava_api_base_url: str = Field(default="https://www.strava.com/api/v3", validation_alias="STRAVA_API_BASE_URL")
    strava_webhook_verify_token: str = Field(default="", validation_alias="STRAVA_WEBHOOK_VERIFY_TOKEN")

    garmin_client_id: str = Field(default="", validation_alias="GARMIN_CLIENT_ID")
    garmin_client_secret: str = Field(default="", validation_alias="GARMIN_CLIENT_SECRET")
    garmin_token_url: str = Field(
        default="https://diauth.garmin.com/di-oauth2-service/oauth/token",
        validation_alias="GARMIN_TOKEN_URL",
    )
    garmin_api_base_url: str = Field(default="https://apis.garmin.com/wellness-api", validation_alias="GARMIN_API_BASE")

    token_refresh_buffer_seconds: int = Field(
        default=300,
        validation_alias="TOKEN_REFRESH_BUFFER_SECONDS",
        description="Refresh access tokens this many seconds before they expire",
    )
    garmin_backfill_chunk_days: int = Field(
        default=30,
        validation_alias="GARMIN_BACKFILL_CHUNK_DAYS",
        description="Maximum span of a single Garmin backfill request",
    )
    strava_backfill_page_size: int = Field(default=50, validation_alias="STRAVA_BACKFILL_PAGE_SIZE")
    strava_backfill_max_pages: int = Field(
        default=10,
        validation_alias="STRAVA_BACKFILL_MAX_PAGES",
        description="Hard page cap for a synchronous Strava backfill",
    )
    backfill_idle_minutes: int = Field(default=10, validation_alias="BACKFILL_IDLE_MINUTES")
    backfill_stale_minutes: int = Field(default=30, validation_alias="BACKFILL_STALE_MINUTES")
    backfill_stuck_hours: int = Field(default=24, validation_alias="BACKFILL_STUCK_HOURS")
    backfill_sweep_interval_minutes: int = Field(default=5, validation_alias="BACKFILL_SWEEP_INTERVAL_MINUTES")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("strava_client_id", "garmin_client_id")
    @classmethod
    def validate_client_ids(cls, value: str) -> str:
        """Warn when provider credentials are missing.

        Empty values are allowed for local development; token refresh for
        that provider will fail until they are configured.
        """
        if not value:
            logger.warning("A provider OAuth client id is not set. Token refresh for that provider will not work.")
        return value

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
