from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AliasChoices, AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="LexLine Realtime API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root logging level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:8081",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_user: str = Field(default="lexline", env="DB_USER")
    database_password: str = Field(default="lexline", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="lexline", env="DB_NAME")
    database_url_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "DATABASE_URL_OVERRIDE"),
        description="Full SQLAlchemy URL; takes precedence over the DB_* parts.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=5000, env="CHAT_MESSAGE_MAX_LENGTH")
    websocket_keepalive_timeout_seconds: float = Field(
        default=30, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )

    trial_duration_seconds: float = Field(
        default=180,
        env="TRIAL_DURATION_SECONDS",
        description="Length of the free trial that starts when a lawyer accepts.",
    )
    trial_warning_lead_seconds: float = Field(
        default=60,
        env="TRIAL_WARNING_LEAD_SECONDS",
        description="How long before the trial end the warning notification fires.",
    )
    stale_pending_max_age_hours: float = Field(
        default=24,
        env="STALE_PENDING_MAX_AGE_HOURS",
        description="PENDING consultations older than this are cancelled by maintenance.",
    )
    stale_sweep_interval_seconds: float = Field(
        default=6 * 60 * 60,
        env="STALE_SWEEP_INTERVAL_SECONDS",
        description="Interval of the periodic maintenance sweep; 0 disables it.",
    )

    call_ring_timeout_seconds: float = Field(default=60, env="CALL_RING_TIMEOUT_SECONDS")
    call_cleanup_grace_seconds: float = Field(default=30, env="CALL_CLEANUP_GRACE_SECONDS")
    rtc_app_id: str | None = Field(default=None, env="RTC_APP_ID")
    rtc_app_certificate: str | None = Field(default=None, env="RTC_APP_CERTIFICATE")
    rtc_token_ttl_seconds: int = Field(default=3600, env="RTC_TOKEN_TTL_SECONDS")

    openai_api_key: str | None = Field(default=None, env="OPENAI_API_KEY")
    moderation_enabled: bool = Field(default=True, env="MODERATION_ENABLED")
    moderation_model: str = Field(default="gpt-4o-mini", env="MODERATION_MODEL")
    moderation_timeout_seconds: float = Field(
        default=3,
        env="MODERATION_TIMEOUT_SECONDS",
        description="Moderation calls exceeding this budget are treated as allowed.",
    )
    summary_model: str = Field(default="gpt-4o-mini", env="SUMMARY_MODEL")

    push_notifications_enabled: bool = Field(
        default=False,
        env="PUSH_NOTIFICATIONS_ENABLED",
        description="Toggle Expo push notifications for consultation events.",
    )
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send",
        env="EXPO_PUSH_URL",
    )
    expo_access_token: str | None = Field(default=None, env="EXPO_ACCESS_TOKEN")
    push_timeout_seconds: float = Field(default=5, env="PUSH_TIMEOUT_SECONDS")

    payment_webhook_secret: str | None = Field(
        default=None,
        env="PAYMENT_WEBHOOK_SECRET",
        description="Shared secret for HMAC-SHA256 payment webhook signatures.",
    )
    payment_webhook_max_age_seconds: int = Field(default=300, env="PAYMENT_WEBHOOK_MAX_AGE_SECONDS")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("trial_warning_lead_seconds")
    @classmethod
    def validate_warning_lead(cls, value: float) -> float:
        if value < 0:
            raise ValueError("trial_warning_lead_seconds must be non-negative")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
