from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./rac_rewards.db"

    # Logging and tracing
    log_level: str = "INFO"
    log_json: bool = True
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Operator API security (catalog publishing, minting controls, telemetry)
    admin_api_key: str = ""

    # External ownership ledger (non-custodial verification)
    ownership_ledger_url: str | None = None
    ownership_ledger_api_key: str | None = None
    ownership_ledger_timeout_seconds: float = 5.0
    ownership_ledger_max_attempts: int = 3
    ownership_ledger_base_backoff_seconds: float = 0.5
    ownership_ledger_backoff_multiplier: float = 2.0
    ownership_ledger_max_backoff_seconds: float = 5.0

    # Optimistic concurrency on membership instances
    membership_store_max_attempts: int = 3

    # Product line handed to every new member by assign_free_membership
    free_membership_slug: str = "pearl-white"

    # Lifecycle notifications
    membership_notifications_enabled: bool = False
    membership_notification_bcc: list[str] = Field(default_factory=list)
    member_directory_url: str | None = None
    member_directory_api_key: str | None = None

    @field_validator("membership_notification_bcc", mode="before")
    @classmethod
    def _parse_recipient_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Email / notification settings
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    smtp_sender_email: str | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
