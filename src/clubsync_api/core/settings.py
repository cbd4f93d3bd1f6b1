from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./clubsync.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "clubsync-default"
    celery_beat_enabled: bool = False

    # Tracing (standard OTEL_* variable names)
    otel_service_name: str = "clubsync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: Annotated[dict[str, str], NoDecode] = Field(default_factory=dict)

    # Internal API security (cron trigger + operator endpoints)
    cron_api_key: str = ""

    # CRM client
    crm_provider: Literal["memory", "http"] = "memory"
    crm_api_base_url: str = "http://localhost:9000/v1"
    crm_api_token: str = ""
    crm_tenant: str = ""
    crm_timeout_seconds: float = 15.0

    # CRM sync queue processor
    crm_sync_worker_enabled: bool = False
    crm_sync_poll_interval_seconds: int = 60
    crm_sync_batch_size: int = 50
    crm_sync_max_attempts: int = Field(default=5, ge=1)
    crm_sync_retry_base_delay_seconds: int = Field(default=60, ge=1)
    crm_sync_retry_max_delay_seconds: int = Field(default=1800, ge=1)
    crm_sync_stale_claim_seconds: int = Field(default=15 * 60, ge=60)
    crm_sync_task_queue: str = "crm-sync"

    # Enrollment expiration sweep
    enrollment_expiration_worker_enabled: bool = False
    enrollment_expiration_interval_seconds: int = 60 * 60

    @field_validator("crm_api_base_url", mode="after")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("otel_exporter_otlp_headers", mode="before")
    @classmethod
    def _parse_otlp_headers(cls, value: object) -> object:
        """Accept the OTLP ``key=value,key2=value2`` header format."""
        if not isinstance(value, str):
            return value
        headers: dict[str, str] = {}
        for pair in value.split(","):
            key, sep, item = pair.partition("=")
            if sep and key.strip():
                headers[key.strip()] = item.strip()
        return headers


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
