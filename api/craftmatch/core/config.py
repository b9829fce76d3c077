from functools import lru_cache

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "craftmatch-api"
    environment: str = "dev"
    log_level: str = "INFO"

    database_url: str | None = Field(default=None, validation_alias=AliasChoices("CM_DATABASE_URL", "DATABASE_URL"))
    database_pool_min_size: int = Field(default=1, ge=1)
    database_pool_max_size: int = Field(default=10, ge=1)

    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = Field(default=5.0, gt=0)

    confirmation_token_ttl_hours: int = Field(default=24, ge=1)
    message_edit_window_seconds: int = Field(default=300, ge=0)
    # Messages a user may send per rolling minute; 0 turns the limit off.
    message_rate_limit_per_minute: int = Field(default=50, ge=0)

    realtime_enabled: bool = True
    # NOTIFY channel shared by every API instance.
    realtime_channel: str = Field(default="craftmatch_realtime", pattern=r"^[a-z_][a-z0-9_]{0,62}$")

    resend_api_key: str | None = None
    resend_api_url: str = "https://api.resend.com"
    email_from: str = "Craftmatch <notifications@craftmatch.dev>"
    email_timeout_seconds: float = Field(default=5.0, gt=0)
    site_url: str | None = None
    unread_poll_timeout_seconds: float = Field(default=3.0, gt=0)

    otel_enabled: bool = True
    otel_service_name: str = "craftmatch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CM_", extra="ignore")

    @model_validator(mode="after")
    def _pool_bounds(self) -> "Settings":
        if self.database_pool_min_size > self.database_pool_max_size:
            raise ValueError("database_pool_min_size must not exceed database_pool_max_size")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
