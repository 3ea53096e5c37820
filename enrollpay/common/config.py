"""Central environment-driven settings for the checkout service.

The service process loads this once at startup. Provider credentials and
schema-repair behavior are controlled by environment variables (see
`.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "enrollment-checkout"
    log_level: str = "INFO"
    database_dsn: str
    redis_url: str = ""
    otel_exporter_otlp_endpoint: str = ""
    runtime_env: str = "development"
    payment_provider_mode: str = "mock"
    rede_pv: str = ""
    rede_token: str = ""
    rede_env: str = "sandbox"
    rede_timeout_ms: str = "15000"
    rede_soft_descriptor: str = ""
    checkout_rate_limit_window_ms: int = 60_000
    checkout_rate_limit_max: int = 25
    idempotency_schema_cooldown_seconds: float = 300.0
    idempotency_schema_auto_repair: bool = True
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_production_runtime(self) -> bool:
        return self.runtime_env.strip().lower() in {"production", "prod"}


settings = CommonSettings()
