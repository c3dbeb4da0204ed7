"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    database_url: str
    admin_api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    bank_transfer_webhook_secret: str = ""
    card_webhook_secret: str = ""
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    paid_access_days: int = 365
    referral_reward_credits: int = 50
    transactions_page_size_max: int = 100
    outbox_poll_interval_seconds: float = 0.5
    consumer_retry_backoff_seconds: float = 1.0
    list_limit_max: int = 100
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
