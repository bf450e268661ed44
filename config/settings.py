"""WASIM v1.0 – Application Configuration.

@ARCH/@BACKEND: Pydantic Settings
Loads from .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8000
    cors_allowed_origins: str = "http://localhost:3000"

    # --- Redis (message store) ---
    redis_url: str = "redis://127.0.0.1:6379/0"
    store_key_prefix: str = "wasim"
    store_list_limit: int = 500

    # --- Fake WhatsApp Business account (payload metadata) ---
    wa_business_account_id: str = "1195530322139282"
    wa_phone_number_id: str = "895152937018567"
    wa_display_phone_number: str = "5491165333359"
    phone_prefix: str = "54911"  # AR mobile (+54 9 11)
    wa_app_secret: str = ""  # X-Hub-Signature-256: signs outbound webhooks, required on replies when set

    # --- Stress test bounds & defaults ---
    stress_max_users: int = 10_000_000
    stress_max_messages_per_user: int = 10
    stress_wait_deadline_ms: int = 10 * 60 * 1000
    stress_poll_interval_ms: int = 100
    stress_dispatch_concurrency: int = 100
    stress_persist_batch_size: int = 500
    stress_results_preview_limit: int = 1000

    # --- Outbound webhook calls ---
    webhook_timeout_seconds: float = 15.0


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
