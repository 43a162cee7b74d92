"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "StepSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/stepsync"
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Fitbit ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""  # also the HMAC key for X-Fitbit-Signature
    fitbit_subscriber_verification_code: str = ""
    fitbit_subscriber_id: str = ""  # optional X-Fitbit-Subscriber-Id
    fitbit_api_base: str = "https://api.fitbit.com"
    fitbit_token_url: str = "https://api.fitbit.com/oauth2/token"
    http_timeout_seconds: float = 10.0

    # --- Background sync ---
    scheduler_enabled: bool = False  # run queue worker + hourly poller in-process

    # --- Internal operations API ---
    internal_api_token: str = ""  # empty disables /api/v1/internal

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
