"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Credential storage ---
    # Either a Fernet key or an arbitrary passphrase (hashed into one).
    token_encryption_key: str = ""

    # --- Outbound HTTP ---
    http_timeout_seconds: float = 30.0

    # --- Fitbit (OAuth 2.0) ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = ""

    # --- Google Fit (OAuth 2.0) ---
    google_fit_client_id: str = ""
    google_fit_client_secret: str = ""
    google_fit_redirect_uri: str = ""

    # --- Garmin (OAuth 1.0a) ---
    garmin_consumer_key: str = ""
    garmin_consumer_secret: str = ""
    garmin_callback_uri: str = ""

    # --- Withings (OAuth 2.0) ---
    withings_client_id: str = ""
    withings_client_secret: str = ""
    withings_redirect_uri: str = ""

    # --- Apple (Sign in with Apple client assertion) ---
    apple_health_client_id: str = ""
    apple_health_team_id: str = ""
    apple_health_key_id: str = ""
    apple_health_private_key: str = ""  # PEM, ES256 / P-256
    apple_health_redirect_uri: str = ""

    # --- Samsung Health (no public API) ---
    samsung_health_client_id: str = ""
    samsung_health_client_secret: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
