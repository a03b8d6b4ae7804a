from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Routing configuration source
    config_source: str = "file"  # file | http
    config_path: str = "routing.json"
    config_url: str = ""
    config_token: str = ""
    config_refresh_seconds: float = 30.0

    # Result cache
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 10_000

    # Dispatch
    attempt_timeout_seconds: float = 30.0
    request_deadline_seconds: float = 90.0

    # Vendor credentials: JSON object, e.g. {"openai": "sk-...", "gemini": "..."}
    provider_api_keys: dict[str, str] = {}

    # Usage ledger backing store (empty = in-memory only)
    usage_db_url: str = ""
    usage_flush_seconds: float = 15.0

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.config_source not in ("file", "http"):
        errors.append(f"CONFIG_SOURCE must be 'file' or 'http', got '{settings.config_source}'")

    if settings.config_source == "http" and not settings.config_url:
        errors.append("CONFIG_URL must be set when CONFIG_SOURCE=http")

    if settings.attempt_timeout_seconds <= 0 or settings.request_deadline_seconds <= 0:
        errors.append("ATTEMPT_TIMEOUT_SECONDS and REQUEST_DEADLINE_SECONDS must be positive")

    if settings.cache_ttl_seconds <= 0:
        errors.append("CACHE_TTL_SECONDS must be positive")

    if settings.app_env == "production":
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.usage_db_url:
            errors.append("USAGE_DB_URL must be set in production (usage would only live in memory)")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
