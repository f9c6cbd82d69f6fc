from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_STATE_DIR = Path.home() / ".council_gateway"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Routing
    default_provider: str = "openai"

    # HTTP
    request_timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per attempt
    retry_max_delay: float = 30.0

    # Council
    council_max_parallel: int = 4

    # Pricing estimates use this when a request sets no max_tokens
    default_max_output_tokens: int = 2048

    # Long-running operations (video)
    video_poll_interval_seconds: float = 5.0
    video_max_poll_attempts: int = 240  # ~20 minutes at the default interval

    # Media at or above this size goes through resumable upload
    inline_media_limit_bytes: int = 20 * 1024 * 1024

    # Persisted state
    registry_path: Path = _STATE_DIR / "registry.json"
    budget_path: Path = _STATE_DIR / "budget.json"
    org_registry_path: Path | None = None

    # Registry sources
    openrouter_models_url: str = "https://openrouter.ai/api/v1/models"
    litellm_base_url: str = ""  # empty = skip LiteLLM catalog

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings() -> None:
    """Validate numeric limits. Called once by entry points before dispatching."""
    errors: list[str] = []

    if settings.council_max_parallel < 1:
        errors.append("COUNCIL_MAX_PARALLEL must be at least 1")
    if settings.connect_timeout_seconds > settings.request_timeout_seconds:
        errors.append("CONNECT_TIMEOUT_SECONDS must not exceed REQUEST_TIMEOUT_SECONDS")
    if settings.video_max_poll_attempts < 1:
        errors.append("VIDEO_MAX_POLL_ATTEMPTS must be at least 1")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
