"""Runtime settings for the feature toggle engine.

Values are read from ``FEATURE_TOGGLE_*`` environment variables (or a
``.env`` file) through pydantic-settings.
"""

from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ToggleSettings(BaseSettings):
    ENVIRONMENT: str = "dev"  # dev|staging|prod
    APP_VERSION: Optional[str] = None

    # Local persistence (memory|file|redis)
    STORAGE_BACKEND: str = "memory"
    STORAGE_PATH: str = "data/feature_toggles.json"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_NAMESPACE: str = "feature_toggles"

    # Remote configuration source; empty disables remote fetches
    REMOTE_URL: str = ""
    REMOTE_TIMEOUT_SECONDS: float = 10.0
    REMOTE_HEADERS: Dict[str, str] = {}

    # Per-subscriber buffer for the update stream
    UPDATE_QUEUE_SIZE: int = 256

    # Admin API (python -m toggle_engine.main)
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(
        env_prefix="FEATURE_TOGGLE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


_settings_cache: Optional[ToggleSettings] = None


def get_settings() -> ToggleSettings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = ToggleSettings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
