"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables are prefixed with ``HEALTHSYNC_`` (e.g. ``HEALTHSYNC_LOG_LEVEL``).
    """

    # --- App ---
    app_name: str = "healthsync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Sync ---
    anchor_store_dir: str = ".healthsync/anchors"
    device_timezone: str = "UTC"  # IANA name, e.g. Europe/Berlin
    max_concurrent_resources: int = 4
    sync_config_path: str | None = None  # defaults to the bundled sync_config.yaml

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "HEALTHSYNC_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
