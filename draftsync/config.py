"""Configuration for the draft sync engine.

Settings are read from ``DRAFTSYNC_*`` environment variables (or a ``.env``
file) and can be overridden by passing keyword arguments.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SyncSettings(BaseSettings):
    """Tunable limits and endpoints for draft synchronization."""

    model_config = SettingsConfigDict(
        env_prefix="DRAFTSYNC_", env_file=".env", extra="ignore"
    )

    # Offline queue
    max_queue_size: int = Field(100, ge=1)
    max_retry_count: int = Field(3, ge=0)
    max_backoff_seconds: float = Field(30.0, gt=0)
    expiry_hours: float = Field(24.0, gt=0)
    startup_flush_delay: float = Field(2.0, ge=0)

    # Save path
    save_max_retries: int = Field(3, ge=0)
    save_base_delay: float = Field(1.0, ge=0)
    remote_timeout: float = Field(10.0, gt=0)

    # Load cache
    cache_ttl_seconds: float = Field(30.0, ge=0)
    collection: str = "workflow_drafts"

    # Local storage
    storage_path: Path = Field(default_factory=lambda: Path.home() / ".draftsync")
    storage_capacity_bytes: int = Field(5 * 1024 * 1024, gt=0)

    # Remote store
    remote_url: Optional[str] = None
    auth_token: Optional[str] = None
    verify_ssl: bool = True

    log_level: str = "INFO"


def configure_logging(settings: SyncSettings | None = None) -> None:
    """Apply the package's standard logging format at the configured level."""
    settings = settings or SyncSettings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
