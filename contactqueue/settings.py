"""Process-wide configuration loaded from the environment."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Static configuration, read once at process start.

    Every field can be overridden with a ``QUEUE_``-prefixed environment
    variable or a ``.env`` file, e.g. ``QUEUE_BATCH_SIZE=50``.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUEUE_",
        env_file=".env",
        extra="ignore",
    )

    data_dir: Path = Path(".contactqueue")

    # Batch processing
    batch_size: int = Field(default=25, ge=1)
    max_concurrency: int = Field(default=5, ge=1)
    max_runtime: float = Field(default=270.0, gt=0)  # seconds
    runtime_safety_margin: float = Field(default=2.0, ge=0)  # seconds
    item_timeout: float = Field(default=10.0, gt=0)  # per-item ceiling, seconds

    # Retries
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=60.0, gt=0)  # seconds
    retry_max_delay: float = Field(default=3600.0, gt=0)  # seconds

    # Maintenance and alerting
    stalled_threshold_minutes: int = Field(default=30, ge=1)
    stalled_alert_hours: float = Field(default=1.0, gt=0)
    pending_threshold: int = Field(default=100, ge=0)
    completed_retention_days: int = Field(default=30, ge=1)

    # CRM write-back
    output_field_prefix: str = "um_"
    check_version: str = "2.0.0"

    # "package.module:factory" returning a Collaborators bundle
    collaborators: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    betterstack_source_token: Optional[str] = None
    betterstack_ingest_host: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get or create the settings instance."""
    return Settings()
