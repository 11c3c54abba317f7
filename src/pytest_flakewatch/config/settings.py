from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """
    Configuration settings for pytest-flakewatch.

    Values can be overridden by environment variables with PYTEST_FLAKEWATCH__ prefix.
    e.g. PYTEST_FLAKEWATCH__DATA_DIR=/var/ci/history
    """
    model_config = SettingsConfigDict(
        env_prefix="PYTEST_FLAKEWATCH__",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = Field(
        default=False,
        description="Record builds and report reliability. Can also be turned on with --flakewatch."
    )

    # Storage
    data_dir: str = Field(
        default="./test-results/history",
        description="Directory holding the persisted test data snapshot."
    )
    max_history_days: int = Field(
        default=7,
        description="Retention window in days for day-bucketed historical metrics."
    )
    backup_enabled: bool = Field(
        default=True,
        description="Whether to keep a backup copy of the previous snapshot on save."
    )

    # Build identity
    suite_name: str = Field(default="pytest", description="Suite name recorded for each build.")
    build_number: Optional[int] = Field(
        default=None,
        description="Build number of this run. Defaults to one past the highest persisted build."
    )
    environment: str = Field(
        default="development",
        description="Environment label written into snapshot metadata."
    )

    # Reporting
    report_path: Optional[str] = Field(
        default=None,
        description="Path to write a JSON reliability report. Can be overridden by CLI."
    )


def get_settings() -> Settings:
    """Retrieve application settings."""
    return Settings()
