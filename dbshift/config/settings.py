"""
Typed migration settings with environment variable support.
"""

from pathlib import Path
import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class MigrationSettings(BaseSettings):
    """Settings consumed by the migration manager."""

    model_config = SettingsConfigDict(
        env_prefix="DBSHIFT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database settings
    database_url: str = "sqlite+aiosqlite:///dbshift.db"

    # Migration settings
    migrations_dir: Path = Path("migrations")
    history_table: str = "migrations"
    history_collection: str = "migrations"
    transactional: bool = True

    # Lock settings
    lock_enabled: bool = True
    lock_timeout: float = Field(default=30.0, gt=0)
    lock_poll_interval: float = Field(default=0.5, gt=0)
    lock_stale_after: float = Field(default=300.0, gt=0)

    log_level: str = "INFO"

    @field_validator("history_table", "history_collection")
    @classmethod
    def _check_identifier(cls, value: str) -> str:
        # Interpolated into SQL statements, so only plain identifiers are allowed
        if not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"'{value}' is not a valid table/collection identifier")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {list(VALID_LOG_LEVELS)}")
        return value
