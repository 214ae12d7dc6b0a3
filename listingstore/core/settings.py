"""Listingstore settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``SHARD_MAX_ROWS`` → ``shard_max_rows``).

Typical usage::

    from listingstore.core.settings import Settings

    settings = Settings()                       # loads from env + .env
    print(settings.store_path_resolved)
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from listingstore.core.exceptions import ConfigError

__all__ = ["Settings", "load_settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).

    Defaults mirror the limits the store was designed around: 50 records per
    overflow segment, 50 000 rows per postal shard, and one million rows for
    the whole store.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Locations
    # ------------------------------------------------------------------
    store_path: str = Field(
        default="master-listings.xlsx",
        description="Path of the canonical store workbook.",
    )
    backup_dir: str = Field(
        default="backups",
        description="Directory receiving timestamped store backups.",
    )
    spill_dir: str = Field(
        default="temp-data",
        description="Directory holding overflow segments during a session.",
    )
    spill_prefix: str = Field(
        default="temp-scrape-",
        min_length=1,
        description="File name prefix of overflow segments.",
    )
    snapshot_dir: str = Field(
        default=".",
        description="Directory receiving per-session snapshot workbooks.",
    )

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------
    spill_buffer_threshold: int = Field(
        default=50,
        ge=1,
        description="Records buffered in memory before a segment is flushed.",
    )
    shard_max_rows: int = Field(
        default=50_000,
        ge=1,
        description="Maximum rows accepted into one shard.",
    )
    store_safe_max_rows: int = Field(
        default=1_000_000,
        ge=1,
        description="Maximum rows in the whole store before a rebuild is forced.",
    )

    # ------------------------------------------------------------------
    # Health thresholds
    # ------------------------------------------------------------------
    health_safe_max_rows_per_shard: int = Field(
        default=1_000_000,
        ge=1,
        description="Rows above which a single shard is reported as oversized.",
    )
    health_invalid_row_ratio: float = Field(
        default=0.10,
        gt=0.0,
        le=1.0,
        description="Per-shard ratio of invalid to valid rows tolerated.",
    )
    health_empty_row_ratio: float = Field(
        default=0.05,
        gt=0.0,
        le=1.0,
        description="Store-wide ratio of empty rows to total rows tolerated.",
    )
    health_capacity_warning_ratio: float = Field(
        default=0.80,
        gt=0.0,
        le=1.0,
        description="Fraction of store_safe_max_rows that triggers a capacity warning.",
    )

    # ------------------------------------------------------------------
    # Session behaviour
    # ------------------------------------------------------------------
    store_write_interval: int = Field(
        default=0,
        ge=0,
        description="Accepted records between intermediate store writes (0 = end of session only).",
    )
    rebuild_on_startup: bool = Field(
        default=True,
        description="Rebuild an unhealthy store before ingesting into it.",
    )
    session_snapshot: bool = Field(
        default=True,
        description="Write a workbook holding only the records accepted this session.",
    )
    lock_timeout: float = Field(
        default=10.0,
        ge=0.0,
        description="Seconds to wait for another session to release the store.",
    )
    io_retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts made to replace a file before giving up.",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("store_path")
    @classmethod
    def _validate_store_suffix(cls, v: str) -> str:
        if Path(v).suffix.lower() != ".xlsx":
            raise ValueError(f"store_path must name an .xlsx workbook, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_capacities(self) -> Settings:
        """Ensure a single shard can never be larger than the whole store."""
        if self.shard_max_rows > self.store_safe_max_rows:
            raise ValueError(
                f"shard_max_rows ({self.shard_max_rows}) "
                f"> store_safe_max_rows ({self.store_safe_max_rows})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def store_path_resolved(self) -> Path:
        """Return the store path as a resolved :class:`~pathlib.Path`."""
        return Path(self.store_path).resolve()

    @property
    def backup_dir_resolved(self) -> Path:
        return Path(self.backup_dir).resolve()

    @property
    def spill_dir_resolved(self) -> Path:
        return Path(self.spill_dir).resolve()

    @property
    def snapshot_dir_resolved(self) -> Path:
        return Path(self.snapshot_dir).resolve()


def load_settings(**overrides: object) -> Settings:
    """Build :class:`Settings`, raising :class:`ConfigError` on invalid values.

    *overrides* take precedence over the environment (CLI flags use this).
    """
    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
