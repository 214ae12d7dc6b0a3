"""Shared pytest fixtures and configuration for the listingstore test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across the unit tests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

import pytest
from pydantic_settings import SettingsConfigDict

from listingstore.core import configure_logging
from listingstore.core.models import Record
from listingstore.core.settings import Settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    The ``autouse=True`` flag means this fixture runs for every test without
    needing to be requested explicitly.  Using ``force=True`` ensures the
    configuration is applied even when pytest's own ``log_cli`` handler is
    already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every env var :class:`Settings` reads for the duration of a test.

    Also disables pydantic-settings ``.env`` file loading so that a local
    ``.env`` file does not leak into Settings isolation tests.
    """
    prefixes = (
        "STORE_",
        "BACKUP_",
        "SPILL_",
        "SNAPSHOT_",
        "SHARD_",
        "HEALTH_",
        "REBUILD_",
        "SESSION_",
        "LOCK_",
        "IO_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


@pytest.fixture()
def settings_factory(
    tmp_path: Path,
    clean_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> Callable[..., Settings]:
    """Return a factory for :class:`Settings` rooted in ``tmp_path``.

    Every location setting points inside the test's temporary directory, and
    the working directory is switched there too.  Keyword arguments override
    individual fields.
    """
    monkeypatch.chdir(tmp_path)

    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "store_path": str(tmp_path / "master-listings.xlsx"),
            "backup_dir": str(tmp_path / "backups"),
            "spill_dir": str(tmp_path / "temp-data"),
            "snapshot_dir": str(tmp_path / "snapshots"),
            "lock_timeout": 0.1,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture()
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    """Default test settings (see :func:`settings_factory`)."""
    return settings_factory()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_record() -> Callable[..., Record]:
    """Return a factory producing valid :class:`Record` objects.

    Defaults describe one Toronto listing; keyword arguments override fields.
    """

    def _make(**overrides: str) -> Record:
        values = {
            "date": "2025-09-15",
            "address": "1 Main St",
            "city": "Toronto",
            "state": "ON",
            "postal": "M5V3A8",
            "agent": "Smith",
            "broker": "Acme Realty",
            "price": "$800,000",
            "latitude": "43.6",
            "longitude": "-79.4",
        }
        values.update(overrides)
        return Record(**values)

    return _make


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
