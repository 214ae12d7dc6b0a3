"""Listingstore exception taxonomy.

Every custom exception inherits from :class:`ListingStoreError`.  Exceptions
are organised by architectural layer so callers can catch at the right
granularity:

    Layer hierarchy
    ---------------
    ListingStoreError
    ├── ConfigError
    ├── StorageError
    │   ├── StoreIOError
    │   │   └── BackupError
    │   ├── StoreCorruptedError
    │   └── StoreLockedError
    └── IngestionError

Per-record problems (malformed rows, full shards) are **not** exceptions:
they come back as :class:`~listingstore.core.models.Verdict` values and
counters so that one bad record never aborts a batch.

Usage:

    from listingstore.core.exceptions import StoreIOError

    raise StoreIOError(path, "Could not write segment") from exc
"""

from __future__ import annotations

import logging
from pathlib import Path

__all__ = [
    "ListingStoreError",
    # Config
    "ConfigError",
    # Storage
    "StorageError",
    "StoreIOError",
    "BackupError",
    "StoreCorruptedError",
    "StoreLockedError",
    # Ingestion
    "IngestionError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ListingStoreError(Exception):
    """Root exception for all listingstore errors.

    Catch this to handle any application-level error uniformly.  Prefer
    catching layer-specific subclasses wherever possible.
    """


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(ListingStoreError):
    """Raised when the application configuration is invalid or incomplete."""


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(ListingStoreError):
    """Base class for failures of the persisted store, segments, or backups.

    Args:
        path: File or directory the failure relates to.
        message: Human-readable error description.
    """

    def __init__(self, path: Path | str, message: str) -> None:
        self.path = Path(path)
        super().__init__(f"{self.path}: {message}")


class StoreIOError(StorageError):
    """Raised when a disk read or write fails.

    Fatal for the current operation.  Writes to a canonical file go through
    a temporary file first, so the target is never left half-written.
    """


class BackupError(StoreIOError):
    """Raised when a backup copy cannot be created.

    Any destructive operation that required the backup must be abandoned.
    """


class StoreCorruptedError(StorageError):
    """Raised when a store file exists but cannot be parsed as a workbook.

    Recoverable: the rebuilder absorbs it and starts from an empty record
    set, and the health validator reports it as an issue.  Also raised by
    a session asked to ingest into a store that failed its health check
    while startup rebuilds are disabled.
    """


class StoreLockedError(StorageError):
    """Raised when another session already owns the store.

    Args:
        path: Store path whose lock could not be acquired.
        timeout: Seconds waited before giving up.
    """

    def __init__(self, path: Path | str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(path, f"store is locked by another session (waited {timeout}s)")


# ---------------------------------------------------------------------------
# Ingestion layer
# ---------------------------------------------------------------------------


class IngestionError(ListingStoreError):
    """Raised when an ingestion session is misused or cannot continue.

    Examples:
        - ``ingest()`` called on a session that is not open.
        - A session opened twice.
    """
