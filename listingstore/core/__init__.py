"""Core domain models, keys, settings, logging configuration, and exceptions."""

from listingstore.core.exceptions import (
    BackupError,
    ConfigError,
    IngestionError,
    ListingStoreError,
    StorageError,
    StoreCorruptedError,
    StoreIOError,
    StoreLockedError,
)
from listingstore.core.logging_config import JsonFormatter, configure_logging
from listingstore.core.models import Classification, Record, Verdict
from listingstore.core.settings import Settings, load_settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "Record",
    "Classification",
    "Verdict",
    # Settings
    "Settings",
    "load_settings",
    # Exceptions: base
    "ListingStoreError",
    # Exceptions: config
    "ConfigError",
    # Exceptions: storage
    "StorageError",
    "StoreIOError",
    "BackupError",
    "StoreCorruptedError",
    "StoreLockedError",
    # Exceptions: ingestion
    "IngestionError",
]
