"""Workbook-backed sharded store, deduplication index, and overflow segments."""

from listingstore.storage.dedup import DeduplicationIndex
from listingstore.storage.files import (
    atomic_write,
    create_backup,
    fsync_directory,
    fsync_path,
    replace_file,
    timestamp_slug,
)
from listingstore.storage.locking import StoreLock, store_lock
from listingstore.storage.sharded_store import AppendStatus, Shard, ShardedStore, serialize_record
from listingstore.storage.spill import SpillManager, SpillStats
from listingstore.storage.workbook import SheetData, read_workbook, write_workbook

__all__ = [
    "DeduplicationIndex",
    "ShardedStore",
    "Shard",
    "AppendStatus",
    "serialize_record",
    "SpillManager",
    "SpillStats",
    "StoreLock",
    "store_lock",
    "SheetData",
    "read_workbook",
    "write_workbook",
    "atomic_write",
    "replace_file",
    "fsync_path",
    "fsync_directory",
    "create_backup",
    "timestamp_slug",
]
