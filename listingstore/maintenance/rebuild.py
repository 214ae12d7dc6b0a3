"""Offline repair of a store file.

:class:`StoreRebuilder` reconstructs a clean store from whatever can be
salvaged out of an existing one:

1. Back the file up (``backup-<timestamp>-<name>`` in the backup directory).
   A failed backup aborts the rebuild before anything else is touched.
2. Load every sheet raw.  A workbook that no longer parses is treated as
   empty and the parse error is reported in the stats.
3. Walk the rows shard by shard, skipping rows with a blank ADDRESS or
   POSTAL and re-deduplicating the rest through a fresh
   :class:`~listingstore.storage.dedup.DeduplicationIndex`.  For a repeated
   composite key the first row encountered wins.
4. Route survivors into a new
   :class:`~listingstore.storage.sharded_store.ShardedStore`.  Rows refused
   for shard capacity are dropped and counted.
5. Write ``temp-rebuild-<timestamp>.xlsx`` beside the original, then rename
   it over the original.  If the rename keeps failing the rebuilt file is
   left under its temporary name and the original stays as it was.

The rebuilder takes no lock; callers that share the store with a session
must hold :func:`~listingstore.storage.locking.store_lock`.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from listingstore.core import events
from listingstore.core.exceptions import BackupError, StoreCorruptedError, StoreIOError
from listingstore.core.models import Record
from listingstore.core.settings import Settings
from listingstore.storage.dedup import DeduplicationIndex
from listingstore.storage.files import (
    create_backup,
    fsync_directory,
    fsync_path,
    replace_file,
    timestamp_slug,
)
from listingstore.storage.sharded_store import AppendStatus, ShardedStore
from listingstore.storage.workbook import SheetData, read_workbook, write_workbook

__all__ = [
    "REBUILD_TMP_PREFIX",
    "RebuildStats",
    "RebuildResult",
    "StoreRebuilder",
]

logger = logging.getLogger(__name__)

REBUILD_TMP_PREFIX: str = "temp-rebuild-"


@dataclass
class RebuildStats:
    """Counters describing one rebuild.

    Attributes:
        total_properties: Records in the rebuilt store.
        shards_created: Shards in the rebuilt store.
        duplicates_removed: Rows dropped as exact duplicates.
        corrupted_rows_skipped: Rows dropped for a blank ADDRESS or POSTAL.
        capacity_dropped: Rows dropped because their shard was full.
        rows_scanned: Data rows read from the original file.
        replaced_original: Whether the rebuilt file now sits at the store path.
        load_error: Why the original could not be read, if it could not.
    """

    total_properties: int = 0
    shards_created: int = 0
    duplicates_removed: int = 0
    corrupted_rows_skipped: int = 0
    capacity_dropped: int = 0
    rows_scanned: int = 0
    replaced_original: bool = False
    load_error: str | None = None


@dataclass
class RebuildResult:
    """Outcome of :meth:`StoreRebuilder.rebuild`.

    ``success`` is ``True`` whenever a rebuilt file was written, even if it
    could not be moved over the original; check ``stats.replaced_original``
    and ``error`` for that case.
    """

    success: bool
    new_store_path: Path | None = None
    backup_path: Path | None = None
    error: str | None = None
    stats: RebuildStats = field(default_factory=RebuildStats)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "new_store_path": str(self.new_store_path) if self.new_store_path else None,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "error": self.error,
            "stats": asdict(self.stats),
        }


class StoreRebuilder:
    """Rebuild a store file into a clean, deduplicated, capacity-bounded one.

    Args:
        max_rows_per_shard: Shard capacity of the rebuilt store.
        backup_dir: Directory receiving the pre-rebuild backup.
        io_attempts: Attempts for the final rename.
    """

    def __init__(self, max_rows_per_shard: int, backup_dir: Path, *, io_attempts: int = 3) -> None:
        self.max_rows_per_shard = max_rows_per_shard
        self.backup_dir = Path(backup_dir)
        self.io_attempts = io_attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> StoreRebuilder:
        return cls(
            settings.shard_max_rows,
            settings.backup_dir_resolved,
            io_attempts=settings.io_retry_attempts,
        )

    def rebuild(self, store_path: Path, *, replace_original: bool = True) -> RebuildResult:
        """Rebuild the store at *store_path*.

        Args:
            store_path: Store file to repair.  A missing file yields an empty
                store.
            replace_original: Move the rebuilt file over *store_path*.  When
                ``False`` the rebuilt file is left under its temporary name.

        Returns:
            A :class:`RebuildResult`.  Failures are reported there rather
            than raised.
        """
        store_path = Path(store_path)
        stats = RebuildStats()
        logger.info(
            "Rebuilding store %s",
            store_path,
            extra={"event": events.REBUILD_START},
        )

        # 1. Backup
        backup_path: Path | None = None
        if store_path.exists():
            try:
                backup_path = create_backup(store_path, self.backup_dir)
            except BackupError as exc:
                return self._failed(store_path, f"backup failed, rebuild aborted: {exc}", stats)
        else:
            logger.warning("Store %s does not exist; rebuilding an empty store", store_path)

        # 2. Load
        sheets: list[SheetData] = []
        if store_path.exists():
            try:
                sheets = read_workbook(store_path)
            except (StoreCorruptedError, StoreIOError) as exc:
                stats.load_error = str(exc)
                logger.error("Could not read %s, rebuilding from nothing: %s", store_path, exc)

        # 3 + 4. Clean, deduplicate, re-shard
        store = self._rebuild_store(sheets, stats)
        stats.total_properties = store.total_rows
        stats.shards_created = store.shard_count

        # 5. Write and swap
        tmp_path = store_path.with_name(f"{REBUILD_TMP_PREFIX}{timestamp_slug()}{store_path.suffix}")
        try:
            tmp_path.parent.mkdir(parents=True, exist_ok=True)
            write_workbook(tmp_path, store.serialize())
            fsync_path(tmp_path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            result = self._failed(store_path, f"could not write rebuilt store {tmp_path}: {exc}", stats)
            result.backup_path = backup_path
            return result

        result = RebuildResult(
            success=True,
            new_store_path=tmp_path,
            backup_path=backup_path,
            stats=stats,
        )
        if replace_original:
            try:
                replace_file(tmp_path, store_path, attempts=self.io_attempts)
            except OSError as exc:
                result.error = f"rebuilt store left at {tmp_path}, could not replace original: {exc}"
                logger.error(result.error)
            else:
                fsync_directory(store_path.parent)
                stats.replaced_original = True
                result.new_store_path = store_path

        logger.info(
            "Rebuild complete: %d record(s) in %d shard(s); %d duplicate(s), "
            "%d corrupted row(s), %d over capacity dropped",
            stats.total_properties,
            stats.shards_created,
            stats.duplicates_removed,
            stats.corrupted_rows_skipped,
            stats.capacity_dropped,
            extra={"event": events.REBUILD_COMPLETE},
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rebuild_store(self, sheets: list[SheetData], stats: RebuildStats) -> ShardedStore:
        index = DeduplicationIndex()
        store = ShardedStore(self.max_rows_per_shard)
        for sheet in sheets:
            for row in sheet.rows:
                stats.rows_scanned += 1
                record = Record.from_row(row)
                if not record.is_well_formed:
                    stats.corrupted_rows_skipped += 1
                    continue
                if index.classify(record).is_new:
                    if store.append(record) is AppendStatus.CAPACITY_EXCEEDED:
                        stats.capacity_dropped += 1
                        logger.warning(
                            "Shard %s full, dropping %s",
                            store.route(record),
                            record.address,
                        )
                        continue
                    index.commit(record)
                else:
                    stats.duplicates_removed += 1
        return store

    @staticmethod
    def _failed(store_path: Path, message: str, stats: RebuildStats) -> RebuildResult:
        logger.error(
            "Rebuild of %s failed: %s",
            store_path,
            message,
            extra={"event": events.REBUILD_FAILED},
        )
        return RebuildResult(success=False, error=message, stats=stats)
