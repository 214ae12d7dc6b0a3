"""Ingestion session: the lifecycle around one store file.

An :class:`IngestionSession` owns a store path from :meth:`~IngestionSession.open`
to :meth:`~IngestionSession.close`.  Only one session per store can be open
at a time; the single-writer rule is enforced with a file lock.

Open
----
1. Acquire ``<store>.lock``.
2. If the store exists, scan its health.  A store that needs a rebuild (or is
   already at total capacity) is rebuilt when ``rebuild_on_startup`` is set;
   otherwise the session refuses to start with
   :class:`~listingstore.core.exceptions.StoreCorruptedError`.
3. Load the store (or start an empty one), seed the deduplication index, and
   back the store up once.
4. Replay records found in overflow segments left behind by an interrupted
   session.

Ingest
------
:meth:`~IngestionSession.ingest` pulls records from a
:class:`~listingstore.ingest.source.RecordSource` and offers them to the
:class:`~listingstore.ingest.ingestor.RecordIngestor`.  When the store hits
its total capacity the session saves, rebuilds, reloads, and carries on; if
the store is still full after that, ingestion halts.

Close
-----
Always runs, including on exceptions and ``KeyboardInterrupt`` when used as a
context manager.  Flushes the spill buffer, writes the per-session snapshot
workbook, saves the store atomically, deletes the overflow segments only
once the store is durable, and releases the lock.

Typical usage::

    settings = Settings()
    with IngestionSession(settings) as session, JsonLinesSource(path) as source:
        session.ingest(source)
    print(session.stats)
"""

from __future__ import annotations

import logging
import uuid
from contextvars import Token
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import TypeVar

from listingstore.core import events
from listingstore.core.exceptions import (
    IngestionError,
    ListingStoreError,
    StoreCorruptedError,
)
from listingstore.core.logging_config import SESSION_ID_CTX
from listingstore.core.models import Record, Verdict
from listingstore.core.settings import Settings
from listingstore.ingest.ingestor import IngestStats, RecordIngestor
from listingstore.ingest.source import RecordSource
from listingstore.maintenance.health import StoreHealthValidator
from listingstore.maintenance.rebuild import StoreRebuilder
from listingstore.storage.dedup import DeduplicationIndex
from listingstore.storage.files import atomic_write, create_backup, timestamp_slug
from listingstore.storage.locking import StoreLock
from listingstore.storage.sharded_store import ShardedStore
from listingstore.storage.spill import SpillManager
from listingstore.storage.workbook import write_workbook

__all__ = ["SNAPSHOT_PREFIX", "SessionStats", "IngestionSession"]

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

#: Per-session snapshot workbooks are named ``listings-scrape-<timestamp>.xlsx``.
SNAPSHOT_PREFIX: str = "listings-scrape-"


@dataclass
class SessionStats:
    """Summary of one session.

    Attributes:
        session_id: Short identifier stamped on every log line of the session.
        ingest: Per-candidate counters from the ingestor.
        replayed: Records recovered from a previous session's segments and
            stored or found already present.
        replay_refused: Recovered records the store had no room for; their
            segments are kept for the next session.
        rebuilds: Rebuilds run by this session, startup included.
        intermediate_saves: Store writes made before close.
        halted: Ingestion stopped because the store stayed full.
        records_finalized: Records read back from the overflow segments at close.
        backup_path: Backup taken when the session opened.
        snapshot_path: Snapshot workbook written at close, if any.
    """

    session_id: str
    ingest: IngestStats = field(default_factory=IngestStats)
    replayed: int = 0
    replay_refused: int = 0
    rebuilds: int = 0
    intermediate_saves: int = 0
    halted: bool = False
    records_finalized: int = 0
    backup_path: Path | None = None
    snapshot_path: Path | None = None


class IngestionSession:
    """Single-writer session over one store file.

    Args:
        settings: Application settings; loaded from the environment if
            omitted.
        validator: Health validator; built from *settings* if omitted.
        rebuilder: Store rebuilder; built from *settings* if omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        validator: StoreHealthValidator | None = None,
        rebuilder: StoreRebuilder | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.validator = validator or StoreHealthValidator.from_settings(self.settings)
        self.rebuilder = rebuilder or StoreRebuilder.from_settings(self.settings)
        self.store_path: Path = self.settings.store_path_resolved
        self.session_id = uuid.uuid4().hex[:8]
        self.stats = SessionStats(session_id=self.session_id)

        self._lock = StoreLock(self.store_path, self.settings.lock_timeout)
        self._ctx_token: Token[str] | None = None
        self._open = False
        self._closed = False
        self._since_save = 0
        self._store: ShardedStore | None = None
        self._index: DeduplicationIndex | None = None
        self._spill: SpillManager | None = None
        self._ingestor: RecordIngestor | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def store(self) -> ShardedStore:
        return self._require(self._store)

    @property
    def index(self) -> DeduplicationIndex:
        return self._require(self._index)

    @property
    def spill(self) -> SpillManager:
        return self._require(self._spill)

    @property
    def ingestor(self) -> RecordIngestor:
        return self._require(self._ingestor)

    @staticmethod
    def _require(component: _T | None) -> _T:
        if component is None:
            raise IngestionError("session is not open")
        return component

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def open(self) -> IngestionSession:
        """Lock, check, load, back up, and replay.  See the module docstring.

        Raises:
            IngestionError: If the session was already opened.
            StoreLockedError: If another session holds the store.
            StoreCorruptedError: If the store is unhealthy and cannot (or may
                not) be rebuilt.
            StoreIOError: If the store cannot be read or backed up.
        """
        if self._open or self._closed:
            raise IngestionError("a session can only be opened once")

        self._ctx_token = SESSION_ID_CTX.set(self.session_id)
        try:
            self._lock.acquire()
        except ListingStoreError:
            self._reset_context()
            raise

        try:
            self._prepare_store()
            self._spill = SpillManager(
                self.settings.spill_dir_resolved,
                self.settings.spill_buffer_threshold,
                prefix=self.settings.spill_prefix,
                attempts=self.settings.io_retry_attempts,
            )
            self._ingestor = RecordIngestor(
                self.store,
                self.index,
                self._spill,
                safe_max_rows=self.settings.store_safe_max_rows,
                capacity_warning_ratio=self.settings.health_capacity_warning_ratio,
            )
            self.stats.ingest = self._ingestor.stats
            self._open = True
            self._replay_leftovers()
        except BaseException:
            self._open = False
            self._lock.release()
            self._reset_context()
            raise

        logger.info(
            "Session opened on %s: %d shard(s), %d row(s)",
            self.store_path,
            self.store.shard_count,
            self.store.total_rows,
            extra={"event": events.SESSION_OPEN},
        )
        return self

    def _prepare_store(self) -> None:
        max_rows = self.settings.shard_max_rows
        if not self.store_path.exists():
            logger.info("No store at %s; starting an empty one", self.store_path)
            self._store = ShardedStore(max_rows)
            self._index = DeduplicationIndex()
            return

        report = self.validator.scan(self.store_path)
        over_capacity = report.total_rows >= self.settings.store_safe_max_rows
        rebuilt = False
        if report.requires_rebuild or over_capacity:
            if not self.settings.rebuild_on_startup:
                raise StoreCorruptedError(
                    self.store_path,
                    "store failed its health check and startup rebuilds are disabled: "
                    + "; ".join(report.issues),
                )
            self._rebuild_or_raise()
            rebuilt = True

        self._store = ShardedStore.load(self.store_path, max_rows)
        self._index = DeduplicationIndex.from_records(self._store.iter_records())
        if not rebuilt:
            self.stats.backup_path = create_backup(self.store_path, self.settings.backup_dir_resolved)

    def _rebuild_or_raise(self) -> None:
        result = self.rebuilder.rebuild(self.store_path)
        self.stats.rebuilds += 1
        if not result.success or not result.stats.replaced_original:
            raise StoreCorruptedError(self.store_path, f"rebuild failed: {result.error}")
        self.stats.backup_path = result.backup_path

    def _replay_leftovers(self) -> None:
        leftovers = self.spill.recover()
        if not leftovers:
            return
        refused = 0
        for record in leftovers:
            verdict = self.ingestor.accept(record)
            if self.ingestor.store_full and self._remediate_capacity():
                verdict = self.ingestor.accept(record)
            if verdict is Verdict.CAPACITY_EXCEEDED:
                refused += 1
        self.stats.replayed = len(leftovers) - refused
        self.stats.replay_refused = refused
        # The replayed records now live in this session's own segments.
        self.spill.flush()
        if refused:
            # The leftover segments are the only copy of the refused records.
            logger.error(
                "%d leftover record(s) did not fit in the store; keeping %s for the next session",
                refused,
                self.spill.spill_dir,
                extra={"event": events.SESSION_REPLAY},
            )
            return
        self.spill.discard_recovered()
        logger.info(
            "Replayed %d record(s) from an interrupted session",
            len(leftovers),
            extra={"event": events.SESSION_REPLAY},
        )

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, source: RecordSource, *, limit: int | None = None) -> IngestStats:
        """Offer every record from *source* to the ingestor.

        Args:
            source: Where records come from.  It is stopped when the session
                halts or the limit is reached.
            limit: Stop after this many records have been accepted by this
                call.

        Returns:
            The session's cumulative ingest counters.

        Raises:
            IngestionError: If the session is not open.
        """
        if not self._open:
            raise IngestionError("ingest() called on a session that is not open")

        accepted = 0
        for record in source:
            verdict = self.ingestor.accept(record)
            if self.ingestor.store_full:
                if not self._remediate_capacity():
                    self.stats.halted = True
                    source.stop()
                    break
                verdict = self.ingestor.accept(record)

            if verdict is Verdict.ACCEPTED:
                accepted += 1
                self._maybe_save()
                if limit is not None and accepted >= limit:
                    logger.info("Accepted %d record(s); limit reached", accepted)
                    source.stop()
                    break
        return self.ingestor.stats

    def _maybe_save(self) -> None:
        interval = self.settings.store_write_interval
        if not interval:
            return
        self._since_save += 1
        if self._since_save >= interval:
            self.store.save(self.store_path, attempts=self.settings.io_retry_attempts)
            self.stats.intermediate_saves += 1
            self._since_save = 0

    def _remediate_capacity(self) -> bool:
        """Save, rebuild, and reload.  Returns ``False`` if still full."""
        logger.warning("Store at capacity; saving and rebuilding before continuing")
        self.store.save(self.store_path, attempts=self.settings.io_retry_attempts)
        self._since_save = 0
        result = self.rebuilder.rebuild(self.store_path)
        self.stats.rebuilds += 1
        if not result.success or not result.stats.replaced_original:
            logger.error(
                "Rebuild did not complete (%s); halting ingestion",
                result.error,
                extra={"event": events.SESSION_HALT},
            )
            return False

        self._store = ShardedStore.load(self.store_path, self.settings.shard_max_rows)
        self._index = DeduplicationIndex.from_records(self._store.iter_records())
        self.ingestor.rebind(self._store, self._index)

        if self._store.total_rows >= self.settings.store_safe_max_rows:
            logger.error(
                "Store still full after rebuild (%d rows); halting ingestion",
                self._store.total_rows,
                extra={"event": events.SESSION_HALT},
            )
            self.ingestor.store_full = True
            return False
        return True

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Finalize the spill, write the snapshot, save the store, release the lock.

        Safe to call more than once.  If the store cannot be saved the
        overflow segments are kept so the next session replays them, and
        the error propagates.
        """
        if not self._open:
            return
        spill_ok = True
        try:
            records: list[Record] = []
            try:
                records = self.spill.finalize()
                self.stats.records_finalized = len(records)
            except ListingStoreError as exc:
                spill_ok = False
                logger.error("Could not finalize overflow segments, keeping them: %s", exc)

            if self.settings.session_snapshot and records:
                self._write_snapshot(records)

            self.store.save(self.store_path, attempts=self.settings.io_retry_attempts)
            if spill_ok:
                self.spill.cleanup()
        finally:
            self._open = False
            self._closed = True
            self._lock.release()
            logger.info(
                "Session closed: %d received, %d accepted (%d variant), %d duplicate, "
                "%d malformed, %d over capacity",
                self.stats.ingest.received,
                self.stats.ingest.accepted,
                self.stats.ingest.variants,
                self.stats.ingest.duplicates,
                self.stats.ingest.malformed,
                self.stats.ingest.capacity_exceeded,
                extra={"event": events.SESSION_CLOSE},
            )
            self._reset_context()

    def _write_snapshot(self, records: list[Record]) -> None:
        snapshot, _ = ShardedStore.from_records(records, self.settings.store_safe_max_rows)
        path = self.settings.snapshot_dir_resolved / f"{SNAPSHOT_PREFIX}{timestamp_slug()}.xlsx"
        sheets = snapshot.serialize()
        try:
            atomic_write(path, lambda tmp: write_workbook(tmp, sheets), attempts=self.settings.io_retry_attempts)
        except ListingStoreError as exc:
            logger.error("Could not write session snapshot: %s", exc)
            return
        self.stats.snapshot_path = path
        logger.info("Session snapshot written: %s (%d record(s))", path, len(records))

    def _reset_context(self) -> None:
        if self._ctx_token is not None:
            SESSION_ID_CTX.reset(self._ctx_token)
            self._ctx_token = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> IngestionSession:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
