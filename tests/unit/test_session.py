"""Unit tests for :class:`~listingstore.ingest.session.IngestionSession`.

Every test runs against real files in ``tmp_path``: the store workbook,
backups, overflow segments, snapshots, and the lock file.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import pytest

from listingstore.core.exceptions import IngestionError, StoreCorruptedError, StoreLockedError
from listingstore.core.logging_config import SESSION_ID_CTX
from listingstore.core.models import STORE_COLUMNS, Record
from listingstore.core.settings import Settings
from listingstore.ingest.session import SNAPSHOT_PREFIX, IngestionSession
from listingstore.ingest.source import RecordSource
from listingstore.storage.locking import store_lock
from listingstore.storage.sharded_store import ShardedStore, serialize_record
from listingstore.storage.spill import SpillManager
from listingstore.storage.workbook import SheetData, write_workbook


class ListSource(RecordSource):
    """In-memory source yielding a fixed list of records."""

    def __init__(self, records: list[Record]) -> None:
        super().__init__()
        self._records = records
        self.closed = False

    def records(self) -> Iterator[Record]:
        yield from self._records

    def close(self) -> None:
        self.closed = True


def _many(make_record: Callable[..., Record], count: int, start: int = 0) -> list[Record]:
    return [make_record(address=f"{n} Main St") for n in range(start, start + count)]


class TestLifecycle:
    def test_fresh_store(self, settings: Settings, make_record: Callable[..., Record]) -> None:
        records = _many(make_record, 5)
        with IngestionSession(settings) as session:
            session.ingest(ListSource(records + records[:2]))

        store = ShardedStore.load(settings.store_path_resolved, settings.shard_max_rows)
        assert list(store.iter_records()) == [
            Record.from_row(serialize_record(record)) for record in records
        ]
        assert session.stats.ingest.accepted == 5
        assert session.stats.ingest.duplicates == 2
        assert session.stats.backup_path is None
        assert not session.is_open
        assert not settings.spill_dir_resolved.exists()

    def test_snapshot_holds_only_this_session(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        with IngestionSession(settings) as session:
            session.ingest(ListSource(_many(make_record, 3)))
        with IngestionSession(settings) as session:
            session.ingest(ListSource(_many(make_record, 5)))

        snapshot = session.stats.snapshot_path
        assert snapshot is not None
        assert snapshot.parent == settings.snapshot_dir_resolved
        assert snapshot.name.startswith(SNAPSHOT_PREFIX)
        assert ShardedStore.load(snapshot, 100).total_rows == 2
        assert ShardedStore.load(settings.store_path_resolved, 100).total_rows == 5

    def test_snapshot_can_be_disabled(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(session_snapshot=False)
        with IngestionSession(settings) as session:
            session.ingest(ListSource(_many(make_record, 2)))
        assert session.stats.snapshot_path is None
        assert not settings.snapshot_dir_resolved.exists()

    def test_existing_store_is_backed_up_and_deduplicated(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        existing = _many(make_record, 3)
        ShardedStore.from_records(existing, 100)[0].save(settings.store_path_resolved)

        with IngestionSession(settings) as session:
            assert session.store.total_rows == 3
            session.ingest(ListSource(existing + _many(make_record, 2, start=10)))

        assert session.stats.backup_path is not None
        assert session.stats.backup_path.parent == settings.backup_dir_resolved
        assert session.stats.ingest.duplicates == 3
        assert ShardedStore.load(settings.store_path_resolved, 100).total_rows == 5

    def test_store_saved_when_ingest_raises(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        with pytest.raises(RuntimeError):
            with IngestionSession(settings) as session:
                session.ingest(ListSource(_many(make_record, 4)))
                raise RuntimeError("crawler crashed")

        assert ShardedStore.load(settings.store_path_resolved, 100).total_rows == 4
        assert not settings.spill_dir_resolved.exists()

    def test_session_id_set_while_open(self, settings: Settings) -> None:
        session = IngestionSession(settings)
        assert SESSION_ID_CTX.get() == "-"
        with session:
            assert SESSION_ID_CTX.get() == session.session_id
        assert SESSION_ID_CTX.get() == "-"

    def test_ingest_requires_open_session(self, settings: Settings) -> None:
        with pytest.raises(IngestionError):
            IngestionSession(settings).ingest(ListSource([]))

    def test_cannot_reopen(self, settings: Settings) -> None:
        session = IngestionSession(settings)
        with session:
            pass
        with pytest.raises(IngestionError):
            session.open()

    def test_close_is_idempotent(self, settings: Settings) -> None:
        session = IngestionSession(settings).open()
        session.close()
        session.close()
        assert not session.is_open


class TestLocking:
    def test_busy_store_refused(self, settings: Settings) -> None:
        with store_lock(settings.store_path_resolved, timeout=0.1):
            with pytest.raises(StoreLockedError):
                IngestionSession(settings).open()
        assert SESSION_ID_CTX.get() == "-"

    def test_lock_released_on_close(self, settings: Settings) -> None:
        with IngestionSession(settings):
            pass
        with store_lock(settings.store_path_resolved, timeout=0.1) as lock:
            assert lock.is_locked


class TestIngestControl:
    def test_limit_stops_source(self, settings: Settings, make_record: Callable[..., Record]) -> None:
        source = ListSource(_many(make_record, 10))
        with IngestionSession(settings) as session:
            stats = session.ingest(source, limit=4)
        assert stats.accepted == 4
        assert source.stopped

    def test_stopped_source_yields_nothing(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        source = ListSource(_many(make_record, 10))
        source.stop()
        with IngestionSession(settings) as session:
            stats = session.ingest(source)
        assert stats.received == 0

    def test_intermediate_saves(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(store_write_interval=2)
        with IngestionSession(settings) as session:
            session.ingest(ListSource(_many(make_record, 5)))
            assert session.stats.intermediate_saves == 2
            assert ShardedStore.load(settings.store_path_resolved, 100).total_rows == 4

    def test_halts_when_rebuild_cannot_free_space(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(store_safe_max_rows=3, shard_max_rows=3)
        source = ListSource(_many(make_record, 6))
        with IngestionSession(settings) as session:
            session.ingest(source)

        assert session.stats.halted
        assert session.stats.rebuilds == 1
        assert source.stopped
        assert ShardedStore.load(settings.store_path_resolved, 3).total_rows == 3

    def test_rebuild_frees_space_and_ingestion_continues(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(store_safe_max_rows=5, shard_max_rows=5)
        a, b = _many(make_record, 2)
        # Two duplicate rows that only a rebuild will remove.
        rows = [serialize_record(r) for r in (a, a, b, b)]
        write_workbook(settings.store_path_resolved, [SheetData("M5", STORE_COLUMNS, rows)])

        with IngestionSession(settings) as session:
            session.ingest(ListSource(_many(make_record, 2, start=10)))

        assert not session.stats.halted
        assert session.stats.rebuilds == 1
        assert session.stats.ingest.accepted == 2
        assert ShardedStore.load(settings.store_path_resolved, 5).total_rows == 4


class TestStartupChecks:
    @staticmethod
    def _write_corrupted_store(settings: Settings, make_record: Callable[..., Record]) -> None:
        rows = [serialize_record(r) for r in _many(make_record, 3)]
        bad_header = tuple(f"COL{n}" for n in range(len(STORE_COLUMNS)))
        write_workbook(settings.store_path_resolved, [SheetData("M5", bad_header, rows)])

    def test_unhealthy_store_is_rebuilt(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        self._write_corrupted_store(settings, make_record)
        with IngestionSession(settings) as session:
            assert session.stats.rebuilds == 1
            assert session.store.total_rows == 3
        assert session.stats.backup_path is not None

    def test_unhealthy_store_refused_without_rebuild(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(rebuild_on_startup=False)
        self._write_corrupted_store(settings, make_record)
        original = settings.store_path_resolved.read_bytes()

        with pytest.raises(StoreCorruptedError):
            IngestionSession(settings).open()

        assert settings.store_path_resolved.read_bytes() == original
        # The failed open released the lock.
        with store_lock(settings.store_path_resolved, timeout=0.1):
            pass

    def test_leftover_segments_are_replayed(
        self, settings: Settings, make_record: Callable[..., Record]
    ) -> None:
        crashed = SpillManager(settings.spill_dir_resolved, 2, prefix=settings.spill_prefix)
        leftovers = _many(make_record, 5)
        for record in leftovers:
            crashed.track(record)
        crashed.flush()

        with IngestionSession(settings) as session:
            assert session.stats.replayed == 5
            assert session.store.total_rows == 5
            session.ingest(ListSource(leftovers))

        assert session.stats.ingest.accepted == 5
        assert session.stats.ingest.duplicates == 5
        assert ShardedStore.load(settings.store_path_resolved, 100).total_rows == 5
        assert not settings.spill_dir_resolved.exists()

    def test_leftovers_without_room_keep_their_segments(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(shard_max_rows=1)
        ShardedStore.from_records([make_record(address="1 Main St")], 1)[0].save(
            settings.store_path_resolved
        )
        crashed = SpillManager(settings.spill_dir_resolved, 50, prefix=settings.spill_prefix)
        crashed.track(make_record(address="2 Main St"))
        crashed.flush()
        leftover = crashed.segments[0]

        with IngestionSession(settings) as session:
            pass

        assert session.stats.replayed == 0
        assert session.stats.replay_refused == 1
        assert session.stats.ingest.capacity_exceeded == 1
        assert leftover.exists()
        assert [r.address for r in SpillManager.read_segment(leftover)] == ["2 Main St"]
        assert [r.address for r in ShardedStore.load(settings.store_path_resolved, 1).iter_records()] == [
            "1 MAIN ST"
        ]

    def test_leftovers_replayed_after_capacity_rebuild(
        self, settings_factory: Callable[..., Settings], make_record: Callable[..., Record]
    ) -> None:
        settings = settings_factory(store_safe_max_rows=3, shard_max_rows=3)
        a = make_record(address="1 Main St")
        # A duplicate row that only a rebuild removes, leaving the store at two rows.
        write_workbook(
            settings.store_path_resolved,
            [SheetData("M5", STORE_COLUMNS, [serialize_record(a), serialize_record(a)])],
        )
        crashed = SpillManager(settings.spill_dir_resolved, 50, prefix=settings.spill_prefix)
        for n in (2, 3):
            crashed.track(make_record(address=f"{n} Main St"))
        crashed.flush()

        with IngestionSession(settings) as session:
            assert session.stats.replayed == 2
            assert session.stats.replay_refused == 0

        assert session.stats.rebuilds == 1
        assert ShardedStore.load(settings.store_path_resolved, 3).total_rows == 3
        assert not settings.spill_dir_resolved.exists()
