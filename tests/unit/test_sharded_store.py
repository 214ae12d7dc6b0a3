"""Unit tests for the sharded store, its workbook format, and file primitives."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest
from openpyxl import Workbook, load_workbook

from listingstore.core.exceptions import BackupError, StoreCorruptedError, StoreIOError
from listingstore.core.keys import FALLBACK_SHARD_KEY
from listingstore.core.models import STORE_COLUMNS, Record
from listingstore.storage.files import atomic_write, create_backup, timestamp_slug
from listingstore.storage.sharded_store import AppendStatus, ShardedStore, serialize_record
from listingstore.storage.workbook import (
    EMPTY_SHEET_TITLE,
    SheetData,
    clean_cell,
    read_workbook,
    write_workbook,
)

# ---------------------------------------------------------------------------
# Routing and capacity
# ---------------------------------------------------------------------------


class TestAppend:
    def test_routes_by_postal_prefix(self, make_record: Callable[..., Record]) -> None:
        store = ShardedStore(10)
        store.append(make_record(postal="M5V3A8"))
        store.append(make_record(postal="L4Z1A1"))
        store.append(make_record(postal="X"))
        assert store.shard_keys == ["L4", "M5", FALLBACK_SHARD_KEY]
        assert store.total_rows == 3

    def test_capacity_bound(self, make_record: Callable[..., Record]) -> None:
        store = ShardedStore(2)
        statuses = [store.append(make_record(address=f"{n} Main St")) for n in range(4)]
        assert statuses == [
            AppendStatus.APPENDED,
            AppendStatus.APPENDED,
            AppendStatus.CAPACITY_EXCEEDED,
            AppendStatus.CAPACITY_EXCEEDED,
        ]
        assert store.row_counts() == {"M5": 2}
        assert len(store) == 2

    def test_full_shard_does_not_block_others(self, make_record: Callable[..., Record]) -> None:
        store = ShardedStore(1)
        store.append(make_record(postal="M5V3A8"))
        assert store.is_full_for(make_record(postal="M5A1A1"))
        assert not store.is_full_for(make_record(postal="L4Z1A1"))
        assert store.append(make_record(postal="L4Z1A1")) is AppendStatus.APPENDED

    def test_insertion_order_kept(self, make_record: Callable[..., Record]) -> None:
        store = ShardedStore(10)
        records = [make_record(address=f"{n} Main St") for n in (3, 1, 2)]
        for record in records:
            store.append(record)
        assert list(store.iter_records()) == records

    def test_from_records_counts_refusals(self, make_record: Callable[..., Record]) -> None:
        records = [make_record(address=f"{n} Main St") for n in range(5)]
        store, refused = ShardedStore.from_records(records, 3)
        assert store.total_rows == 3
        assert refused == 2

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            ShardedStore(0)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


class TestSerialize:
    def test_text_columns_upper_cased(self, make_record: Callable[..., Record]) -> None:
        row = serialize_record(
            make_record(
                date="Sept 15 2025",
                address="1 main st",
                city="toronto",
                agent="smith",
                broker="acme",
                price="$800,000",
                latitude="43.6",
            )
        )
        assert row[STORE_COLUMNS.index("ADDRESS")] == "1 MAIN ST"
        assert row[STORE_COLUMNS.index("CITY")] == "TORONTO"
        assert row[STORE_COLUMNS.index("AGENT")] == "SMITH"
        assert row[STORE_COLUMNS.index("BROKER")] == "ACME"
        assert row[STORE_COLUMNS.index("DATE")] == "Sept 15 2025"
        assert row[STORE_COLUMNS.index("LATITUDE")] == "43.6"

    def test_sheets_in_key_order_with_header(self, make_record: Callable[..., Record]) -> None:
        store = ShardedStore(10)
        for postal in ("M5V3A8", "A1B2C3", "L4Z1A1"):
            store.append(make_record(postal=postal))
        sheets = store.serialize()
        assert [sheet.title for sheet in sheets] == ["A1", "L4", "M5"]
        assert all(sheet.header == STORE_COLUMNS for sheet in sheets)


class TestPersistence:
    def test_save_then_load(self, tmp_path: Path, make_record: Callable[..., Record]) -> None:
        path = tmp_path / "store.xlsx"
        store = ShardedStore(10)
        store.append(make_record(address="1 Main St", postal="M5V3A8"))
        store.append(make_record(address="2 Main St", postal="M5V3A8", price="$1"))
        store.append(make_record(address="9 King St", postal="L4Z1A1", latitude=""))
        store.save(path)

        loaded = ShardedStore.load(path, 10)
        assert loaded.row_counts() == {"L4": 1, "M5": 2}
        addresses = [record.address for record in loaded.iter_records()]
        assert addresses == ["9 KING ST", "1 MAIN ST", "2 MAIN ST"]
        assert loaded.shard("L4").rows[0].latitude == "N/A"

    def test_formula_like_text_stays_text(self, tmp_path: Path, make_record: Callable[..., Record]) -> None:
        path = tmp_path / "store.xlsx"
        record = make_record(address="=1 Main St", agent="=SUM(A1:A2)", price="+800000")
        ShardedStore.from_records([record], 10)[0].save(path)

        [loaded] = ShardedStore.load(path, 10).iter_records()
        assert loaded.address == "=1 MAIN ST"
        assert loaded.agent == "=SUM(A1:A2)"
        assert loaded.price == "+800000"
        assert loaded.is_well_formed
        assert load_workbook(path)["M5"]["B2"].data_type == "s"

    def test_header_row_is_bold(self, tmp_path: Path, make_record: Callable[..., Record]) -> None:
        path = tmp_path / "store.xlsx"
        store = ShardedStore(10)
        store.append(make_record())
        store.save(path)
        workbook = load_workbook(path)
        sheet = workbook["M5"]
        assert [cell.value for cell in sheet[1]] == list(STORE_COLUMNS)
        assert sheet["A1"].font.bold

    def test_empty_store_round_trips(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.xlsx"
        ShardedStore(10).save(path)
        assert path.exists()
        assert read_workbook(path) == []
        assert ShardedStore.load(path, 10).total_rows == 0

    def test_load_is_raw(self, tmp_path: Path, make_record: Callable[..., Record]) -> None:
        path = tmp_path / "dupes.xlsx"
        row = serialize_record(make_record())
        write_workbook(path, [SheetData(title="M5", header=STORE_COLUMNS, rows=[row, row, row])])
        loaded = ShardedStore.load(path, 2)
        assert loaded.total_rows == 3
        assert loaded.is_full_for(make_record())

    def test_load_garbage_raises_corrupted(self, tmp_path: Path) -> None:
        path = tmp_path / "garbage.xlsx"
        path.write_bytes(b"this is not a zip archive")
        with pytest.raises(StoreCorruptedError):
            ShardedStore.load(path, 10)

    def test_load_missing_raises_io_error(self, tmp_path: Path) -> None:
        with pytest.raises(StoreIOError):
            ShardedStore.load(tmp_path / "missing.xlsx", 10)

    def test_failed_save_leaves_original(
        self,
        tmp_path: Path,
        make_record: Callable[..., Record],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        path = tmp_path / "store.xlsx"
        store = ShardedStore(10)
        store.append(make_record())
        store.save(path)
        before = path.read_bytes()

        def _refuse(src: object, dst: object) -> None:
            raise PermissionError("locked by another program")

        monkeypatch.setattr(os, "replace", _refuse)
        store.append(make_record(address="2 Main St"))
        with pytest.raises(StoreIOError):
            store.save(path, attempts=2)
        assert path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir()] == ["store.xlsx"]


# ---------------------------------------------------------------------------
# Workbook and file helpers
# ---------------------------------------------------------------------------


def test_clean_cell() -> None:
    assert clean_cell(None) == ""
    assert clean_cell(12345.0) == "12345"
    assert clean_cell(43.65) == "43.65"
    assert clean_cell("x") == "x"


def test_read_workbook_handles_typed_cells(tmp_path: Path) -> None:
    path = tmp_path / "typed.xlsx"
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "12"
    sheet.append(list(STORE_COLUMNS))
    sheet.append(["2025-09-15", "1 MAIN ST", "TORONTO", "ON", 12345, None, None, "$1", 43.5, None])
    workbook.save(path)

    [data] = read_workbook(path)
    assert data.has_expected_header
    record = Record.from_row(data.rows[0])
    assert record.postal == "12345"
    assert record.agent == ""
    assert record.latitude == "43.5"
    assert record.longitude == "N/A"


def test_write_workbook_strips_control_characters(tmp_path: Path) -> None:
    path = tmp_path / "control.xlsx"
    row = ("", "1 MAIN\x07 ST", "", "", "M5V3A8", "", "", "", "", "")
    write_workbook(path, [SheetData(title="M5", header=STORE_COLUMNS, rows=[row])])
    [data] = read_workbook(path)
    assert data.rows[0][1] == "1 MAIN ST"


def test_empty_placeholder_sheet_is_skipped(tmp_path: Path) -> None:
    path = tmp_path / "empty.xlsx"
    write_workbook(path, [])
    assert load_workbook(path).sheetnames == [EMPTY_SHEET_TITLE]
    assert read_workbook(path) == []


def test_atomic_write_creates_parents(tmp_path: Path) -> None:
    target = tmp_path / "a" / "b" / "out.txt"
    atomic_write(target, lambda tmp: tmp.write_text("done"))
    assert target.read_text() == "done"
    assert [p.name for p in target.parent.iterdir()] == ["out.txt"]


def test_create_backup(tmp_path: Path) -> None:
    source = tmp_path / "master-listings.xlsx"
    source.write_bytes(b"payload")
    backup = create_backup(source, tmp_path / "backups")
    assert backup.parent == tmp_path / "backups"
    assert backup.name.startswith("backup-")
    assert backup.name.endswith("-master-listings.xlsx")
    assert backup.read_bytes() == b"payload"


def test_create_backup_of_missing_file(tmp_path: Path) -> None:
    with pytest.raises(BackupError):
        create_backup(tmp_path / "missing.xlsx", tmp_path / "backups")


def test_timestamp_slug_is_filename_safe() -> None:
    slug = timestamp_slug()
    assert ":" not in slug
    assert "." not in slug
    assert slug.endswith("Z")
