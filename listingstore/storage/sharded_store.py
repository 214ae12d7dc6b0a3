"""Shard-partitioned, capacity-bounded record store.

Provides :class:`ShardedStore`, the in-memory owner of every accepted record
for one store file.  Records are partitioned by
:func:`~listingstore.core.keys.shard_key` (the first two characters of the
postal code); each shard holds its records in insertion order and refuses
appends once it reaches ``max_rows_per_shard``.

The store mirrors a single ``.xlsx`` file on disk (see
:mod:`listingstore.storage.workbook`).  Nothing is written implicitly: the
owner decides when to call :meth:`ShardedStore.save`, which always goes
through write-temp-then-replace.

Typical usage::

    from listingstore.storage.sharded_store import AppendStatus, ShardedStore

    store = ShardedStore.load(Path("master-listings.xlsx"), max_rows_per_shard=50_000)
    if store.append(record) is AppendStatus.CAPACITY_EXCEEDED:
        ...
    store.save(Path("master-listings.xlsx"))
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from listingstore.core import events
from listingstore.core.keys import shard_key
from listingstore.core.models import STORE_COLUMNS, UPPERCASE_COLUMNS, Record
from listingstore.storage.files import atomic_write
from listingstore.storage.workbook import SheetData, read_workbook, write_workbook

__all__ = [
    "AppendStatus",
    "Shard",
    "ShardedStore",
    "serialize_record",
]

logger = logging.getLogger(__name__)

#: Positions of the columns that are upper-cased on output.
_UPPERCASE_POSITIONS: frozenset[int] = frozenset(
    i for i, name in enumerate(STORE_COLUMNS) if name in UPPERCASE_COLUMNS
)


class AppendStatus(StrEnum):
    """Result of :meth:`ShardedStore.append`."""

    APPENDED = "appended"
    CAPACITY_EXCEEDED = "capacity_exceeded"


def serialize_record(record: Record) -> tuple[str, ...]:
    """Render *record* as a store row.

    ADDRESS, CITY, STATE, POSTAL, AGENT, and BROKER are upper-cased; DATE,
    PRICE, LATITUDE, and LONGITUDE are emitted verbatim.
    """
    return tuple(
        value.upper() if i in _UPPERCASE_POSITIONS else value
        for i, value in enumerate(record.as_row())
    )


@dataclass
class Shard:
    """One named partition of the store.

    Attributes:
        key: Shard key; also the worksheet title on disk.
        max_rows: Capacity enforced by :meth:`ShardedStore.append`.
        rows: Records in insertion order.
    """

    key: str
    max_rows: int
    rows: list[Record] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def is_full(self) -> bool:
        """``True`` once the shard holds ``max_rows`` records (or more, if loaded raw)."""
        return self.row_count >= self.max_rows


class ShardedStore:
    """Accepted records partitioned into bounded shards.

    The store owns no file handle.  It is loaded with :meth:`load`, mutated
    only through :meth:`append`, and persisted with :meth:`save`.

    Args:
        max_rows_per_shard: Capacity of every shard.
    """

    def __init__(self, max_rows_per_shard: int) -> None:
        if max_rows_per_shard < 1:
            raise ValueError(f"max_rows_per_shard must be >= 1, got {max_rows_per_shard}")
        self.max_rows_per_shard = max_rows_per_shard
        self._shards: dict[str, Shard] = {}
        self._total_rows = 0

    # ------------------------------------------------------------------
    # Routing and mutation
    # ------------------------------------------------------------------

    @staticmethod
    def route(record: Record) -> str:
        """Return the shard key *record* belongs to."""
        return shard_key(record)

    def append(self, record: Record) -> AppendStatus:
        """Append *record* to its shard, creating the shard on first use.

        Returns:
            :attr:`AppendStatus.APPENDED`, or
            :attr:`AppendStatus.CAPACITY_EXCEEDED` if the shard is full, in
            which case nothing is modified.
        """
        key = self.route(record)
        shard = self._shards.get(key)
        if shard is not None and shard.is_full:
            logger.debug("Shard %s full (%d rows), append refused", key, shard.row_count)
            return AppendStatus.CAPACITY_EXCEEDED
        if shard is None:
            shard = Shard(key=key, max_rows=self.max_rows_per_shard)
            self._shards[key] = shard
        shard.rows.append(record)
        self._total_rows += 1
        return AppendStatus.APPENDED

    def is_full_for(self, record: Record) -> bool:
        """``True`` if :meth:`append` would refuse *record* for capacity."""
        shard = self._shards.get(self.route(record))
        return shard is not None and shard.is_full

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def total_rows(self) -> int:
        return self._total_rows

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    @property
    def shard_keys(self) -> list[str]:
        """Shard keys in lexicographic order."""
        return sorted(self._shards)

    def shard(self, key: str) -> Shard | None:
        return self._shards.get(key)

    def shards(self) -> list[Shard]:
        """Shards in lexicographic key order."""
        return [self._shards[key] for key in self.shard_keys]

    def row_counts(self) -> dict[str, int]:
        """Map of shard key to row count, in key order."""
        return {shard.key: shard.row_count for shard in self.shards()}

    def iter_records(self) -> Iterator[Record]:
        """Yield every record, shard by shard in key order, rows in insertion order."""
        for shard in self.shards():
            yield from shard.rows

    def __len__(self) -> int:
        return self._total_rows

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def serialize(self) -> list[SheetData]:
        """Render the store as worksheets in lexicographic shard order."""
        return [
            SheetData(
                title=shard.key,
                header=STORE_COLUMNS,
                rows=[serialize_record(record) for record in shard.rows],
            )
            for shard in self.shards()
        ]

    @classmethod
    def from_sheets(cls, sheets: Iterable[SheetData], max_rows_per_shard: int) -> ShardedStore:
        """Rebuild a store from raw worksheets, one shard per sheet.

        Rows are taken positionally and kept exactly as found: no
        deduplication, no validation, and no capacity check.  A damaged file
        can therefore yield shards above capacity; such shards refuse further
        appends until the store is rebuilt.
        """
        store = cls(max_rows_per_shard)
        for sheet in sheets:
            shard = store._shards.get(sheet.title)
            if shard is None:
                shard = Shard(key=sheet.title, max_rows=max_rows_per_shard)
                store._shards[sheet.title] = shard
            shard.rows.extend(Record.from_row(row) for row in sheet.rows)
            store._total_rows += len(sheet.rows)
        return store

    @classmethod
    def from_records(cls, records: Iterable[Record], max_rows_per_shard: int) -> tuple[ShardedStore, int]:
        """Append *records* to a new store.

        Returns:
            The store and the number of records refused for capacity.
        """
        store = cls(max_rows_per_shard)
        refused = 0
        for record in records:
            if store.append(record) is AppendStatus.CAPACITY_EXCEEDED:
                refused += 1
        return store, refused

    @classmethod
    def load(cls, path: Path, max_rows_per_shard: int) -> ShardedStore:
        """Load the store file at *path* without deduplicating.

        Raises:
            StoreIOError: If the file cannot be read.
            StoreCorruptedError: If the file is not a parseable workbook.
        """
        store = cls.from_sheets(read_workbook(path), max_rows_per_shard)
        logger.info(
            "Loaded store %s: %d shard(s), %d row(s)",
            path,
            store.shard_count,
            store.total_rows,
            extra={"event": events.STORE_LOADED},
        )
        return store

    def save(self, path: Path, *, attempts: int = 3) -> None:
        """Write the store to *path* atomically.

        Raises:
            StoreIOError: If the write or the final replace fails; *path*
                is left untouched.
        """
        sheets = self.serialize()
        atomic_write(Path(path), lambda tmp: write_workbook(tmp, sheets), attempts=attempts)
        logger.info(
            "Saved store %s: %d shard(s), %d row(s)",
            path,
            len(sheets),
            self._total_rows,
            extra={"event": events.STORE_SAVED},
        )
