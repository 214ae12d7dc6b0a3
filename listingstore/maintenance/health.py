"""Store health validation.

:class:`StoreHealthValidator` inspects a store file (or an in-memory
:class:`~listingstore.storage.sharded_store.ShardedStore`) and produces a
:class:`HealthReport`.  It never modifies anything; acting on the report is
up to the session or the operator, normally by running the
:class:`~listingstore.maintenance.rebuild.StoreRebuilder`.

Rules
-----
* The workbook must exist and parse.
* Every sheet must start with the fixed store header, otherwise the shard is
  reported as corrupted.
* A store with no shards is reported.
* A shard holding more than ``safe_max_rows_per_shard`` rows is reported.
* Per shard, invalid rows (blank ADDRESS or POSTAL) must not exceed
  ``invalid_row_ratio`` of the valid rows.
* Store-wide, empty rows (every cell blank) must not exceed
  ``empty_row_ratio`` of all rows.
* More than ``capacity_warning_ratio`` of ``safe_max_rows`` total rows is
  reported as approaching capacity.

The capacity warning, an empty store, and a missing file are advisory: they
make the store unhealthy but do not call for a rebuild.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from listingstore.core import events
from listingstore.core.exceptions import StoreCorruptedError, StoreIOError
from listingstore.core.models import STORE_COLUMNS
from listingstore.core.settings import Settings
from listingstore.storage.sharded_store import ShardedStore, serialize_record
from listingstore.storage.workbook import SheetData, read_workbook

__all__ = [
    "IssueKind",
    "HealthIssue",
    "HealthReport",
    "StoreHealthValidator",
]

logger = logging.getLogger(__name__)

_ADDRESS_POS: int = STORE_COLUMNS.index("ADDRESS")
_POSTAL_POS: int = STORE_COLUMNS.index("POSTAL")


class IssueKind(StrEnum):
    MISSING = "missing"
    UNREADABLE = "unreadable"
    NO_SHARDS = "no_shards"
    CORRUPTED_SHARD = "corrupted_shard"
    OVERSIZED_SHARD = "oversized_shard"
    INVALID_ROWS = "invalid_rows"
    EMPTY_ROWS = "empty_rows"
    APPROACHING_CAPACITY = "approaching_capacity"


#: Issue kinds that leave the store usable as-is.
_ADVISORY_KINDS: frozenset[IssueKind] = frozenset(
    {IssueKind.MISSING, IssueKind.NO_SHARDS, IssueKind.APPROACHING_CAPACITY}
)


@dataclass(frozen=True)
class HealthIssue:
    """One finding of a health scan.

    Attributes:
        kind: Category of the finding.
        message: Human-readable description.
        shard: Shard (sheet title) concerned, or ``None`` for store-wide issues.
    """

    kind: IssueKind
    message: str
    shard: str | None = None

    @property
    def requires_rebuild(self) -> bool:
        return self.kind not in _ADVISORY_KINDS


@dataclass
class HealthReport:
    """Result of :meth:`StoreHealthValidator.scan`.

    Attributes:
        total_shards: Sheets found in the store.
        total_rows: Data rows across all sheets (header rows excluded).
        empty_rows: Rows whose every cell is blank.
        invalid_rows: Rows with a blank ADDRESS or POSTAL, empty rows included.
        corrupted_shards: Titles of sheets whose header is not the store header.
        findings: Every issue found, in detection order.
    """

    total_shards: int = 0
    total_rows: int = 0
    empty_rows: int = 0
    invalid_rows: int = 0
    corrupted_shards: list[str] = field(default_factory=list)
    findings: list[HealthIssue] = field(default_factory=list)

    @property
    def issues(self) -> list[str]:
        """Issue messages, in detection order."""
        return [finding.message for finding in self.findings]

    @property
    def is_healthy(self) -> bool:
        return not self.findings

    @property
    def requires_rebuild(self) -> bool:
        """``True`` if any finding calls for a rebuild."""
        return any(finding.requires_rebuild for finding in self.findings)

    def add(self, kind: IssueKind, message: str, shard: str | None = None) -> None:
        self.findings.append(HealthIssue(kind=kind, message=message, shard=shard))

    def as_dict(self) -> dict[str, Any]:
        """Plain-data view for JSON output."""
        return {
            "is_healthy": self.is_healthy,
            "requires_rebuild": self.requires_rebuild,
            "total_shards": self.total_shards,
            "total_rows": self.total_rows,
            "empty_rows": self.empty_rows,
            "invalid_rows": self.invalid_rows,
            "corrupted_shards": list(self.corrupted_shards),
            "issues": [
                {"kind": str(f.kind), "message": f.message, "shard": f.shard}
                for f in self.findings
            ],
        }


def _is_blank(value: str) -> bool:
    return not value.strip()


def _cell(row: Sequence[str], position: int) -> str:
    return row[position] if position < len(row) else ""


class StoreHealthValidator:
    """Apply the health rules to a store file or an in-memory store.

    Args:
        safe_max_rows: Store-wide row capacity used for the capacity warning.
        safe_max_rows_per_shard: Rows above which a shard is oversized.
        invalid_row_ratio: Tolerated invalid-to-valid ratio per shard.
        empty_row_ratio: Tolerated empty-to-total ratio store-wide.
        capacity_warning_ratio: Fraction of ``safe_max_rows`` that triggers
            the capacity warning.
    """

    def __init__(
        self,
        *,
        safe_max_rows: int = 1_000_000,
        safe_max_rows_per_shard: int = 1_000_000,
        invalid_row_ratio: float = 0.10,
        empty_row_ratio: float = 0.05,
        capacity_warning_ratio: float = 0.80,
    ) -> None:
        self.safe_max_rows = safe_max_rows
        self.safe_max_rows_per_shard = safe_max_rows_per_shard
        self.invalid_row_ratio = invalid_row_ratio
        self.empty_row_ratio = empty_row_ratio
        self.capacity_warning_ratio = capacity_warning_ratio

    @classmethod
    def from_settings(cls, settings: Settings) -> StoreHealthValidator:
        return cls(
            safe_max_rows=settings.store_safe_max_rows,
            safe_max_rows_per_shard=settings.health_safe_max_rows_per_shard,
            invalid_row_ratio=settings.health_invalid_row_ratio,
            empty_row_ratio=settings.health_empty_row_ratio,
            capacity_warning_ratio=settings.health_capacity_warning_ratio,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def scan(self, path: Path) -> HealthReport:
        """Scan the store file at *path*.

        Never raises for store problems; a missing or unparseable file is
        reported as an issue.
        """
        path = Path(path)
        if not path.exists():
            report = HealthReport()
            report.add(IssueKind.MISSING, f"store does not exist: {path}")
            return self._finish(report, path)
        try:
            sheets = read_workbook(path)
        except (StoreCorruptedError, StoreIOError) as exc:
            report = HealthReport()
            report.add(IssueKind.UNREADABLE, f"store unreadable: {exc}")
            return self._finish(report, path)
        return self._finish(self.scan_sheets(sheets), path)

    def scan_store(self, store: ShardedStore) -> HealthReport:
        """Apply the same rules to an in-memory store."""
        sheets = [
            SheetData(
                title=shard.key,
                header=STORE_COLUMNS,
                rows=[serialize_record(record) for record in shard.rows],
            )
            for shard in store.shards()
        ]
        return self.scan_sheets(sheets)

    def scan_sheets(self, sheets: Iterable[SheetData]) -> HealthReport:
        report = HealthReport()
        for sheet in sheets:
            report.total_shards += 1
            self._scan_sheet(sheet, report)

        if report.total_shards == 0:
            report.add(IssueKind.NO_SHARDS, "store contains no shards")

        if report.empty_rows > report.total_rows * self.empty_row_ratio:
            report.add(
                IssueKind.EMPTY_ROWS,
                f"excessive empty rows: {report.empty_rows} empty of "
                f"{report.total_rows} total",
            )

        if report.total_rows > self.safe_max_rows * self.capacity_warning_ratio:
            report.add(
                IssueKind.APPROACHING_CAPACITY,
                f"store approaching capacity: {report.total_rows} of "
                f"{self.safe_max_rows} rows",
            )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scan_sheet(self, sheet: SheetData, report: HealthReport) -> None:
        row_count = len(sheet.rows)
        report.total_rows += row_count

        if not sheet.has_expected_header:
            report.corrupted_shards.append(sheet.title)
            report.add(
                IssueKind.CORRUPTED_SHARD,
                f"corrupted shard {sheet.title!r}: unexpected header {list(sheet.header)}",
                shard=sheet.title,
            )

        if row_count > self.safe_max_rows_per_shard:
            report.add(
                IssueKind.OVERSIZED_SHARD,
                f"shard {sheet.title!r} has too many rows: {row_count} "
                f"(limit {self.safe_max_rows_per_shard})",
                shard=sheet.title,
            )

        empty = 0
        invalid = 0
        for row in sheet.rows:
            if all(_is_blank(cell) for cell in row):
                empty += 1
                invalid += 1
            elif _is_blank(_cell(row, _ADDRESS_POS)) or _is_blank(_cell(row, _POSTAL_POS)):
                invalid += 1
        valid = row_count - invalid
        report.empty_rows += empty
        report.invalid_rows += invalid

        if invalid > valid * self.invalid_row_ratio:
            report.add(
                IssueKind.INVALID_ROWS,
                f"shard {sheet.title!r} has excessive invalid rows: "
                f"{invalid} invalid, {valid} valid",
                shard=sheet.title,
            )

    @staticmethod
    def _finish(report: HealthReport, path: Path) -> HealthReport:
        if report.is_healthy:
            logger.info(
                "Store %s healthy: %d shard(s), %d row(s)",
                path,
                report.total_shards,
                report.total_rows,
                extra={"event": events.HEALTH_REPORT},
            )
        else:
            logger.warning(
                "Store %s has %d issue(s): %s",
                path,
                len(report.findings),
                "; ".join(report.issues),
                extra={"event": events.HEALTH_REPORT},
            )
        return report
