"""Excel workbook persistence for the sharded store.

This module is responsible for:

* Rendering shards into an ``.xlsx`` workbook: one worksheet per shard, the
  fixed header row first, then one record per row.
* Reading a workbook back into raw :class:`SheetData` without interpreting
  or deduplicating rows.  Interpretation is left to the store, the health
  validator, and the rebuilder.

Workbooks are written with :mod:`openpyxl` in write-only mode and read in
read-only mode, so neither direction keeps a full cell object graph in
memory.

Typical usage::

    from listingstore.storage.workbook import read_workbook, write_workbook

    sheets = read_workbook(Path("master-listings.xlsx"))
    write_workbook(Path("copy.xlsx"), sheets)
"""

from __future__ import annotations

import logging
import zipfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from openpyxl import Workbook, load_workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE, Cell
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from listingstore.core.exceptions import StoreCorruptedError, StoreIOError
from listingstore.core.models import STORE_COLUMNS

__all__ = [
    "EMPTY_SHEET_TITLE",
    "SheetData",
    "clean_cell",
    "read_workbook",
    "write_workbook",
]

logger = logging.getLogger(__name__)

_HEADER_FONT = Font(bold=True)

#: Title of the header-only sheet written for a store with no shards.  The
#: xlsx format requires at least one visible worksheet; readers skip it.
EMPTY_SHEET_TITLE: str = "_EMPTY"

#: Errors openpyxl raises for files that exist but are not valid workbooks.
_PARSE_ERRORS: tuple[type[Exception], ...] = (
    InvalidFileException,
    zipfile.BadZipFile,
    KeyError,
    ValueError,
    TypeError,
    IndexError,
)


@dataclass
class SheetData:
    """Raw contents of one worksheet.

    Attributes:
        title: Worksheet title (the shard key for stores we wrote).
        header: First row as text, or an empty tuple for an empty sheet.
        rows: Every subsequent row as a tuple of text cells.  Rows are not
            padded or truncated; blank cells are ``""``.
    """

    title: str
    header: tuple[str, ...] = ()
    rows: list[tuple[str, ...]] = field(default_factory=list)

    @property
    def has_expected_header(self) -> bool:
        """``True`` if the header matches :data:`STORE_COLUMNS` (case-insensitive)."""
        normalized = tuple(cell.strip().upper() for cell in self.header[: len(STORE_COLUMNS)])
        trailing = self.header[len(STORE_COLUMNS):]
        return normalized == STORE_COLUMNS and not any(cell.strip() for cell in trailing)


def clean_cell(value: object) -> str:
    """Convert a cell value to text; ``None`` becomes ``""``.

    Whole-number floats (Excel's only numeric type) lose their ``.0`` so a
    postal code such as ``12345`` typed into a spreadsheet survives a read.
    """
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _strip_illegal(value: str) -> str:
    """Remove control characters the xlsx format cannot store."""
    return ILLEGAL_CHARACTERS_RE.sub("", value)


def _text_cell(worksheet: object, value: str) -> Cell:
    """Build a cell stored as literal text, never as a formula or number."""
    cell = WriteOnlyCell(worksheet, value=_strip_illegal(value))
    cell.data_type = "s"
    return cell


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


def read_workbook(path: Path) -> list[SheetData]:
    """Read every worksheet of *path* as raw text rows, in workbook order.

    Args:
        path: Existing ``.xlsx`` file.

    Returns:
        One :class:`SheetData` per worksheet.

    Raises:
        StoreIOError: If the file is missing or unreadable at the OS level.
        StoreCorruptedError: If the file is not a parseable workbook.
    """
    path = Path(path)
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except OSError as exc:
        raise StoreIOError(path, f"cannot open store: {exc}") from exc
    except _PARSE_ERRORS as exc:
        raise StoreCorruptedError(path, f"not a readable workbook: {exc}") from exc

    sheets: list[SheetData] = []
    try:
        for worksheet in workbook.worksheets:
            sheet = SheetData(title=worksheet.title)
            for index, row in enumerate(worksheet.iter_rows(values_only=True)):
                cells = tuple(clean_cell(value) for value in row)
                if index == 0:
                    sheet.header = cells
                else:
                    sheet.rows.append(cells)
            if sheet.title == EMPTY_SHEET_TITLE and not sheet.rows:
                continue
            sheets.append(sheet)
    except OSError as exc:
        raise StoreIOError(path, f"read failed: {exc}") from exc
    except _PARSE_ERRORS as exc:
        raise StoreCorruptedError(path, f"damaged worksheet data: {exc}") from exc
    finally:
        workbook.close()

    logger.debug(
        "Read workbook %s: %d sheet(s), %d data row(s)",
        path,
        len(sheets),
        sum(len(s.rows) for s in sheets),
    )
    return sheets


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


def write_workbook(path: Path, sheets: Iterable[SheetData]) -> None:
    """Write *sheets* to *path* as a new workbook, in the order given.

    The header row is written in bold.  This function writes *path* directly;
    callers that replace a canonical file go through
    :func:`~listingstore.storage.files.atomic_write`.

    Args:
        path: Destination file.
        sheets: Worksheets to emit.  An empty iterable produces a single
            header-only :data:`EMPTY_SHEET_TITLE` sheet, which
            :func:`read_workbook` ignores.
    """
    sheets = list(sheets) or [SheetData(title=EMPTY_SHEET_TITLE)]
    workbook = Workbook(write_only=True)
    for sheet in sheets:
        worksheet = workbook.create_sheet(title=sheet.title)
        header_cells = []
        for name in sheet.header or STORE_COLUMNS:
            cell = _text_cell(worksheet, name)
            cell.font = _HEADER_FONT
            header_cells.append(cell)
        worksheet.append(header_cells)
        for row in sheet.rows:
            worksheet.append([_text_cell(worksheet, value) for value in row])
    workbook.save(path)
