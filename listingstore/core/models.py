"""Listingstore core domain models.

This module defines the canonical :class:`Record` data model and the verdict
types shared by the deduplication, storage, and ingestion layers.

The crawler must normalise whatever it scraped into a :class:`Record` before
handing it to :meth:`~listingstore.ingest.ingestor.RecordIngestor.accept`.

Typical usage::

    from listingstore.core.models import Record

    record = Record(
        date="2025-09-15",
        address="1 Main St",
        city="Toronto",
        state="ON",
        postal="M5V3A8",
        agent="Smith",
        price="$800,000",
    )
"""

from __future__ import annotations

import logging
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "STORE_COLUMNS",
    "UPPERCASE_COLUMNS",
    "COORDINATE_SENTINEL",
    "Record",
    "Classification",
    "Verdict",
]

logger = logging.getLogger(__name__)

#: Fixed column order of every shard in the persisted store.  Also the
#: upper-case field names used in overflow segment files.
STORE_COLUMNS: tuple[str, ...] = (
    "DATE",
    "ADDRESS",
    "CITY",
    "STATE",
    "POSTAL",
    "AGENT",
    "BROKER",
    "PRICE",
    "LATITUDE",
    "LONGITUDE",
)

#: Columns emitted upper-cased on serialisation.  DATE and the numeric-string
#: columns are written verbatim.
UPPERCASE_COLUMNS: frozenset[str] = frozenset(
    {"ADDRESS", "CITY", "STATE", "POSTAL", "AGENT", "BROKER"}
)

#: Placeholder stored when a coordinate is missing.
COORDINATE_SENTINEL: str = "N/A"


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Classification(StrEnum):
    """Outcome of :meth:`~listingstore.storage.dedup.DeduplicationIndex.classify`."""

    ACCEPTED = "accepted"
    EXACT_DUPLICATE = "exact_duplicate"
    VARIANT = "variant"

    @property
    def is_new(self) -> bool:
        """``True`` for outcomes that should enter the store."""
        return self is not Classification.EXACT_DUPLICATE


class Verdict(StrEnum):
    """Answer returned to the crawler for each candidate record.

    Variants (same address, different price/agent) are reported as
    :attr:`ACCEPTED`; the ingestor counts them separately.
    """

    ACCEPTED = "accepted"
    EXACT_DUPLICATE = "exact_duplicate"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    MALFORMED = "malformed"


# ---------------------------------------------------------------------------
# Core domain model
# ---------------------------------------------------------------------------


class Record(BaseModel):
    """One real-estate listing as discovered by the crawler.

    Every field is a plain string.  Nothing is type-checked beyond presence:
    prices stay currency-formatted (``"$800,000"``), dates stay in whatever
    display format the source used, and coordinates are numeric strings or
    :data:`COORDINATE_SENTINEL`.

    Fields are declared in lower case and aliased to the upper-case column
    names used by the persisted store and the overflow segments, so both
    ``Record(address=...)`` and ``Record.model_validate({"ADDRESS": ...})``
    work.

    The model is **frozen**: once accepted into the store a record is never
    mutated, only dropped or superseded by a new composite key.
    """

    model_config = {"frozen": True, "populate_by_name": True}

    date: str = Field(default="", alias="DATE", description="Display date.")
    address: str = Field(default="", alias="ADDRESS", description="Street address.")
    city: str = Field(default="", alias="CITY")
    state: str = Field(default="", alias="STATE")
    postal: str = Field(default="", alias="POSTAL", description="Postal code, may be malformed.")
    agent: str = Field(default="", alias="AGENT")
    broker: str = Field(default="", alias="BROKER")
    price: str = Field(default="", alias="PRICE", description="Currency-formatted price.")
    latitude: str = Field(default=COORDINATE_SENTINEL, alias="LATITUDE")
    longitude: str = Field(default=COORDINATE_SENTINEL, alias="LONGITUDE")

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "date", "address", "city", "state", "postal", "agent", "broker", "price",
        mode="before",
    )
    @classmethod
    def _coerce_text(cls, v: object) -> object:
        """Turn ``None`` into ``""`` and typed spreadsheet cells into text."""
        if v is None:
            return ""
        if not isinstance(v, str):
            return str(v)
        return v

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coordinate_or_sentinel(cls, v: object) -> object:
        """Absent or blank coordinates become :data:`COORDINATE_SENTINEL`."""
        if v is None:
            return COORDINATE_SENTINEL
        if not isinstance(v, str):
            return str(v)
        if not v.strip():
            return COORDINATE_SENTINEL
        return v

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_well_formed(self) -> bool:
        """``True`` when both ADDRESS and POSTAL are non-blank."""
        return bool(self.address.strip() and self.postal.strip())

    def as_row(self) -> tuple[str, ...]:
        """Return field values in :data:`STORE_COLUMNS` order, unmodified."""
        return (
            self.date,
            self.address,
            self.city,
            self.state,
            self.postal,
            self.agent,
            self.broker,
            self.price,
            self.latitude,
            self.longitude,
        )

    @classmethod
    def from_row(cls, cells: tuple[object, ...] | list[object]) -> Record:
        """Build a record from positional cells in :data:`STORE_COLUMNS` order.

        Short rows are padded with blanks; cells beyond the tenth are ignored.
        """
        padded = list(cells[: len(STORE_COLUMNS)])
        padded.extend([None] * (len(STORE_COLUMNS) - len(padded)))
        return cls.model_validate(dict(zip(STORE_COLUMNS, padded, strict=True)))
