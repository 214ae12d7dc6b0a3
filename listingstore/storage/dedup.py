"""In-memory deduplication index for listing records.

Provides :class:`DeduplicationIndex`, which decides whether a candidate
record is new, an exact re-submission, or a legitimate variant of a listing
already seen at the same address.

Classification rules
--------------------
1. No record registered under the candidate's primary key → ``ACCEPTED``.
2. A record exists under the primary key and its discriminator (price +
   agent) equals the candidate's → ``EXACT_DUPLICATE``.
3. Otherwise → ``VARIANT``, unless the candidate's composite key was already
   registered by an earlier variant, in which case → ``EXACT_DUPLICATE``.

The index is split into a side-effect-free :meth:`DeduplicationIndex.classify`
and a :meth:`DeduplicationIndex.commit` that registers the keys.  The
ingestor only commits after the store append succeeded, so a record refused
for capacity leaves no trace in the index.  :meth:`DeduplicationIndex.admit`
combines the two for callers (such as the rebuilder) that have no second
step to coordinate with.

Typical usage::

    from listingstore.storage.dedup import DeduplicationIndex

    index = DeduplicationIndex()
    outcome = index.admit(record)
    if outcome.is_new:
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from listingstore.core.keys import key_parts
from listingstore.core.models import Classification, Record

__all__ = ["DeduplicationIndex"]

logger = logging.getLogger(__name__)


class DeduplicationIndex:
    """Primary-key and composite-key registry for one store.

    The index mirrors the store's contents: every record in the store has
    its composite key registered, and every primary key remembers the
    discriminator of the first record stored under it.
    """

    def __init__(self) -> None:
        # (address, postal) -> (price, agent) of the first record registered under it
        self._first_discriminator: dict[tuple[str, str], tuple[str, str]] = {}
        self._composites: set[tuple[str, str, str, str]] = set()

    @classmethod
    def from_records(cls, records: Iterable[Record]) -> DeduplicationIndex:
        """Build an index registering every record, duplicates included.

        Used to mirror a store loaded from disk.  Records are registered
        unconditionally; cleaning a damaged store is the rebuilder's job.
        """
        index = cls()
        for record in records:
            index.commit(record)
        logger.debug(
            "Index seeded: %d composite key(s) under %d primary key(s)",
            len(index),
            index.primary_key_count,
        )
        return index

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def classify(self, candidate: Record) -> Classification:
        """Classify *candidate* against the index without modifying it."""
        parts = key_parts(candidate)
        first = self._first_discriminator.get(parts[:2])
        if first is None:
            return Classification.ACCEPTED
        if first == parts[2:]:
            return Classification.EXACT_DUPLICATE
        if parts in self._composites:
            return Classification.EXACT_DUPLICATE
        return Classification.VARIANT

    def __contains__(self, record: object) -> bool:
        if not isinstance(record, Record):
            return False
        return key_parts(record) in self._composites

    def __len__(self) -> int:
        return len(self._composites)

    @property
    def primary_key_count(self) -> int:
        """Number of distinct physical listings registered."""
        return len(self._first_discriminator)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def commit(self, record: Record) -> None:
        """Register *record*'s primary and composite keys."""
        parts = key_parts(record)
        self._first_discriminator.setdefault(parts[:2], parts[2:])
        self._composites.add(parts)

    def admit(self, candidate: Record) -> Classification:
        """Classify *candidate* and register it unless it is a duplicate."""
        outcome = self.classify(candidate)
        if outcome.is_new:
            self.commit(candidate)
        return outcome

    def clear(self) -> None:
        """Forget every registered key."""
        self._first_discriminator.clear()
        self._composites.clear()
