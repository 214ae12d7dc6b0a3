"""Single entry point through which every candidate record enters the store.

:class:`RecordIngestor` coordinates the deduplication index, the sharded
store, and the spill manager for one store.  Each call to
:meth:`RecordIngestor.accept` completes before the next one starts.

Pipeline per candidate
----------------------
1. **Validate**: a blank ADDRESS or POSTAL is rejected as ``MALFORMED``.
2. **Store capacity**: at ``safe_max_rows`` total rows the candidate is
   refused and :attr:`RecordIngestor.store_full` is raised so the owner can
   rebuild.
3. **Classify**: exact duplicates are rejected without side effects.
4. **Append**: a full shard refuses the candidate; the index is not touched.
5. **Commit**: the keys are registered and the record is tracked for
   spilling.

Steps 3 to 5 are transactional: a record refused at step 4 leaves the index
exactly as it was, so it can be offered again after a rebuild.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from listingstore.core import events
from listingstore.core.models import Classification, Record, Verdict
from listingstore.storage.dedup import DeduplicationIndex
from listingstore.storage.sharded_store import AppendStatus, ShardedStore
from listingstore.storage.spill import SpillManager

__all__ = ["IngestStats", "RecordIngestor"]

logger = logging.getLogger(__name__)


@dataclass
class IngestStats:
    """Counters for every candidate offered to one ingestor.

    Attributes:
        received: Candidates offered to :meth:`RecordIngestor.accept`.
        accepted: Records appended to the store, variants included.
        variants: Accepted records that were variants of a known address.
        duplicates: Candidates rejected as exact duplicates.
        malformed: Candidates rejected for a blank ADDRESS or POSTAL.
        capacity_exceeded: Candidates refused because a shard or the whole
            store was full.
    """

    received: int = 0
    accepted: int = 0
    variants: int = 0
    duplicates: int = 0
    malformed: int = 0
    capacity_exceeded: int = 0


class RecordIngestor:
    """Validate, deduplicate, store, and track candidate records.

    The ingestor borrows its collaborators; it neither loads nor saves the
    store.  Replace them with :meth:`rebind` after a rebuild.

    Args:
        store: Store receiving accepted records.
        index: Index mirroring *store*.
        spill: Spill manager tracking this session's accepted records.
        safe_max_rows: Total rows at which the store refuses all candidates.
        capacity_warning_ratio: Fraction of *safe_max_rows* at which a
            warning is logged (once).
    """

    def __init__(
        self,
        store: ShardedStore,
        index: DeduplicationIndex,
        spill: SpillManager,
        *,
        safe_max_rows: int = 1_000_000,
        capacity_warning_ratio: float = 0.80,
    ) -> None:
        self.store = store
        self.index = index
        self.spill = spill
        self.safe_max_rows = safe_max_rows
        self.capacity_warning_ratio = capacity_warning_ratio
        self.stats = IngestStats()
        self.store_full = False
        self._capacity_warned = False

    def rebind(self, store: ShardedStore, index: DeduplicationIndex) -> None:
        """Point the ingestor at a freshly loaded store and its index.

        Clears :attr:`store_full`; counters are kept.
        """
        self.store = store
        self.index = index
        self.store_full = False
        self._capacity_warned = False

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def accept(self, record: Record) -> Verdict:
        """Offer one candidate record.

        Returns:
            The :class:`~listingstore.core.models.Verdict` for *record*.
            Variants are reported as ``ACCEPTED``.

        Raises:
            StoreIOError: If tracking the record forced a segment flush that
                failed.  The record is already in the store at that point.
        """
        self.stats.received += 1

        if not record.is_well_formed:
            self.stats.malformed += 1
            logger.debug(
                "Malformed record rejected: address=%r postal=%r",
                record.address,
                record.postal,
                extra={"event": events.RECORD_MALFORMED},
            )
            return Verdict.MALFORMED

        if self.store.total_rows >= self.safe_max_rows:
            self.stats.capacity_exceeded += 1
            if not self.store_full:
                logger.warning(
                    "Store full at %d rows; refusing new records until rebuilt",
                    self.store.total_rows,
                    extra={"event": events.RECORD_CAPACITY},
                )
            self.store_full = True
            return Verdict.CAPACITY_EXCEEDED

        outcome = self.index.classify(record)
        if outcome is Classification.EXACT_DUPLICATE:
            self.stats.duplicates += 1
            logger.debug(
                "Duplicate skipped: %s %s",
                record.address,
                record.postal,
                extra={"event": events.RECORD_DUPLICATE},
            )
            return Verdict.EXACT_DUPLICATE

        if self.store.append(record) is AppendStatus.CAPACITY_EXCEEDED:
            self.stats.capacity_exceeded += 1
            logger.warning(
                "Shard %s full; record refused: %s",
                self.store.route(record),
                record.address,
                extra={"event": events.RECORD_CAPACITY},
            )
            return Verdict.CAPACITY_EXCEEDED

        self.index.commit(record)
        self.stats.accepted += 1
        if outcome is Classification.VARIANT:
            self.stats.variants += 1
            logger.debug(
                "Variant accepted: %s %s (price=%s agent=%s)",
                record.address,
                record.postal,
                record.price,
                record.agent,
                extra={"event": events.RECORD_VARIANT},
            )
        else:
            logger.debug(
                "Record accepted: %s %s",
                record.address,
                record.postal,
                extra={"event": events.RECORD_ACCEPTED},
            )
        self._check_capacity_warning()
        self.spill.track(record)
        return Verdict.ACCEPTED

    def _check_capacity_warning(self) -> None:
        if self._capacity_warned:
            return
        if self.store.total_rows >= self.safe_max_rows * self.capacity_warning_ratio:
            self._capacity_warned = True
            logger.warning(
                "Store approaching capacity: %d of %d rows",
                self.store.total_rows,
                self.safe_max_rows,
                extra={"event": events.STORE_CAPACITY_WARNING},
            )
