"""Memory-bounded buffering of accepted records into overflow segments.

Provides :class:`SpillManager`.  Every record accepted during a session is
tracked here; once ``buffer_threshold`` records are buffered they are
written to an immutable, numbered JSON segment in the spill directory and
the buffer is cleared.

Segment files
-------------
``<spill_dir>/<prefix><NNN>.json`` where ``NNN`` is the zero-padded segment
number (``temp-scrape-000.json``, ``temp-scrape-001.json``, …).  Each file is
a JSON array of records keyed by the upper-case column names.  Segments are
consumed strictly in ascending numeric order.

Flushes are synchronous: when :meth:`SpillManager.flush` returns, the
segment has been written through a temporary file, ``fsync``-ed and renamed
into place, so it survives a crash before the next :meth:`SpillManager.track`.

Typical usage::

    spill = SpillManager(Path("temp-data"), buffer_threshold=50)
    for record in accepted:
        spill.track(record)
    everything = spill.finalize()   # all tracked records, in order
    ...                              # persist them somewhere durable
    spill.cleanup()
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from listingstore.core import events
from listingstore.core.exceptions import StoreCorruptedError, StoreIOError
from listingstore.core.models import Record
from listingstore.storage.files import atomic_write

__all__ = [
    "SEGMENT_SUFFIX",
    "SpillStats",
    "SpillManager",
]

logger = logging.getLogger(__name__)

SEGMENT_SUFFIX: str = ".json"

#: Width of the zero-padded segment number.
SEGMENT_NUMBER_WIDTH: int = 3

_RECORD_LIST = TypeAdapter(list[Record])


@dataclass(frozen=True)
class SpillStats:
    """Point-in-time view of the spill manager's memory and disk footprint.

    Attributes:
        records_in_memory: Records buffered and not yet flushed.
        segment_count: Segments written this session (excluding recovered ones).
        records_spilled: Records written to those segments.
    """

    records_in_memory: int
    segment_count: int
    records_spilled: int


class SpillManager:
    """Buffer tracked records and spill them to numbered segments.

    Args:
        spill_dir: Directory for segment files; created on first flush.
        buffer_threshold: Records buffered before a flush is forced.
        prefix: Segment file name prefix.
        attempts: Attempts for each segment's final rename.
    """

    def __init__(
        self,
        spill_dir: Path,
        buffer_threshold: int,
        *,
        prefix: str = "temp-scrape-",
        attempts: int = 3,
    ) -> None:
        if buffer_threshold < 1:
            raise ValueError(f"buffer_threshold must be >= 1, got {buffer_threshold}")
        self.spill_dir = Path(spill_dir)
        self.buffer_threshold = buffer_threshold
        self.prefix = prefix
        self._attempts = attempts
        self._buffer: list[Record] = []
        self._segment_counter = 0
        self._segments: list[Path] = []
        self._records_spilled = 0
        self._recovered: list[Path] = []
        self._name_re = re.compile(
            rf"^{re.escape(prefix)}(\d+){re.escape(SEGMENT_SUFFIX)}$"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def segment_counter(self) -> int:
        """Number the next flushed segment will carry."""
        return self._segment_counter

    @property
    def segments(self) -> list[Path]:
        """Segments written by this manager, in ascending order."""
        return list(self._segments)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def stats(self) -> SpillStats:
        return SpillStats(
            records_in_memory=len(self._buffer),
            segment_count=len(self._segments),
            records_spilled=self._records_spilled,
        )

    def segment_path(self, number: int) -> Path:
        """Return the file path of segment *number*."""
        return self.spill_dir / f"{self.prefix}{number:0{SEGMENT_NUMBER_WIDTH}d}{SEGMENT_SUFFIX}"

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track(self, record: Record) -> None:
        """Buffer *record*, flushing when the threshold is reached.

        Raises:
            StoreIOError: If the triggered flush fails.  The record stays
                buffered and will be retried by the next flush.
        """
        self._buffer.append(record)
        if len(self._buffer) >= self.buffer_threshold:
            self.flush()

    def flush(self) -> Path | None:
        """Write the buffer as the next segment and clear it.

        Returns:
            Path of the new segment, or ``None`` if the buffer was empty.

        Raises:
            StoreIOError: If the segment cannot be written.  The buffer and
                counter are left unchanged.
        """
        if not self._buffer:
            return None

        path = self.segment_path(self._segment_counter)
        payload = _RECORD_LIST.dump_json(self._buffer, by_alias=True, indent=2)

        def _write(tmp: Path) -> None:
            tmp.write_bytes(payload)

        atomic_write(path, _write, attempts=self._attempts)

        count = len(self._buffer)
        self._segments.append(path)
        self._records_spilled += count
        self._buffer = []
        self._segment_counter += 1
        logger.debug(
            "Flushed %d record(s) to %s",
            count,
            path,
            extra={"event": events.SPILL_FLUSH},
        )
        return path

    def finalize(self) -> list[Record]:
        """Flush any remainder and return every tracked record in order.

        Raises:
            StoreIOError: If a segment cannot be written or read back.
            StoreCorruptedError: If a segment no longer parses.
        """
        self.flush()
        records: list[Record] = []
        for path in self._segments:
            records.extend(self.read_segment(path))
        logger.info(
            "Spill finalized: %d record(s) from %d segment(s)",
            len(records),
            len(self._segments),
        )
        return records

    def cleanup(self) -> None:
        """Delete this manager's segments and reset it.

        Removes the spill directory when it is left empty.  Call only after
        :meth:`finalize` output has been durably stored elsewhere.

        Raises:
            StoreIOError: If a segment cannot be deleted.
        """
        for path in self._segments:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreIOError(path, f"cannot delete segment: {exc}") from exc
        removed = len(self._segments)
        self._segments = []
        self._buffer = []
        self._segment_counter = 0
        self._records_spilled = 0
        self._remove_dir_if_empty()
        logger.info(
            "Spill cleanup: %d segment(s) deleted",
            removed,
            extra={"event": events.SPILL_CLEANUP},
        )

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    def existing_segments(self) -> list[Path]:
        """Segment files present in the spill directory, in ascending number order."""
        if not self.spill_dir.is_dir():
            return []
        numbered: list[tuple[int, Path]] = []
        for path in self.spill_dir.iterdir():
            match = self._name_re.match(path.name)
            if match and path.is_file():
                numbered.append((int(match.group(1)), path))
        return [path for _, path in sorted(numbered)]

    def recover(self) -> list[Record]:
        """Read segments left behind by an interrupted session.

        Numbering continues after the highest existing segment so new
        flushes never overwrite them.  The recovered files are kept until
        :meth:`discard_recovered` is called, which the owner does once the
        records are safe elsewhere.  Segments that no longer parse are
        skipped with an error log and kept on disk for inspection.

        Returns:
            Records from every readable leftover segment, in order.
        """
        found = self.existing_segments()
        records: list[Record] = []
        for path in found:
            try:
                records.extend(self.read_segment(path))
            except (StoreCorruptedError, StoreIOError) as exc:
                logger.error("Skipping unreadable leftover segment: %s", exc)
                continue
            self._recovered.append(path)
        if found:
            last = self._name_re.match(found[-1].name)
            if last:
                self._segment_counter = max(self._segment_counter, int(last.group(1)) + 1)
            logger.warning(
                "Recovered %d record(s) from %d leftover segment(s) in %s",
                len(records),
                len(self._recovered),
                self.spill_dir,
            )
        return records

    def discard_recovered(self) -> None:
        """Delete the segments returned by :meth:`recover`."""
        for path in self._recovered:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StoreIOError(path, f"cannot delete recovered segment: {exc}") from exc
        self._recovered = []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def read_segment(path: Path) -> list[Record]:
        """Load the records stored in one segment file."""
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise StoreIOError(path, f"cannot read segment: {exc}") from exc
        try:
            return _RECORD_LIST.validate_json(raw)
        except (ValidationError, json.JSONDecodeError) as exc:
            raise StoreCorruptedError(path, f"segment does not parse: {exc}") from exc

    def _remove_dir_if_empty(self) -> None:
        try:
            self.spill_dir.rmdir()
        except OSError:
            # Missing, or still holding files that are not ours.
            return
        logger.debug("Removed empty spill directory %s", self.spill_dir)
