"""Record source interface between crawlers and the ingestion session.

A crawler is anything that yields :class:`~listingstore.core.models.Record`
objects.  Subclass :class:`RecordSource`, implement :meth:`RecordSource.records`,
and check :attr:`RecordSource.stopped` between pages so a session (or a
signal handler) can stop the crawl cleanly.

:class:`JsonLinesSource` is the built-in source used by the ``ingest``
command: one JSON object per line, field names in upper or lower case.

Typical usage::

    with JsonLinesSource(Path("scrape.jsonl")) as source:
        session.ingest(source)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from pathlib import Path
from types import TracebackType
from typing import IO

from pydantic import ValidationError

from listingstore.core.exceptions import IngestionError
from listingstore.core.models import Record

__all__ = ["RecordSource", "JsonLinesSource"]

logger = logging.getLogger(__name__)


class RecordSource(ABC):
    """Abstract base for everything that feeds records into a session.

    Iterating a source yields records until it is exhausted or
    :meth:`stop` has been called.  Override :meth:`close` to release
    resources.
    """

    def __init__(self) -> None:
        self._stopped = False

    @abstractmethod
    def records(self) -> Iterator[Record]:
        """Yield candidate records in discovery order."""

    def __iter__(self) -> Iterator[Record]:
        for record in self.records():
            if self._stopped:
                return
            yield record

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Ask the source to yield nothing further."""
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    def close(self) -> None:  # noqa: B027
        """Release any resources held by this source.  No-op by default."""

    def __enter__(self) -> RecordSource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def _normalise_keys(payload: dict[str, object]) -> dict[str, object]:
    return {str(key).upper(): value for key, value in payload.items()}


class JsonLinesSource(RecordSource):
    """Read records from a JSON Lines file.

    Blank lines are ignored.  Lines that are not UTF-8 JSON objects, or that
    do not validate as a record, are skipped, logged, and counted in
    :attr:`parse_errors`.

    Args:
        path: File to read.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        self.parse_errors = 0
        self._handle: IO[bytes] | None = None

    def records(self) -> Iterator[Record]:
        if self._handle is None:
            try:
                self._handle = self.path.open("rb")
            except OSError as exc:
                raise IngestionError(f"cannot open source {self.path}: {exc}") from exc
        for line_number, raw in enumerate(self._handle, start=1):
            if not raw.strip():
                continue
            try:
                payload = json.loads(raw.decode("utf-8"))
                if not isinstance(payload, dict):
                    raise ValueError(f"expected an object, got {type(payload).__name__}")
                record = Record.model_validate(_normalise_keys(payload))
            except (ValueError, ValidationError) as exc:
                self.parse_errors += 1
                logger.warning("%s:%d skipped: %s", self.path, line_number, exc)
                continue
            yield record

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
