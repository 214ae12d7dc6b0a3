"""Structured log event name constants for the ingestion and storage layers.

Every key transition emits a log record with an ``event`` field (passed via
``extra={"event": events.X}``).  In ``LOG_FORMAT=json`` mode the value
surfaces as ``extra.event``; in text mode the message is self-describing.

Usage example::

    import logging
    from listingstore.core import events

    logger = logging.getLogger(__name__)

    logger.info("Segment flushed", extra={"event": events.SPILL_FLUSH})
"""

from __future__ import annotations

__all__ = [
    # Session lifecycle
    "SESSION_OPEN",
    "SESSION_CLOSE",
    "SESSION_REPLAY",
    "SESSION_HALT",
    # Record verdicts
    "RECORD_ACCEPTED",
    "RECORD_VARIANT",
    "RECORD_DUPLICATE",
    "RECORD_MALFORMED",
    "RECORD_CAPACITY",
    # Store
    "STORE_LOADED",
    "STORE_SAVED",
    "STORE_CAPACITY_WARNING",
    "BACKUP_CREATED",
    # Spill
    "SPILL_FLUSH",
    "SPILL_CLEANUP",
    # Maintenance
    "HEALTH_REPORT",
    "REBUILD_START",
    "REBUILD_COMPLETE",
    "REBUILD_FAILED",
]

# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

#: Session acquired the store lock and finished its startup checks.
SESSION_OPEN: str = "SESSION_OPEN"

#: Session flushed, saved, and released the store.
SESSION_CLOSE: str = "SESSION_CLOSE"

#: Records from an interrupted session's segments were re-ingested.
SESSION_REPLAY: str = "SESSION_REPLAY"

#: Ingestion stopped because the store could not be brought under capacity.
SESSION_HALT: str = "SESSION_HALT"

# ---------------------------------------------------------------------------
# Record verdicts
# ---------------------------------------------------------------------------

RECORD_ACCEPTED: str = "RECORD_ACCEPTED"
RECORD_VARIANT: str = "RECORD_VARIANT"
RECORD_DUPLICATE: str = "RECORD_DUPLICATE"
RECORD_MALFORMED: str = "RECORD_MALFORMED"
RECORD_CAPACITY: str = "RECORD_CAPACITY"

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

STORE_LOADED: str = "STORE_LOADED"
STORE_SAVED: str = "STORE_SAVED"

#: Total rows crossed the configured warning fraction of the store capacity.
STORE_CAPACITY_WARNING: str = "STORE_CAPACITY_WARNING"

BACKUP_CREATED: str = "BACKUP_CREATED"

# ---------------------------------------------------------------------------
# Spill
# ---------------------------------------------------------------------------

SPILL_FLUSH: str = "SPILL_FLUSH"
SPILL_CLEANUP: str = "SPILL_CLEANUP"

# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

HEALTH_REPORT: str = "HEALTH_REPORT"
REBUILD_START: str = "REBUILD_START"
REBUILD_COMPLETE: str = "REBUILD_COMPLETE"
REBUILD_FAILED: str = "REBUILD_FAILED"
