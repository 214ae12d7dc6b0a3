"""Listingstore logging configuration.

Call ``configure_logging()`` once at process startup (e.g. in ``__main__``).
Every other module must define its own logger at module scope:

    import logging
    logger = logging.getLogger(__name__)

Supported environment variables (read at call time):
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR   (default: INFO)
    LOG_FORMAT  text | json                      (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = ["configure_logging", "JsonFormatter", "SESSION_ID_CTX", "SessionContextFilter"]

# ---------------------------------------------------------------------------
# Session-scoped context variable
# ---------------------------------------------------------------------------

#: Context variable holding the current ingestion-session identifier.
#: Set to a short hex string (``uuid4().hex[:8]``) when an
#: :class:`~listingstore.ingest.session.IngestionSession` opens and reset when
#: it closes.  Defaults to ``"-"`` outside of any session (CLI maintenance
#: commands, tests).
SESSION_ID_CTX: ContextVar[str] = ContextVar("session_id", default="-")

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

logger = logging.getLogger(__name__)

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_FORMATS = {"text", "json"}

# ``%(session_id)s`` is injected by :class:`SessionContextFilter`.
_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(session_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class SessionContextFilter(logging.Filter):
    """Inject the current session ID into every log record.

    Reads :data:`SESSION_ID_CTX` and sets ``record.session_id`` before the
    record reaches any formatter, so the text format can interpolate it and
    the JSON format surfaces it under ``"extra"``.

    Installed on the handler (not the logger) by :func:`configure_logging`.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.session_id = SESSION_ID_CTX.get("-")
        return True


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Configure the root logger for the entire process.

    Args:
        level: Logging level string (DEBUG/INFO/WARNING/ERROR/CRITICAL).
            Falls back to ``$LOG_LEVEL`` env var, then "INFO".
        fmt: Output format ("text" or "json").
            Falls back to ``$LOG_FORMAT`` env var, then "text".
        force: If True, reconfigure even if logging has already been set up.
            Useful in tests and CLI entry-points.

    Raises:
        ValueError: If *level* or *fmt* contain an unrecognised value.
    """
    resolved_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    resolved_fmt = (fmt or os.environ.get("LOG_FORMAT", "text")).lower()

    if resolved_level not in _VALID_LEVELS:
        raise ValueError(
            f"Unknown LOG_LEVEL {resolved_level!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_LEVELS))}"
        )
    if resolved_fmt not in _VALID_FORMATS:
        raise ValueError(
            f"Unknown LOG_FORMAT {resolved_fmt!r}. "
            f"Must be one of: {', '.join(sorted(_VALID_FORMATS))}"
        )

    root = logging.getLogger()

    if root.handlers and not force:
        # Already configured (e.g. by pytest's log_cli); only adjust the level.
        root.setLevel(resolved_level)
        return

    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.addFilter(SessionContextFilter())

    if resolved_fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_DATE_FORMAT))

    root.setLevel(resolved_level)
    root.addHandler(handler)

    # openpyxl and filelock are chatty at DEBUG; keep them quiet otherwise.
    if resolved_level != "DEBUG":
        for noisy in ("openpyxl", "filelock"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log record.

    Output shape (all fields always present)::

        {
            "ts":      "2026-02-28T12:34:56.789Z",
            "level":   "INFO",
            "logger":  "listingstore.maintenance.rebuild",
            "message": "Rebuild complete",
            "extra":   {"event": "REBUILD_COMPLETE", "session_id": "a3f2b1c0"}
        }

    Optional fields (present only when applicable)::

        "exc_info": "<traceback string>"
    """

    # Fields that belong to LogRecord but should NOT appear under "extra".
    _RECORD_ATTRS: frozenset[str] = frozenset(
        {
            "args",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "taskName",
            "thread",
            "threadName",
        }
    )

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        """Serialise *record* to a JSON string."""
        record.message = record.getMessage()

        ts = (
            datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%dT%H:%M:%S.")
            + f"{int(record.msecs):03d}Z"
        )

        payload: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        extra = {k: v for k, v in record.__dict__.items() if k not in self._RECORD_ATTRS}
        payload["extra"] = extra

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text

        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        try:
            return json.dumps(payload, default=str)
        except Exception:  # pragma: no cover
            return json.dumps(
                {
                    "ts": ts,
                    "level": "ERROR",
                    "logger": __name__,
                    "message": "JsonFormatter serialisation error",
                    "exc_info": traceback.format_exc(),
                    "extra": {},
                }
            )
