"""Listingstore command-line entry-point.

Usage:
    python -m listingstore health  [--store PATH]
    python -m listingstore rebuild [--store PATH] [--no-replace]
    python -m listingstore ingest FILE.jsonl [--store PATH] [--limit N]

``health`` prints the health report as JSON and exits 1 when the store is
unhealthy.  ``rebuild`` repairs the store under its file lock.  ``ingest``
runs one ingestion session fed from a JSON Lines file.

Every command reads the remaining configuration from the environment (and
``.env``) through :class:`~listingstore.core.settings.Settings`.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from listingstore.core import configure_logging
from listingstore.core.exceptions import ConfigError, ListingStoreError
from listingstore.core.settings import Settings, load_settings

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listingstore",
        description="Sharded, deduplicated storage for scraped real-estate listings.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    health = sub.add_parser("health", help="Scan the store and print a JSON health report.")
    health.add_argument("--store", default=None, metavar="PATH", help="Override STORE_PATH.")

    rebuild = sub.add_parser("rebuild", help="Rebuild the store from its salvageable rows.")
    rebuild.add_argument("--store", default=None, metavar="PATH", help="Override STORE_PATH.")
    rebuild.add_argument(
        "--no-replace",
        action="store_true",
        help="Leave the rebuilt store under its temporary name instead of replacing the original.",
    )

    ingest = sub.add_parser("ingest", help="Ingest records from a JSON Lines file.")
    ingest.add_argument("file", type=Path, help="JSON Lines file, one record per line.")
    ingest.add_argument("--store", default=None, metavar="PATH", help="Override STORE_PATH.")
    ingest.add_argument(
        "--limit",
        type=int,
        default=None,
        metavar="N",
        help="Stop after N records have been accepted.",
    )
    return parser


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))  # noqa: T201


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_health(settings: Settings) -> int:
    from listingstore.maintenance.health import StoreHealthValidator  # noqa: PLC0415

    report = StoreHealthValidator.from_settings(settings).scan(settings.store_path_resolved)
    _emit(report.as_dict())
    return 0 if report.is_healthy else 1


def _cmd_rebuild(settings: Settings, *, replace_original: bool) -> int:
    from listingstore.maintenance.rebuild import StoreRebuilder  # noqa: PLC0415
    from listingstore.storage.locking import store_lock  # noqa: PLC0415

    store_path = settings.store_path_resolved
    with store_lock(store_path, timeout=settings.lock_timeout):
        result = StoreRebuilder.from_settings(settings).rebuild(
            store_path, replace_original=replace_original
        )
    _emit(result.as_dict())
    return 0 if result.success and result.error is None else 1


def _cmd_ingest(settings: Settings, source_path: Path, *, limit: int | None) -> int:
    from listingstore.ingest.session import IngestionSession  # noqa: PLC0415
    from listingstore.ingest.source import JsonLinesSource  # noqa: PLC0415

    session = IngestionSession(settings)
    with session, JsonLinesSource(source_path) as source:
        session.ingest(source, limit=limit)
        parse_errors = source.parse_errors

    stats = session.stats
    _emit(
        {
            "session_id": stats.session_id,
            "ingest": asdict(stats.ingest),
            "parse_errors": parse_errors,
            "replayed": stats.replayed,
            "rebuilds": stats.rebuilds,
            "halted": stats.halted,
            "backup_path": stats.backup_path,
            "snapshot_path": stats.snapshot_path,
        }
    )
    return 1 if stats.halted else 0


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.store is not None:
        overrides["store_path"] = args.store
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.log_format is not None:
        overrides["log_format"] = args.log_format
    try:
        settings = load_settings(**overrides)
    except ConfigError as exc:
        print(f"listingstore: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(2)

    # Settings has already resolved flags, environment and .env.
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    try:
        if args.command == "health":
            code = _cmd_health(settings)
        elif args.command == "rebuild":
            code = _cmd_rebuild(settings, replace_original=not args.no_replace)
        else:
            code = _cmd_ingest(settings, args.file, limit=args.limit)
    except ListingStoreError as exc:
        logger.critical("%s failed: %s", args.command, exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
