"""File-level primitives shared by the store, the spill manager, and the rebuilder.

* :func:`atomic_write` — write through a temporary sibling file, ``fsync``
  it, then ``os.replace`` it over the target.  Readers only ever see the old
  file or the complete new one.
* :func:`replace_file` — ``os.replace`` wrapped in a :mod:`tenacity` retry
  loop, for filesystems where a rename can fail transiently (antivirus
  scanners, network shares, a spreadsheet application holding the file).
* :func:`fsync_path` / :func:`fsync_directory` — flush a written file, or
  the directory entry of a rename, for callers that write and replace in
  separate steps.
* :func:`create_backup` — copy a file to a timestamped name in a backup
  directory.  Backups are never deleted by this package.
* :func:`timestamp_slug` — filesystem-safe UTC timestamp used in backup,
  rebuild, and snapshot file names.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from listingstore.core import events
from listingstore.core.exceptions import BackupError, StoreIOError

__all__ = [
    "TMP_SUFFIX",
    "timestamp_slug",
    "atomic_write",
    "replace_file",
    "create_backup",
    "fsync_path",
    "fsync_directory",
]

logger = logging.getLogger(__name__)

#: Suffix of in-flight temporary files.  Anything carrying it is garbage
#: left by an interrupted write and may be deleted.
TMP_SUFFIX: str = ".tmp"

#: Backup file names are ``backup-<timestamp>-<original name>``.
BACKUP_PREFIX: str = "backup-"


def timestamp_slug(now: datetime | None = None) -> str:
    """Return an ISO-8601 UTC timestamp with ``:`` and ``.`` replaced by ``-``.

    Example: ``2025-09-15T16-51-46-382104Z``.  Microsecond precision keeps
    names unique across back-to-back operations.
    """
    moment = now or datetime.now(UTC)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def fsync_path(path: Path) -> None:
    """Flush the contents of *path* to disk."""
    with open(path, "rb") as handle:
        os.fsync(handle.fileno())


def fsync_directory(directory: Path) -> None:
    """Flush *directory* so a rename inside it survives a crash."""
    # Directory fsync is unsupported on some platforms (Windows).
    with contextlib.suppress(OSError):
        fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


def replace_file(source: Path, destination: Path, *, attempts: int = 3) -> None:
    """Atomically move *source* over *destination*, retrying on ``OSError``.

    Args:
        source: Fully written file to move into place.
        destination: Target path; replaced if it exists.
        attempts: Total number of tries before the last error is re-raised.

    Raises:
        OSError: The final attempt's error, unchanged.
    """

    def _before_sleep(rs: RetryCallState) -> None:
        exc = rs.outcome.exception() if rs.outcome else None
        logger.warning(
            "Replacing %s: attempt %d/%d failed (%s), retrying",
            destination,
            rs.attempt_number,
            attempts,
            exc,
        )

    for attempt in Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.1, max=1.0),
        retry=retry_if_exception_type(OSError),
        reraise=True,
        before_sleep=_before_sleep,
    ):
        with attempt:
            os.replace(source, destination)


def atomic_write(
    path: Path,
    write_fn: Callable[[Path], None],
    *,
    attempts: int = 3,
) -> None:
    """Write *path* through a temporary sibling and atomically replace it.

    ``write_fn`` receives the temporary path and must write the complete
    file there.  On any failure the temporary file is removed and the
    original *path* is left exactly as it was.

    Args:
        path: Final destination.  Parent directories are created.
        write_fn: Callable producing the file content at the given path.
        attempts: Attempts for the final rename (see :func:`replace_file`).

    Raises:
        StoreIOError: If writing, syncing, or renaming fails with ``OSError``.
    """
    path = Path(path)
    tmp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.name}.", suffix=TMP_SUFFIX
        )
        os.close(fd)
        tmp_path = Path(tmp_name)
        write_fn(tmp_path)
        fsync_path(tmp_path)
        replace_file(tmp_path, path, attempts=attempts)
        fsync_directory(path.parent)
        tmp_path = None
    except OSError as exc:
        raise StoreIOError(path, f"write failed: {exc}") from exc
    finally:
        if tmp_path is not None and tmp_path.exists():
            with contextlib.suppress(OSError):
                tmp_path.unlink()


def create_backup(path: Path, backup_dir: Path) -> Path:
    """Copy *path* to ``backup_dir / "backup-<timestamp>-<name>"``.

    Args:
        path: Existing file to back up.
        backup_dir: Destination directory; created if absent.

    Returns:
        Path of the new backup file.

    Raises:
        BackupError: If *path* does not exist or the copy fails.  Callers
            that were about to modify *path* must not proceed.
    """
    path = Path(path)
    if not path.exists():
        raise BackupError(path, "cannot back up a file that does not exist")

    backup_path = Path(backup_dir) / f"{BACKUP_PREFIX}{timestamp_slug()}-{path.name}"
    try:
        backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, backup_path)
        fsync_path(backup_path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            backup_path.unlink(missing_ok=True)
        raise BackupError(path, f"backup to {backup_path} failed: {exc}") from exc

    logger.info(
        "Backup created: %s",
        backup_path,
        extra={"event": events.BACKUP_CREATED},
    )
    return backup_path
