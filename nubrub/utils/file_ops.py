"""NubRub - Retrying file operations.

The playback component may hold read handles on pack assets at any time.
On Windows that makes delete/overwrite fail with a sharing violation until
the handle is closed. safe_delete() and safe_copy() absorb that with bounded
retry and exponential backoff instead of failing the user-facing operation.

Retry policy (see nubrub.config):
- FILE_OP_MAX_ATTEMPTS total attempts (5)
- FILE_OP_RETRY_DELAYS_SECONDS between attempts (0.2, 0.4, 0.8, 1.6)
- gc.collect() after each wait, so file objects stuck in reference cycles
  get closed before the next attempt
- exhaustion raises FileOperationError(FILE_IN_USE) naming the path

Waits are blocking; callers that need responsiveness run these off their
interaction thread.
"""

import errno
import gc
import logging
import os
import shutil
import time
from pathlib import Path

from nubrub.config import (
    COPY_DEST_DELETE_DELAYS_SECONDS,
    FILE_OP_MAX_ATTEMPTS,
    FILE_OP_RETRY_DELAYS_SECONDS,
)
from nubrub.errors import FileOperationError, PackErrorCode
from nubrub.utils.atomic_io import atomic_copy_file

logger = logging.getLogger(__name__)

_TRANSIENT_ERRNOS = frozenset(
    code
    for code in (
        errno.EACCES,
        errno.EBUSY,
        errno.EPERM,
        getattr(errno, "ETXTBSY", None),
    )
    if code is not None
)

# ERROR_ACCESS_DENIED, ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
_TRANSIENT_WINERRORS = frozenset({5, 32, 33})


def is_transient_error(exc: OSError) -> bool:
    """Return True for the sharing-violation / access-denied class of errors."""
    if isinstance(exc, FileNotFoundError):
        return False
    if getattr(exc, "winerror", None) in _TRANSIENT_WINERRORS:
        return True
    return isinstance(exc, PermissionError) or exc.errno in _TRANSIENT_ERRNOS


def is_same_file(first: str | Path, second: str | Path) -> bool:
    """Check whether two paths name the same file.

    Uses the filesystem identity when both exist, otherwise compares the
    canonical (case-normalized on Windows) absolute paths.
    """
    try:
        first, second = Path(first), Path(second)
        if first.exists() and second.exists():
            return os.path.samefile(first, second)
        return os.path.normcase(first.resolve()) == os.path.normcase(second.resolve())
    except (OSError, ValueError):
        return False


def _reclaim_handles() -> None:
    gc.collect()


def _backoff(attempt: int, path: Path, exc: OSError) -> None:
    """Sleep before attempt ``attempt + 1``."""
    delay = FILE_OP_RETRY_DELAYS_SECONDS[min(attempt - 1, len(FILE_OP_RETRY_DELAYS_SECONDS) - 1)]
    logger.debug(
        "Transient error on %s (attempt %d/%d): %s; retrying in %.1fs",
        path,
        attempt,
        FILE_OP_MAX_ATTEMPTS,
        exc,
        delay,
    )
    time.sleep(delay)
    _reclaim_handles()


def _delete_once(path: Path, recursive: bool) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        if recursive:
            shutil.rmtree(path)
        else:
            path.rmdir()
    else:
        raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))


def safe_delete(path: str | Path, recursive: bool = True) -> None:
    """Delete a file or directory, retrying while it is locked.

    A path that does not exist (or vanishes mid-retry) counts as deleted.

    Args:
        path: File or directory to remove.
        recursive: Remove directory contents too (default: True).

    Raises:
        FileOperationError: FILE_IN_USE when retries are exhausted,
            IO_FAILED for a non-transient error (raised immediately).
    """
    path = Path(path)
    for attempt in range(1, FILE_OP_MAX_ATTEMPTS + 1):
        try:
            _delete_once(path, recursive)
            return
        except FileNotFoundError:
            return
        except OSError as exc:
            if not is_transient_error(exc):
                raise FileOperationError(path, f"Failed to delete ({exc})") from exc
            if attempt >= FILE_OP_MAX_ATTEMPTS:
                raise FileOperationError(
                    path,
                    f"Failed to delete after {FILE_OP_MAX_ATTEMPTS} attempts, the pack may be in use",
                    PackErrorCode.FILE_IN_USE,
                ) from exc
            _backoff(attempt, path, exc)


def _clear_destination(dest: Path) -> None:
    """Remove an existing copy destination with a short inner retry.

    Raises:
        OSError: The last error when the destination stays locked.
    """
    for attempt in range(len(COPY_DEST_DELETE_DELAYS_SECONDS) + 1):
        try:
            dest.unlink()
            return
        except FileNotFoundError:
            return
        except OSError as exc:
            if not is_transient_error(exc) or attempt >= len(COPY_DEST_DELETE_DELAYS_SECONDS):
                raise
            time.sleep(COPY_DEST_DELETE_DELAYS_SECONDS[attempt])


def safe_copy(source: str | Path, dest: str | Path) -> None:
    """Copy a file over a destination that may be locked.

    No-op when source and dest are the same file. Otherwise clears an
    existing destination (short inner retry), then copies atomically; the
    whole step is retried with the same backoff as safe_delete().

    Args:
        source: File to copy.
        dest: Destination file path (parent must exist).

    Raises:
        FileOperationError: IO_FAILED if the source is missing or a
            non-transient error occurs, FILE_IN_USE when retries run out.
    """
    source = Path(source)
    dest = Path(dest)

    if is_same_file(source, dest):
        return

    for attempt in range(1, FILE_OP_MAX_ATTEMPTS + 1):
        try:
            if dest.exists():
                _clear_destination(dest)
            atomic_copy_file(source, dest)
            return
        except FileNotFoundError as exc:
            raise FileOperationError(source, "Failed to copy, file not found") from exc
        except OSError as exc:
            if not is_transient_error(exc):
                raise FileOperationError(source, f"Failed to copy ({exc})") from exc
            if attempt >= FILE_OP_MAX_ATTEMPTS:
                raise FileOperationError(
                    dest,
                    f"Failed to copy {source.name} after {FILE_OP_MAX_ATTEMPTS} attempts, "
                    "the pack may be in use",
                    PackErrorCode.FILE_IN_USE,
                ) from exc
            _backoff(attempt, dest, exc)
