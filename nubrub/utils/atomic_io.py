"""NubRub - Atomic I/O utilities.

Publish rule for everything written into a pack directory:
1. Write to a temp sibling ({name}.tmp) in the same directory
2. Flush + best-effort fsync
3. os.replace temp -> final (the publish boundary)

A reader (discovery scan, playback) therefore sees either the old file or
the complete new one, never a torn manifest or a half-copied WAV. Temp
files never end in .wav or .json, so an interrupted write is invisible to
discovery; cleanup_orphan_temp_files() removes them at startup.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def _temp_path_for(final_path: Path, temp_suffix: str = TEMP_SUFFIX) -> Path:
    return final_path.with_name(final_path.name + temp_suffix)


def _write_all(fd: int, data: bytes) -> None:
    """Write every byte to a file descriptor, looping over short writes.

    Raises:
        OSError: If the write fails or makes no progress.
    """
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except InterruptedError:
            continue
        if written == 0:
            raise OSError("os.write() returned 0 bytes unexpectedly")
        view = view[written:]


def _fsync_directory(dir_path: Path) -> None:
    """Best-effort fsync on a directory so the rename itself is durable.

    Not available on Windows (no O_DIRECTORY); errors are ignored.
    """
    try:
        fd = os.open(dir_path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except (OSError, AttributeError):
        pass


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def atomic_write_bytes(final_path: str | Path, data: bytes) -> None:
    """Atomically write bytes to a file.

    The parent directory must already exist: creating pack directories is
    the caller's decision (exclusive creation on commit).

    Raises:
        OSError: If the write or the rename fails. The temp file is removed.
    """
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path)

    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        _write_all(fd, data)
        os.fsync(fd)
    except OSError:
        os.close(fd)
        _remove_quietly(temp_path)
        raise
    os.close(fd)

    try:
        os.replace(temp_path, final_path)
    except OSError:
        _remove_quietly(temp_path)
        raise
    _fsync_directory(final_path.parent)


def atomic_write_text(final_path: str | Path, text: str, encoding: str = "utf-8") -> None:
    """Atomically write text to a file (manifests, instruction files)."""
    atomic_write_bytes(final_path, text.encode(encoding))


def atomic_copy_file(
    source_path: str | Path,
    final_path: str | Path,
    chunk_size: int = 65536,
) -> None:
    """Atomically copy a file.

    Copies into a temp sibling of final_path, fsyncs, then os.replace()s it
    over the destination. On Windows the replace fails with PermissionError
    while another process holds the destination open; callers that must
    tolerate that go through nubrub.utils.file_ops.safe_copy().

    Args:
        source_path: File to copy.
        final_path: Destination path (parent must exist).
        chunk_size: Buffer size for copying (default: 64KB).

    Raises:
        FileNotFoundError: If the source file does not exist.
        OSError: If the copy or rename fails. The temp file is removed.
    """
    source_path = Path(source_path)
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path)

    if not source_path.is_file():
        raise FileNotFoundError(f"Source file not found: {source_path}")

    src_fd = os.open(source_path, os.O_RDONLY | getattr(os, "O_BINARY", 0))
    try:
        dst_fd = os.open(
            temp_path,
            os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0),
            0o644,
        )
        try:
            while chunk := os.read(src_fd, chunk_size):
                _write_all(dst_fd, chunk)
            os.fsync(dst_fd)
        except OSError:
            os.close(dst_fd)
            _remove_quietly(temp_path)
            raise
        os.close(dst_fd)
    finally:
        os.close(src_fd)

    try:
        os.replace(temp_path, final_path)
    except OSError:
        _remove_quietly(temp_path)
        raise
    _fsync_directory(final_path.parent)


@contextmanager
def atomic_output_path(final_path: str | Path) -> Iterator[Path]:
    """Yield a temp path to write; publish it over final_path on success.

    For writers that need a filename rather than bytes (zipfile). If the
    body raises, the temp file is removed and final_path is untouched.

    Usage:
        with atomic_output_path(dest) as tmp:
            with zipfile.ZipFile(tmp, "w") as zf:
                ...
    """
    final_path = Path(final_path)
    temp_path = _temp_path_for(final_path)
    try:
        yield temp_path
        os.replace(temp_path, final_path)
    except BaseException:
        _remove_quietly(temp_path)
        raise
    _fsync_directory(final_path.parent)


def cleanup_orphan_temp_files(directory: str | Path, temp_suffix: str = TEMP_SUFFIX) -> int:
    """Remove temp files left behind by interrupted atomic writes.

    Best-effort: files that cannot be removed (still locked) are skipped.

    Returns:
        Number of files removed.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    removed = 0
    for temp_file in directory.glob(f"*{temp_suffix}"):
        if not temp_file.is_file():
            continue
        try:
            temp_file.unlink()
            removed += 1
        except OSError:
            logger.debug("Could not remove orphan temp file: %s", temp_file)
    return removed
