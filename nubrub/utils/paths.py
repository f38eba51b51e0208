"""NubRub - Path safety utilities.

The containment check here is the only gate against directory traversal:
every filename taken from a manifest or an archive must pass
is_path_contained() against its own pack directory before any filesystem
operation touches it.

The invalid-character set is the Windows one and is applied on every
platform, so a pack that validates here also materializes on the target host.
"""

import re
from pathlib import Path

from nubrub.config import FALLBACK_PACK_NAME

INVALID_FILENAME_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(c) for c in range(32))

# Device names Windows refuses as file or folder names (with any extension)
RESERVED_DEVICE_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)

_WHITESPACE_RE = re.compile(r"\s")
_UNDERSCORE_RUN_RE = re.compile(r"_{2,}")
_TRAILING_JUNK_RE = re.compile(r"[._]+$")


def contains_invalid_chars(name: str) -> bool:
    """Return True if ``name`` has any character invalid in a file name."""
    return any(ch in INVALID_FILENAME_CHARS for ch in name)


def is_path_contained(candidate_path: str | Path, base_directory: str | Path) -> bool:
    """Check that a path stays inside a base directory.

    Both paths are resolved to canonical absolute form (symlinks followed,
    ``..`` collapsed). The comparison is segment-aware, so ``/packs2`` is not
    inside ``/packs``. A path equal to the base counts as contained.

    Never raises: paths that cannot be resolved (null bytes, loops, ...)
    are reported as not contained.

    Args:
        candidate_path: Path to check (relative paths resolve against CWD).
        base_directory: Directory the path must stay inside.

    Returns:
        True if candidate_path is base_directory or lies beneath it.
    """
    try:
        candidate = Path(candidate_path).resolve()
        base = Path(base_directory).resolve()
    except (OSError, RuntimeError, ValueError, TypeError):
        return False
    return candidate == base or base in candidate.parents


def sanitize_name(raw: str | None) -> str:
    """Turn a free-text pack name into a safe folder name.

    Invalid characters and whitespace become ``_``, runs of ``_`` collapse,
    leading underscores and trailing dots/underscores are stripped. Windows
    device names get a suffix. Total and idempotent: the result is never
    empty and sanitize_name(sanitize_name(x)) == sanitize_name(x).

    Args:
        raw: User-supplied name (may be None or blank).

    Returns:
        Folder-safe identifier, FALLBACK_PACK_NAME when nothing survives.
    """
    if not raw or not raw.strip():
        return FALLBACK_PACK_NAME

    sanitized = "".join("_" if ch in INVALID_FILENAME_CHARS else ch for ch in raw)
    sanitized = _WHITESPACE_RE.sub("_", sanitized.strip())
    sanitized = _UNDERSCORE_RUN_RE.sub("_", sanitized)
    sanitized = _TRAILING_JUNK_RE.sub("", sanitized).lstrip("_")

    if not sanitized:
        return FALLBACK_PACK_NAME

    head, dot, tail = sanitized.partition(".")
    if head.upper() in RESERVED_DEVICE_NAMES:
        sanitized = f"{head}_{FALLBACK_PACK_NAME}{dot}{tail}"

    return sanitized


def pack_directory(packs_root: str | Path, name: str) -> Path:
    """Get the canonical directory for a pack name under the packs root.

    Does NOT create the directory.

    Returns:
        Path: {packs_root}/{sanitize_name(name)}
    """
    return Path(packs_root) / sanitize_name(name)
