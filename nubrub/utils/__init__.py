"""NubRub - Utility modules."""

from nubrub.utils.atomic_io import atomic_copy_file, atomic_write_text
from nubrub.utils.file_ops import safe_copy, safe_delete
from nubrub.utils.paths import (
    contains_invalid_chars,
    is_path_contained,
    pack_directory,
    sanitize_name,
)

__all__ = [
    # atomic_io
    "atomic_write_text",
    "atomic_copy_file",
    # file_ops
    "safe_delete",
    "safe_copy",
    # paths
    "is_path_contained",
    "sanitize_name",
    "contains_invalid_chars",
    "pack_directory",
]
