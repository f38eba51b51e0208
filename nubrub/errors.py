"""NubRub - Error taxonomy.

Every mutating entry point raises only PackError subclasses. Discovery
(list/get/resolve) never raises; it logs and skips instead.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path


class PackErrorCode(StrEnum):
    """Error codes surfaced to callers (API responses, CLI messages)."""

    MANIFEST_INVALID = "MANIFEST_INVALID"
    ASSET_INVALID = "ASSET_INVALID"
    PATH_UNSAFE = "PATH_UNSAFE"
    BUNDLE_NOT_FOUND = "BUNDLE_NOT_FOUND"
    BUNDLE_INVALID = "BUNDLE_INVALID"
    PACK_NOT_FOUND = "PACK_NOT_FOUND"
    PACK_EXISTS = "PACK_EXISTS"
    PACK_READ_ONLY = "PACK_READ_ONLY"
    FILE_IN_USE = "FILE_IN_USE"
    IO_FAILED = "IO_FAILED"
    INVALID_STATE = "INVALID_STATE"


class PackError(Exception):
    """Base exception for pack errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class PackValidationError(PackError):
    """Manifest, name or asset rules violated.

    ``reasons`` lists every individual problem so the user can fix them all
    in one go.
    """

    def __init__(
        self,
        message: str,
        reasons: list[str] | None = None,
        error_code: str = PackErrorCode.MANIFEST_INVALID,
    ):
        self.reasons = list(reasons or [])
        if self.reasons:
            message = f"{message}: {'; '.join(self.reasons)}"
        super().__init__(error_code, message)


class UnsafePathError(PackError):
    """A path escapes the directory it must stay inside."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        super().__init__(PackErrorCode.PATH_UNSAFE, f"Path escapes its base directory: {path}")


class BundleNotFoundError(PackError):
    def __init__(self, path: str | Path):
        self.path = str(path)
        super().__init__(PackErrorCode.BUNDLE_NOT_FOUND, f"Pack bundle not found: {path}")


class PackNotFoundError(PackError):
    def __init__(self, pack_id: str):
        self.pack_id = pack_id
        super().__init__(PackErrorCode.PACK_NOT_FOUND, f"Audio pack not found: {pack_id}")


class PackExistsError(PackError):
    """A custom pack (or its folder) with this name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(PackErrorCode.PACK_EXISTS, f"A pack named '{name}' already exists")


class ReadOnlyPackError(PackError):
    """Built-in packs cannot be edited, exported or deleted."""

    def __init__(self, pack_id: str):
        self.pack_id = pack_id
        super().__init__(PackErrorCode.PACK_READ_ONLY, f"Built-in pack is read-only: {pack_id}")


class FileOperationError(PackError):
    """A filesystem operation failed for good (after retries, if transient)."""

    def __init__(self, path: str | Path, reason: str, error_code: str = PackErrorCode.IO_FAILED):
        self.path = str(path)
        super().__init__(error_code, f"{reason}: {path}")


class InvalidStateError(PackError):
    """Operation called out of order (e.g. commit before validation)."""

    def __init__(self, message: str):
        super().__init__(PackErrorCode.INVALID_STATE, message)


__all__ = [
    "PackErrorCode",
    "PackError",
    "PackValidationError",
    "UnsafePathError",
    "BundleNotFoundError",
    "PackNotFoundError",
    "PackExistsError",
    "ReadOnlyPackError",
    "FileOperationError",
    "InvalidStateError",
]
