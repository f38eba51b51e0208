"""NubRub - Pack repository (discovery and lookup).

The repository is the read side of the packs root. It keeps no cache: every
query rescans the filesystem, so a commit followed by a list call always
sees the new pack, and edits or deletes made elsewhere are never stale.

Discovery is best-effort. A directory that fails any check (containment,
missing or invalid manifest, no usable sounds) is invisible, and the reason
goes to the debug log only. Nothing in list_packs/get_pack/resolve_* raises.

Built-in packs are a static catalog injected at construction. They have no
directory: their sounds are embedded in the playback component, so
resolve_asset_path() answers None for them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from nubrub.config import FALLBACK_PACK_NAME, INSTRUCTIONS_FILENAME, MANIFEST_FILENAME, PACKS_DIR
from nubrub.errors import (
    FileOperationError,
    PackExistsError,
    PackNotFoundError,
    PackValidationError,
    ReadOnlyPackError,
    UnsafePathError,
)
from nubrub.manifest import (
    PackManifest,
    check_asset,
    load_manifest_file,
    validate_manifest_assets,
)
from nubrub.utils.atomic_io import atomic_write_text
from nubrub.utils.atomic_io import cleanup_orphan_temp_files as _cleanup_dir
from nubrub.utils.file_ops import safe_delete
from nubrub.utils.paths import is_path_contained, pack_directory

logger = logging.getLogger(__name__)


INSTRUCTIONS_TEXT = """\
HOW TO CREATE CUSTOM AUDIO PACKS
================================

This folder holds your custom audio packs for NubRub.

1. Create a new folder in this directory (e.g. "MyCustomPack").

2. Inside that folder, create a file named "pack.json":

{
  "name": "My Custom Pack",
  "version": "1.0",
  "rubsounds": [
    "sound1.wav",
    "sound2.wav"
  ],
  "finishsound": [
    "trigger1.wav"
  ]
}

3. Put the WAV files in the same folder as pack.json.

4. Reopen the settings to see your pack in the list.

RULES
-----

- "name" (required): display name, at most 100 characters,
  none of < > : " / \\ | ? *
- "version" (optional): any text, defaults to "1.0"
- "rubsounds": WAV files played while the pointer moves
- "finishsound": WAV files played when the movement threshold is reached
- Only .wav files, each at most 50 MB, directly inside the pack folder
- At most 20 sounds per pack; above that, finish sounds are dropped
- pack.json itself must be smaller than 100 KB

Packs that break these rules are skipped without an error message.
"""


class FileLockReleaser(Protocol):
    """Playback-side hook called before destructive operations.

    release_file_locks() must close every handle the playback component holds
    on pack files and return only once it is safe to mutate them.
    """

    def release_file_locks(self) -> None: ...


def release_locks(lock_releaser: FileLockReleaser | None) -> None:
    """Invoke the release hook, if any.

    A failing hook is logged and ignored: the retrying file operations that
    follow still get their chance.
    """
    if lock_releaser is None:
        return
    try:
        lock_releaser.release_file_locks()
    except Exception:
        logger.warning("release_file_locks() failed; continuing with retries", exc_info=True)


@dataclass(frozen=True)
class PackRecord:
    """A discovered pack. Built fresh on every query, never persisted."""

    pack_id: str
    manifest: PackManifest
    directory: Path | None = None
    is_builtin: bool = False

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def version(self) -> str:
        return self.manifest.version


@dataclass
class ResolvedAssets:
    """Playable file paths for a custom pack."""

    rub_sounds: list[Path] = field(default_factory=list)
    finish_sounds: list[Path] = field(default_factory=list)


def _builtin(pack_id: str, name: str) -> PackRecord:
    return PackRecord(pack_id=pack_id, manifest=PackManifest(name=name), is_builtin=True)


BUILTIN_PACKS: tuple[PackRecord, ...] = (
    _builtin("squeak", "Squeak"),
    _builtin("nsfw", "NSFW"),
    _builtin("bugs", "Bugs"),
    _builtin("glass", "Glass"),
)


class PackRepository:
    """Discovers and looks up audio packs under a packs root.

    Args:
        packs_root: Directory holding one subdirectory per custom pack
            (default: config.PACKS_DIR).
        builtins: Built-in catalog (default: BUILTIN_PACKS).
    """

    def __init__(
        self,
        packs_root: str | Path | None = None,
        builtins: tuple[PackRecord, ...] = BUILTIN_PACKS,
    ):
        self.packs_root = Path(packs_root) if packs_root is not None else PACKS_DIR
        self.builtins = tuple(builtins)
        self._prepare_packs_root()

    def _prepare_packs_root(self) -> None:
        """Create the packs root and the instructions file (best-effort)."""
        try:
            self.packs_root.mkdir(parents=True, exist_ok=True)
            instructions = self.packs_root / INSTRUCTIONS_FILENAME
            if not instructions.exists():
                atomic_write_text(instructions, INSTRUCTIONS_TEXT)
        except OSError:
            logger.warning("Could not prepare packs root %s (non-fatal)", self.packs_root, exc_info=True)

    # --- Discovery ---

    def list_packs(self) -> list[PackRecord]:
        """Built-in packs followed by every valid custom pack."""
        return [*self.builtins, *self.list_custom_packs()]

    def list_custom_packs(self) -> list[PackRecord]:
        """Scan the immediate subdirectories of the packs root."""
        try:
            candidates = sorted(
                (entry for entry in self.packs_root.iterdir() if entry.is_dir()),
                key=lambda entry: entry.name.casefold(),
            )
        except OSError:
            logger.warning("Cannot scan packs root %s", self.packs_root, exc_info=True)
            return []

        records = []
        for directory in candidates:
            record = self._load_custom_pack(directory)
            if record is not None:
                records.append(record)
        return records

    def _load_custom_pack(self, directory: Path) -> PackRecord | None:
        if not is_path_contained(directory, self.packs_root):
            logger.debug("Security: pack directory %s escapes the packs root, skipped", directory)
            return None

        manifest_path = directory / MANIFEST_FILENAME
        if not is_path_contained(manifest_path, directory):
            logger.debug("Security: manifest %s escapes its pack directory, skipped", manifest_path)
            return None
        if not manifest_path.is_file():
            logger.debug("No %s in %s, skipped", MANIFEST_FILENAME, directory)
            return None

        try:
            manifest = load_manifest_file(manifest_path)
            manifest = validate_manifest_assets(manifest, directory)
        except PackValidationError as e:
            logger.debug("Invalid manifest in %s, skipped: %s", directory, e.message)
            return None
        except OSError as e:
            logger.debug("Cannot read %s, skipped: %s", manifest_path, e)
            return None
        except Exception:
            logger.warning("Unexpected error loading pack %s, skipped", directory, exc_info=True)
            return None

        if manifest.asset_count == 0:
            logger.debug("Pack %s has no usable sounds, skipped", directory)
            return None
        if self._is_builtin_id(directory.name):
            logger.debug("Pack folder %s is shadowed by a built-in pack id, skipped", directory)
            return None

        return PackRecord(pack_id=directory.name, manifest=manifest, directory=directory)

    def get_pack(self, pack_id: str | None) -> PackRecord | None:
        """Case-insensitive lookup: built-ins first, then a fresh scan."""
        if not pack_id:
            return None
        key = pack_id.casefold()
        for record in self.builtins:
            if record.pack_id.casefold() == key:
                return record
        for record in self.list_custom_packs():
            if record.pack_id.casefold() == key:
                return record
        return None

    def find_custom_by_name(self, name: str | None) -> PackRecord | None:
        """Find a custom pack by display name (case-insensitive)."""
        if not name or not name.strip():
            return None
        key = name.strip().casefold()
        for record in self.list_custom_packs():
            if record.name.strip().casefold() == key:
                return record
        return None

    def resolve_asset_path(self, record: PackRecord, filename: str) -> Path | None:
        """Resolve one sound of a custom pack to a file path.

        The file is re-checked now (containment, suffix, size, existence)
        rather than trusted from discovery time. Built-ins answer None.
        """
        if record.is_builtin or record.directory is None:
            return None
        if filename not in record.manifest.all_sounds():
            logger.debug("%r is not part of pack %s", filename, record.pack_id)
            return None
        if not is_path_contained(record.directory, self.packs_root):
            logger.debug("Security: pack directory %s escapes the packs root", record.directory)
            return None
        reason = check_asset(filename, record.directory)
        if reason is not None:
            logger.debug("Cannot resolve asset for pack %s: %s", record.pack_id, reason)
            return None
        return record.directory / filename

    def resolve_assets(self, record: PackRecord) -> ResolvedAssets:
        """Resolve every sound of a pack; unresolvable ones are left out."""
        resolved = ResolvedAssets()
        for filename in record.manifest.rub_sounds:
            path = self.resolve_asset_path(record, filename)
            if path is not None:
                resolved.rub_sounds.append(path)
        for filename in record.manifest.finish_sounds:
            path = self.resolve_asset_path(record, filename)
            if path is not None:
                resolved.finish_sounds.append(path)
        return resolved

    # --- Materialization helpers (used by import and authoring) ---

    def _is_builtin_id(self, pack_id: str) -> bool:
        key = pack_id.casefold()
        return any(record.pack_id.casefold() == key for record in self.builtins)

    def directory_for(self, name: str) -> Path:
        """Folder a pack with this display name lives in (not created).

        A folder name equal to a built-in pack id gets the fallback suffix
        ("Glass" -> "Glass_AudioPack"), so every custom pack id resolves to
        the custom pack.
        """
        directory = pack_directory(self.packs_root, name)
        if self._is_builtin_id(directory.name):
            directory = directory.with_name(f"{directory.name}_{FALLBACK_PACK_NAME}")
        return directory

    def create_pack_directory(self, name: str) -> Path:
        """Create the folder for a new pack, exclusively.

        Raises:
            PackExistsError: The folder already exists (including a lost race
                against a concurrent create of the same name).
            UnsafePathError: The folder would land outside the packs root.
            FileOperationError: The folder could not be created.
        """
        target = self.directory_for(name)
        if not is_path_contained(target, self.packs_root) or target.name in ("", ".", ".."):
            raise UnsafePathError(target)
        try:
            self.packs_root.mkdir(parents=True, exist_ok=True)
            target.mkdir(exist_ok=False)
        except FileExistsError as e:
            raise PackExistsError(name) from e
        except OSError as e:
            raise FileOperationError(target, f"Failed to create pack directory ({e})") from e
        return target

    # --- Deletion ---

    def delete_pack(self, pack_id: str, lock_releaser: FileLockReleaser | None = None) -> None:
        """Delete a custom pack's directory (user-initiated).

        Raises:
            PackNotFoundError: No pack with this id.
            ReadOnlyPackError: The pack is built-in.
            UnsafePathError: The pack directory is not inside the packs root.
            FileOperationError: Deletion failed (FILE_IN_USE after retries).
        """
        record = self.get_pack(pack_id)
        if record is None:
            raise PackNotFoundError(pack_id)
        if record.is_builtin or record.directory is None:
            raise ReadOnlyPackError(record.pack_id)

        directory = record.directory
        if not is_path_contained(directory, self.packs_root) or is_path_contained(
            self.packs_root, directory
        ):
            raise UnsafePathError(directory)

        release_locks(lock_releaser)
        safe_delete(directory, recursive=True)
        logger.info("Deleted audio pack %s (%s)", record.pack_id, record.name)

    # --- Housekeeping ---

    def cleanup_orphan_temp_files(self) -> int:
        """Remove leftovers of interrupted atomic writes (best-effort).

        Returns:
            Number of temp files removed.
        """
        total = 0
        try:
            total += _cleanup_dir(self.packs_root)
            for entry in self.packs_root.iterdir():
                if entry.is_dir() and is_path_contained(entry, self.packs_root):
                    total += _cleanup_dir(entry)
        except OSError:
            logger.warning("Orphan temp cleanup failed (non-fatal)", exc_info=True)
        if total:
            logger.info("Removed %d orphan temp files under %s", total, self.packs_root)
        return total


__all__ = [
    "BUILTIN_PACKS",
    "FileLockReleaser",
    "PackRecord",
    "PackRepository",
    "ResolvedAssets",
    "release_locks",
]
