"""NubRub - Interactive pack authoring (create, edit, save as new).

A session owns a mutable PackDraft: absolute source paths for the rub and
finish lists plus a name and version. The draft is never shared with the
repository's PackRecords; nothing touches the disk until a commit.

Commits:
- commit_as_new(): materializes the draft as a new pack directory. In edit
  mode a name that already exists is disambiguated automatically
  (" Copy", " Copy (2)", ...). If the target folder is the one backing the
  edited pack, the sounds are staged in a scratch directory first.
- commit_as_update(): edit mode only. Bumps the version, copies changed
  sounds in place, rewrites pack.json and removes .wav files the manifest
  no longer references.

Both accept a FileLockReleaser, called before anything is overwritten.
A missing source sound is a warning (skipped); directory or write failures
abort the commit. A create that fails part-way leaves its directory behind
for the caller to remove.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from nubrub.config import (
    ALLOWED_ASSET_SUFFIXES,
    COPY_SUFFIX,
    DEFAULT_PACK_VERSION,
    MANIFEST_FILENAME,
    MAX_ASSET_BYTES,
    MAX_ASSET_NAME_LENGTH,
    MAX_ASSETS_PER_PACK,
    MAX_PACK_NAME_LENGTH,
)
from nubrub.errors import (
    FileOperationError,
    InvalidStateError,
    PackErrorCode,
    PackExistsError,
    PackNotFoundError,
    PackValidationError,
    ReadOnlyPackError,
    UnsafePathError,
)
from nubrub.importer import CollisionPolicy
from nubrub.manifest import PackManifest, name_problems, serialize_manifest
from nubrub.repository import FileLockReleaser, PackRecord, PackRepository, release_locks
from nubrub.utils.atomic_io import atomic_write_text
from nubrub.utils.file_ops import is_same_file, safe_copy, safe_delete
from nubrub.utils.paths import contains_invalid_chars, is_path_contained

logger = logging.getLogger(__name__)

STAGING_TEMP_PREFIX = "nubrub_stage_"
_INTEGER_RE = re.compile(r"\s*[+-]?[0-9]+\s*")


def _parse_int(text: str) -> int | None:
    if not _INTEGER_RE.fullmatch(text):
        return None
    return int(text)


def increment_version(version: str | None) -> str:
    """Bump a free-form version string.

    "1.3" -> "1.4" (first two components integers; later ones are dropped),
    "2" -> "2.1", "02" -> "2.1", "-1.3" -> "-1.4", "abc" -> "abc.1", "" -> "1.1".
    """
    version = (version or "").strip()
    if not version:
        return "1.1"
    parts = version.split(".")
    numbers = [_parse_int(part) for part in parts[:2]]
    if len(parts) >= 2 and None not in numbers:
        return f"{numbers[0]}.{numbers[1] + 1}"
    if len(parts) == 1 and numbers[0] is not None:
        return f"{numbers[0]}.1"
    return f"{version}.1"


class AuthoringMode(StrEnum):
    CREATE = "create"
    EDIT = "edit"


@dataclass
class PackDraft:
    """Working copy of a pack being authored."""

    name: str = ""
    version: str = DEFAULT_PACK_VERSION
    rub_sounds: list[Path] = field(default_factory=list)
    finish_sounds: list[Path] = field(default_factory=list)

    def all_sounds(self) -> list[Path]:
        return self.rub_sounds + self.finish_sounds


@dataclass
class CommitResult:
    pack_id: str
    name: str
    version: str
    warnings: list[str] = field(default_factory=list)


def _dedupe_key(path: Path) -> str:
    return str(path.resolve()).casefold()


@contextmanager
def _staging_directory() -> Iterator[Path]:
    staging = Path(tempfile.mkdtemp(prefix=STAGING_TEMP_PREFIX))
    try:
        yield staging
    finally:
        shutil.rmtree(staging, ignore_errors=True)


class PackAuthoringSession:
    """Create or edit one pack.

    Use the create() / edit() constructors rather than calling this directly.
    """

    def __init__(
        self,
        repository: PackRepository,
        mode: AuthoringMode = AuthoringMode.CREATE,
        source: PackRecord | None = None,
    ):
        self.repository = repository
        self.mode = mode
        self.source = source
        self.draft = PackDraft()

    @classmethod
    def create(cls, repository: PackRepository, name: str | None = None) -> PackAuthoringSession:
        session = cls(repository, AuthoringMode.CREATE)
        if name is not None:
            session.set_name(name)
        return session

    @classmethod
    def edit(cls, repository: PackRepository, pack_id: str) -> PackAuthoringSession:
        """Start editing an existing custom pack.

        The draft is seeded with the pack's sounds resolved to absolute paths.

        Raises:
            PackNotFoundError: Unknown pack id.
            ReadOnlyPackError: Built-in pack.
        """
        record = repository.get_pack(pack_id)
        if record is None:
            raise PackNotFoundError(pack_id)
        if record.is_builtin:
            raise ReadOnlyPackError(record.pack_id)

        resolved = repository.resolve_assets(record)
        session = cls(repository, AuthoringMode.EDIT, record)
        session.draft = PackDraft(
            name=record.name,
            version=record.version,
            rub_sounds=[path.absolute() for path in resolved.rub_sounds],
            finish_sounds=[path.absolute() for path in resolved.finish_sounds],
        )
        return session

    # --- Draft mutations ---

    def set_name(self, name: str) -> None:
        """Rename the draft.

        Raises:
            PackValidationError: Name rules violated.
            PackExistsError: Another custom pack already uses the name (the
                pack being edited may keep its own).
        """
        name = (name or "").strip()
        problems = name_problems(name)
        if problems:
            raise PackValidationError("Invalid pack name", problems)
        existing = self.repository.find_custom_by_name(name)
        if existing is not None and not (
            self.source is not None and existing.pack_id == self.source.pack_id
        ):
            raise PackExistsError(name)
        self.draft.name = name

    def add_asset(self, path: str | Path) -> bool:
        """Append a sound to the rub list.

        Returns:
            False if the same file is already in the draft (either list).

        Raises:
            PackValidationError: ASSET_INVALID for a non-.wav, missing,
                oversized or badly named file, or a full pack.
        """
        path = Path(path).absolute()
        problems = []
        if path.suffix.lower() not in ALLOWED_ASSET_SUFFIXES:
            problems.append(f"{path.name!r} is not a .wav file")
        if contains_invalid_chars(path.name) or len(path.name) > MAX_ASSET_NAME_LENGTH:
            problems.append(f"{path.name!r} is not a valid sound filename")
        if not problems:
            try:
                if not path.is_file():
                    problems.append(f"{path} not found")
                elif path.stat().st_size > MAX_ASSET_BYTES:
                    problems.append(f"{path.name!r} is larger than {MAX_ASSET_BYTES // (1024 * 1024)} MB")
            except OSError as e:
                problems.append(f"{path} cannot be read ({e})")
        if problems:
            raise PackValidationError("Cannot add sound", problems, PackErrorCode.ASSET_INVALID)

        key = _dedupe_key(path)
        if any(_dedupe_key(existing) == key for existing in self.draft.all_sounds()):
            return False
        if len(self.draft.all_sounds()) >= MAX_ASSETS_PER_PACK:
            raise PackValidationError(
                "Cannot add sound",
                [f"a pack holds at most {MAX_ASSETS_PER_PACK} sounds"],
                PackErrorCode.ASSET_INVALID,
            )
        self.draft.rub_sounds.append(path)
        return True

    @staticmethod
    def _pop(items: list[Path], index: int, label: str) -> Path:
        if not 0 <= index < len(items):
            raise InvalidStateError(f"No {label} sound at index {index}")
        return items.pop(index)

    def remove_asset(self, index: int) -> Path:
        return self._pop(self.draft.rub_sounds, index, "rub")

    def remove_finish(self, index: int) -> Path:
        return self._pop(self.draft.finish_sounds, index, "finish")

    def promote_to_finish(self, index: int) -> None:
        """Move a rub sound to the end of the finish list."""
        self.draft.finish_sounds.append(self._pop(self.draft.rub_sounds, index, "rub"))

    def demote_from_finish(self, index: int) -> None:
        """Move a finish sound to the end of the rub list."""
        self.draft.rub_sounds.append(self._pop(self.draft.finish_sounds, index, "finish"))

    # --- Commit helpers ---

    def _check_ready(self) -> None:
        problems = name_problems(self.draft.name)
        if problems:
            raise PackValidationError("Invalid pack name", problems)
        if not self.draft.rub_sounds:
            raise PackValidationError(
                "Pack is incomplete", ["at least one rub sound is required"], PackErrorCode.ASSET_INVALID
            )

    def _plan_files(self, warnings: list[str]) -> tuple[list[Path], list[Path]]:
        """Drop missing sources and duplicate destination names, with warnings."""
        taken: set[str] = set()

        def keep(paths: list[Path]) -> list[Path]:
            kept = []
            for path in paths:
                if not path.is_file():
                    warnings.append(f"Sound file not found, skipped: {path}")
                    continue
                if path.name.casefold() in taken:
                    warnings.append(f"Duplicate sound filename, skipped: {path}")
                    continue
                taken.add(path.name.casefold())
                kept.append(path)
            return kept

        rub = keep(self.draft.rub_sounds)
        finish = keep(self.draft.finish_sounds)
        for warning in warnings:
            logger.warning(warning)
        if not rub:
            raise PackValidationError(
                "Pack is incomplete", ["none of the rub sounds could be found"], PackErrorCode.ASSET_INVALID
            )
        return rub, finish

    def _copy_into(self, sources: list[Path], directory: Path) -> None:
        for source in sources:
            dest = directory / source.name
            if not is_path_contained(dest, directory):
                raise UnsafePathError(dest)
            safe_copy(source, dest)

    @staticmethod
    def _write_manifest(directory: Path, manifest: PackManifest) -> None:
        try:
            atomic_write_text(directory / MANIFEST_FILENAME, serialize_manifest(manifest))
        except OSError as e:
            raise FileOperationError(directory / MANIFEST_FILENAME, f"Failed to write manifest ({e})") from e

    def _name_in_use(self, name: str) -> bool:
        if self.repository.find_custom_by_name(name) is not None:
            return True
        folder = self.repository.directory_for(name)
        if not folder.exists():
            return False
        return not (self.source is not None and is_same_file(folder, self.source.directory))

    def _copy_name(self, name: str) -> str:
        """First free name of the form '<name> Copy', '<name> Copy (2)', ..."""
        copy_number = 1
        while True:
            suffix = COPY_SUFFIX if copy_number == 1 else f"{COPY_SUFFIX} ({copy_number})"
            candidate = name[: MAX_PACK_NAME_LENGTH - len(suffix)].rstrip() + suffix
            if not self._name_in_use(candidate):
                return candidate
            copy_number += 1

    # --- Commits ---

    def commit_as_new(
        self,
        on_collision: CollisionPolicy = CollisionPolicy.ABORT,
        lock_releaser: FileLockReleaser | None = None,
    ) -> CommitResult:
        """Save the draft as a new pack.

        In edit mode a name collision is always resolved by the " Copy"
        rule. In create mode ``on_collision`` decides: ABORT raises
        PackExistsError, OVERWRITE deletes the existing pack first, RENAME
        applies the " Copy" rule.

        Returns:
            CommitResult with the new pack id and any per-sound warnings.

        Raises:
            PackValidationError: Draft is incomplete.
            PackExistsError: Name taken (create mode, ABORT) or the target
                folder appeared concurrently.
            FileOperationError: Directory creation, copy or write failed.
        """
        self._check_ready()
        name = self.draft.name
        version = self.draft.version or DEFAULT_PACK_VERSION

        if self.mode == AuthoringMode.EDIT:
            if self._name_in_use(name):
                name = self._copy_name(name)
                logger.info("Saving as new pack %r (name was taken)", name)
        else:
            existing = self.repository.find_custom_by_name(name)
            if existing is not None:
                if on_collision == CollisionPolicy.OVERWRITE:
                    self.repository.delete_pack(existing.pack_id, lock_releaser)
                elif on_collision == CollisionPolicy.RENAME:
                    name = self._copy_name(name)
                else:
                    raise PackExistsError(name)

        warnings: list[str] = []
        rub, finish = self._plan_files(warnings)
        release_locks(lock_releaser)

        target = self.repository.directory_for(name)
        same_directory = self.source is not None and is_same_file(target, self.source.directory)
        try:
            if same_directory:
                with _staging_directory() as staging:
                    self._copy_into(rub + finish, staging)
                    staged_rub = [staging / p.name for p in rub]
                    staged_finish = [staging / p.name for p in finish]
                    safe_delete(target, recursive=True)
                    target = self.repository.create_pack_directory(name)
                    self._copy_into(staged_rub + staged_finish, target)
            else:
                target = self.repository.create_pack_directory(name)
                self._copy_into(rub + finish, target)
        except OSError as e:
            raise FileOperationError(target, f"Failed to save pack ({e})") from e

        manifest = PackManifest(
            name=name,
            version=version,
            rub_sounds=tuple(p.name for p in rub),
            finish_sounds=tuple(p.name for p in finish),
        )
        self._write_manifest(target, manifest)
        logger.info("Created pack %r in %s", name, target)
        return CommitResult(pack_id=target.name, name=name, version=version, warnings=warnings)

    def commit_as_update(self, lock_releaser: FileLockReleaser | None = None) -> CommitResult:
        """Write the draft back into the edited pack's directory.

        Raises:
            InvalidStateError: Not in edit mode.
            UnsafePathError: The pack directory is outside the packs root.
            FileOperationError: Copy, write or cleanup failed. Files already
                replaced stay replaced.
        """
        if self.mode != AuthoringMode.EDIT or self.source is None or self.source.directory is None:
            raise InvalidStateError("Only an edited pack can be updated in place")
        self._check_ready()

        directory = self.source.directory
        if not is_path_contained(directory, self.repository.packs_root):
            raise UnsafePathError(directory)

        release_locks(lock_releaser)
        version = increment_version(self.draft.version)
        warnings: list[str] = []
        rub, finish = self._plan_files(warnings)

        try:
            for source in rub + finish:
                dest = directory / source.name
                if not is_path_contained(dest, directory):
                    raise UnsafePathError(dest)
                if is_same_file(source, dest):
                    continue
                safe_copy(source, dest)

            manifest = PackManifest(
                name=self.draft.name,
                version=version,
                rub_sounds=tuple(p.name for p in rub),
                finish_sounds=tuple(p.name for p in finish),
            )
            self._write_manifest(directory, manifest)

            referenced = {p.name.casefold() for p in rub + finish}
            for entry in directory.iterdir():
                if (
                    entry.is_file()
                    and entry.suffix.lower() in ALLOWED_ASSET_SUFFIXES
                    and entry.name.casefold() not in referenced
                ):
                    safe_delete(entry, recursive=False)
                    logger.debug("Removed unreferenced sound %s", entry)
        except OSError as e:
            raise FileOperationError(directory, f"Failed to update pack ({e})") from e

        self.draft.version = version
        logger.info("Updated pack %r to version %s", self.draft.name, version)
        return CommitResult(
            pack_id=self.source.pack_id, name=self.draft.name, version=version, warnings=warnings
        )


__all__ = [
    "AuthoringMode",
    "CommitResult",
    "PackAuthoringSession",
    "PackDraft",
    "increment_version",
]
