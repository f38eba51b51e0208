"""NubRub - Pack import (bundle -> packs root).

A bundle is a ZIP archive (conventionally *.nubrub) or a plain directory
whose root holds pack.json plus the WAV files it references.

Import session states:
    OPENED -> EXTRACTED -> MANIFEST_VALIDATED -> ASSETS_VALIDATED
           -> READY_TO_COMMIT -> COMMITTED
    any validation failure (or a collision abort) -> REJECTED

The bundle is always unpacked into an isolated temp directory first, never
into the packs root, so a half-validated bundle cannot pollute the
repository. Import is all-or-nothing: any missing or invalid asset rejects
the whole bundle, and a commit that fails part-way removes the directory it
created. The temp directory is removed on every exit path (close(), the
context manager, or a weakref finalizer when the session is dropped).
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
import weakref
import zipfile
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from nubrub.config import (
    ALLOWED_ASSET_SUFFIXES,
    IMPORT_RENAME_SUFFIX,
    MANIFEST_FILENAME,
    MAX_ARCHIVE_ENTRIES,
    MAX_ARCHIVE_TOTAL_BYTES,
    MAX_ASSET_BYTES,
    MAX_MANIFEST_BYTES,
    MAX_PACK_NAME_LENGTH,
    VERIFY_WAV_HEADERS,
)
from nubrub.errors import (
    BundleNotFoundError,
    FileOperationError,
    InvalidStateError,
    PackError,
    PackErrorCode,
    PackValidationError,
    UnsafePathError,
)
from nubrub.manifest import PackManifest, load_manifest_file, require_assets, serialize_manifest
from nubrub.repository import FileLockReleaser, PackRecord, PackRepository
from nubrub.utils.atomic_io import atomic_write_text
from nubrub.utils.audio_meta import has_wav_header, read_wav_info
from nubrub.utils.file_ops import safe_copy, safe_delete
from nubrub.utils.paths import contains_invalid_chars, is_path_contained

logger = logging.getLogger(__name__)

IMPORT_TEMP_PREFIX = "nubrub_import_"
_COPY_CHUNK_SIZE = 65536
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


class ImportState(StrEnum):
    OPENED = "opened"
    EXTRACTED = "extracted"
    MANIFEST_VALIDATED = "manifest_validated"
    ASSETS_VALIDATED = "assets_validated"
    READY_TO_COMMIT = "ready_to_commit"
    COMMITTED = "committed"
    REJECTED = "rejected"


class CollisionPolicy(StrEnum):
    """What to do when a custom pack with the same name already exists."""

    OVERWRITE = "overwrite"
    RENAME = "rename"
    ABORT = "abort"


class ImportOutcome(StrEnum):
    CREATED = "created"
    OVERWRITTEN = "overwritten"
    RENAMED = "renamed"
    ABORTED = "aborted"


@dataclass
class ImportResult:
    outcome: ImportOutcome
    name: str
    pack_id: str | None = None
    replaced_pack_id: str | None = None


@dataclass
class SoundPreview:
    filename: str
    kind: str
    size_bytes: int
    duration_sec: float | None = None


@dataclass
class ImportPreview:
    """What the user reviews before confirming an import."""

    name: str
    version: str
    rub_sounds: list[SoundPreview] = field(default_factory=list)
    finish_sounds: list[SoundPreview] = field(default_factory=list)
    collides_with: str | None = None


def _discard_directory(path: Path) -> None:
    """Remove a scratch directory; failures are logged, never raised."""
    try:
        safe_delete(path, recursive=True)
    except PackError:
        logger.warning("Could not remove temporary directory %s", path)


def _is_unsafe_member(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_RE.match(normalized):
        return True
    return ".." in normalized.split("/")


def _wanted_root_file(name: str) -> bool:
    return name == MANIFEST_FILENAME or Path(name).suffix.lower() in ALLOWED_ASSET_SUFFIXES


def _entry_limit(name: str) -> int:
    return MAX_MANIFEST_BYTES if name == MANIFEST_FILENAME else MAX_ASSET_BYTES


def _too_large(name: str, limit: int) -> PackValidationError:
    return PackValidationError(
        "Bundle entry is too large",
        [f"{name!r} exceeds {limit} bytes"],
        PackErrorCode.BUNDLE_INVALID,
    )


def _extract_archive(archive_path: Path, dest: Path) -> None:
    """Extract root-level pack files from a ZIP, enforcing the archive caps.

    Byte counts are taken while streaming; header sizes are not trusted.

    Raises:
        UnsafePathError: An entry is absolute, has a drive letter or ``..``.
        PackValidationError: BUNDLE_INVALID for corrupt archives, too many
            entries, duplicates, or size caps exceeded.
    """
    try:
        zf = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise PackValidationError(
            "Bundle is not a valid pack archive", [str(e)], PackErrorCode.BUNDLE_INVALID
        ) from e

    with zf:
        members = zf.infolist()
        if len(members) > MAX_ARCHIVE_ENTRIES:
            raise PackValidationError(
                "Bundle has too many entries",
                [f"{len(members)} entries, at most {MAX_ARCHIVE_ENTRIES} allowed"],
                PackErrorCode.BUNDLE_INVALID,
            )

        seen: set[str] = set()
        total = 0
        for info in members:
            if _is_unsafe_member(info.filename):
                raise UnsafePathError(info.filename)
            name = info.filename.replace("\\", "/")
            if info.is_dir() or "/" in name:
                logger.debug("Ignoring nested archive entry %r", info.filename)
                continue
            if contains_invalid_chars(name) or not _wanted_root_file(name):
                logger.debug("Ignoring archive entry %r", info.filename)
                continue
            if name.casefold() in seen:
                raise PackValidationError(
                    "Bundle contains duplicate entries", [name], PackErrorCode.BUNDLE_INVALID
                )
            seen.add(name.casefold())

            target = dest / name
            if not is_path_contained(target, dest):
                raise UnsafePathError(info.filename)

            limit = _entry_limit(name)
            written = 0
            try:
                with zf.open(info) as src, open(target, "wb") as dst:
                    while chunk := src.read(_COPY_CHUNK_SIZE):
                        written += len(chunk)
                        if written > limit:
                            raise _too_large(name, limit)
                        if total + written > MAX_ARCHIVE_TOTAL_BYTES:
                            raise _too_large("bundle total", MAX_ARCHIVE_TOTAL_BYTES)
                        dst.write(chunk)
            except (zipfile.BadZipFile, NotImplementedError, RuntimeError, EOFError) as e:
                raise PackValidationError(
                    "Bundle entry cannot be read", [f"{name!r}: {e}"], PackErrorCode.BUNDLE_INVALID
                ) from e
            total += written


def _copy_bundle_directory(source_dir: Path, dest: Path) -> None:
    """Copy root-level pack files from a directory bundle (same caps as archives)."""
    entries = list(source_dir.iterdir())
    if len(entries) > MAX_ARCHIVE_ENTRIES:
        raise PackValidationError(
            "Bundle has too many entries",
            [f"{len(entries)} entries, at most {MAX_ARCHIVE_ENTRIES} allowed"],
            PackErrorCode.BUNDLE_INVALID,
        )

    total = 0
    for entry in entries:
        if entry.is_symlink() or not entry.is_file() or not _wanted_root_file(entry.name):
            logger.debug("Ignoring bundle entry %s", entry)
            continue
        size = entry.stat().st_size
        limit = _entry_limit(entry.name)
        if size > limit:
            raise _too_large(entry.name, limit)
        total += size
        if total > MAX_ARCHIVE_TOTAL_BYTES:
            raise _too_large("bundle total", MAX_ARCHIVE_TOTAL_BYTES)
        shutil.copyfile(entry, dest / entry.name)


class PackImportSession:
    """One import of one bundle into a repository.

    Usage:
        with PackImportSession(bundle, repository) as session:
            session.validate()
            print(session.summary_text())
            result = session.commit(CollisionPolicy.RENAME)

    Args:
        bundle_path: Archive file or directory to import.
        repository: Destination repository.
        verify_wav_headers: Reject assets without a RIFF/WAVE header
            (default: config.VERIFY_WAV_HEADERS).
    """

    def __init__(
        self,
        bundle_path: str | Path,
        repository: PackRepository,
        verify_wav_headers: bool | None = None,
    ):
        self.bundle_path = Path(bundle_path)
        self.repository = repository
        self.verify_wav_headers = VERIFY_WAV_HEADERS if verify_wav_headers is None else verify_wav_headers
        self.state = ImportState.OPENED
        self.manifest: PackManifest | None = None
        self.error: PackError | None = None
        self._work_dir: Path | None = None
        self._finalizer: weakref.finalize | None = None

    def __enter__(self) -> PackImportSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def work_dir(self) -> Path | None:
        """Temp extraction directory (None before extraction and after close)."""
        return self._work_dir

    def close(self) -> None:
        """Remove the temp extraction directory. Safe to call repeatedly."""
        if self._finalizer is not None:
            self._finalizer()
            self._finalizer = None
        self._work_dir = None

    def _require_state(self, *allowed: ImportState) -> None:
        if self.state not in allowed:
            raise InvalidStateError(
                f"Import is {self.state}, expected {' or '.join(str(s) for s in allowed)}"
            )

    def _reject(self, error: PackError) -> None:
        self.state = ImportState.REJECTED
        self.error = error
        logger.info("Import of %s rejected: %s", self.bundle_path, error.message)
        self.close()

    def extract(self) -> Path:
        """Unpack the bundle into a fresh temp directory.

        Returns:
            The temp extraction directory.

        Raises:
            BundleNotFoundError, UnsafePathError, PackValidationError,
            FileOperationError. The session is REJECTED on any of them.
        """
        self._require_state(ImportState.OPENED)
        try:
            if not self.bundle_path.exists():
                raise BundleNotFoundError(self.bundle_path)
            work_dir = Path(tempfile.mkdtemp(prefix=IMPORT_TEMP_PREFIX))
            self._work_dir = work_dir
            self._finalizer = weakref.finalize(self, _discard_directory, work_dir)
            if self.bundle_path.is_dir():
                _copy_bundle_directory(self.bundle_path, work_dir)
            else:
                _extract_archive(self.bundle_path, work_dir)
        except PackError as e:
            self._reject(e)
            raise
        except OSError as e:
            error = FileOperationError(self.bundle_path, f"Failed to read bundle ({e})")
            self._reject(error)
            raise error from e

        self.state = ImportState.EXTRACTED
        logger.debug("Extracted %s into %s", self.bundle_path, work_dir)
        return work_dir

    def validate(self) -> PackManifest:
        """Validate the manifest, then every referenced asset (all-or-nothing).

        Extracts first if that has not happened yet.

        Returns:
            The validated manifest.

        Raises:
            PackValidationError: MANIFEST_INVALID, ASSET_INVALID or
                BUNDLE_INVALID with every reason listed.
        """
        if self.state == ImportState.OPENED:
            self.extract()
        self._require_state(ImportState.EXTRACTED)
        work_dir = self._work_dir

        try:
            manifest_path = work_dir / MANIFEST_FILENAME
            if not manifest_path.is_file():
                raise PackValidationError(
                    "Bundle has no pack.json at its root", error_code=PackErrorCode.BUNDLE_INVALID
                )
            manifest = load_manifest_file(manifest_path)
            self.state = ImportState.MANIFEST_VALIDATED

            require_assets(manifest, work_dir)
            if self.verify_wav_headers:
                not_wav = [
                    f"{name!r} is not a WAV file"
                    for name in manifest.all_sounds()
                    if not has_wav_header(work_dir / name)
                ]
                if not_wav:
                    raise PackValidationError(
                        "Pack assets are invalid", not_wav, PackErrorCode.ASSET_INVALID
                    )
            self.state = ImportState.ASSETS_VALIDATED
        except PackError as e:
            self._reject(e)
            raise
        except OSError as e:
            error = FileOperationError(work_dir, f"Failed to read extracted bundle ({e})")
            self._reject(error)
            raise error from e

        self.manifest = manifest
        self.state = ImportState.READY_TO_COMMIT
        return manifest

    def find_collision(self) -> PackRecord | None:
        """Existing custom pack with the same name, if any."""
        self._require_state(ImportState.READY_TO_COMMIT)
        return self.repository.find_custom_by_name(self.manifest.name)

    def preview(self) -> ImportPreview:
        """Describe the validated bundle for review."""
        self._require_state(ImportState.READY_TO_COMMIT)
        manifest = self.manifest
        collision = self.find_collision()

        def describe(filename: str, kind: str) -> SoundPreview:
            path = self._work_dir / filename
            return SoundPreview(
                filename=filename,
                kind=kind,
                size_bytes=path.stat().st_size,
                duration_sec=read_wav_info(path).duration_sec,
            )

        return ImportPreview(
            name=manifest.name,
            version=manifest.version,
            rub_sounds=[describe(n, "rub") for n in manifest.rub_sounds],
            finish_sounds=[describe(n, "finish") for n in manifest.finish_sounds],
            collides_with=collision.pack_id if collision else None,
        )

    def summary_text(self) -> str:
        """Human-readable review of the bundle."""
        preview = self.preview()

        def sound_line(sound: SoundPreview) -> str:
            if sound.duration_sec is None:
                return f"  - {sound.filename}"
            return f"  - {sound.filename} ({sound.duration_sec:.1f}s)"

        lines = [
            f"Pack: {preview.name}",
            f"Version: {preview.version}",
            f"Rub sounds ({len(preview.rub_sounds)}):",
            *(sound_line(s) for s in preview.rub_sounds),
            f"Finish sounds ({len(preview.finish_sounds)}):",
            *(sound_line(s) for s in preview.finish_sounds),
        ]
        if preview.collides_with:
            lines.append(f"A pack named '{preview.name}' already exists.")
        return "\n".join(lines)

    def _rename_for_import(self, name: str) -> str:
        """First free name of the form '<name> (Imported)', '<name> (Imported 2)', ..."""
        attempt = 1
        while True:
            suffix = IMPORT_RENAME_SUFFIX if attempt == 1 else f" (Imported {attempt})"
            candidate = name[: MAX_PACK_NAME_LENGTH - len(suffix)].rstrip() + suffix
            if (
                self.repository.find_custom_by_name(candidate) is None
                and not self.repository.directory_for(candidate).exists()
            ):
                return candidate
            attempt += 1

    def commit(
        self,
        on_collision: CollisionPolicy = CollisionPolicy.ABORT,
        lock_releaser: FileLockReleaser | None = None,
    ) -> ImportResult:
        """Materialize the validated bundle into the packs root.

        Args:
            on_collision: Policy when a custom pack with the same name exists.
            lock_releaser: Playback hook, invoked before an overwrite.

        Returns:
            ImportResult. ABORTED results leave the packs root untouched.

        Raises:
            PackExistsError: The target folder exists (lost race, or a
                folder that is not a valid pack).
            FileOperationError: Copy or write failed; the partially created
                pack directory has been removed.
        """
        self._require_state(ImportState.READY_TO_COMMIT)
        manifest = self.manifest
        outcome = ImportOutcome.CREATED
        replaced = None

        try:
            existing = self.repository.find_custom_by_name(manifest.name)
            if existing is not None:
                if on_collision == CollisionPolicy.ABORT:
                    logger.info("Import of %r aborted: name already exists", manifest.name)
                    self.state = ImportState.REJECTED
                    self.close()
                    return ImportResult(ImportOutcome.ABORTED, name=manifest.name)
                if on_collision == CollisionPolicy.OVERWRITE:
                    self.repository.delete_pack(existing.pack_id, lock_releaser)
                    outcome, replaced = ImportOutcome.OVERWRITTEN, existing.pack_id
                else:
                    manifest = manifest.model_copy(update={"name": self._rename_for_import(manifest.name)})
                    outcome = ImportOutcome.RENAMED

            target = self.repository.create_pack_directory(manifest.name)
        except PackError as e:
            self._reject(e)
            raise

        try:
            for filename in dict.fromkeys(manifest.all_sounds()):
                dest = target / filename
                if not is_path_contained(dest, target):
                    raise UnsafePathError(filename)
                safe_copy(self._work_dir / filename, dest)
            atomic_write_text(target / MANIFEST_FILENAME, serialize_manifest(manifest))
        except PackError as e:
            _discard_directory(target)
            self._reject(e)
            raise
        except OSError as e:
            _discard_directory(target)
            error = FileOperationError(target, f"Failed to write pack ({e})")
            self._reject(error)
            raise error from e

        self.state = ImportState.COMMITTED
        self.manifest = manifest
        self.close()
        logger.info("Imported pack %r into %s (%s)", manifest.name, target, outcome)
        return ImportResult(outcome, name=manifest.name, pack_id=target.name, replaced_pack_id=replaced)


def import_bundle(
    bundle_path: str | Path,
    repository: PackRepository,
    on_collision: CollisionPolicy = CollisionPolicy.ABORT,
    lock_releaser: FileLockReleaser | None = None,
    verify_wav_headers: bool | None = None,
) -> ImportResult:
    """Validate and commit a bundle in one call (non-interactive import)."""
    with PackImportSession(bundle_path, repository, verify_wav_headers) as session:
        session.validate()
        return session.commit(on_collision, lock_releaser)


__all__ = [
    "CollisionPolicy",
    "ImportOutcome",
    "ImportPreview",
    "ImportResult",
    "ImportState",
    "PackImportSession",
    "SoundPreview",
    "import_bundle",
]
