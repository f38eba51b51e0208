"""NubRub - Pack export (custom pack -> .nubrub archive).

The archive holds a freshly serialized pack.json and every sound that still
resolves through the repository, all at the archive root, which is exactly
the layout the importer accepts.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

from nubrub.config import MANIFEST_FILENAME, PACK_ARCHIVE_SUFFIX
from nubrub.errors import (
    FileOperationError,
    PackErrorCode,
    PackNotFoundError,
    PackValidationError,
    ReadOnlyPackError,
)
from nubrub.manifest import serialize_manifest
from nubrub.repository import PackRepository
from nubrub.utils.atomic_io import atomic_output_path
from nubrub.utils.paths import sanitize_name

logger = logging.getLogger(__name__)


def export_pack(repository: PackRepository, pack_id: str, destination: str | Path) -> Path:
    """Write a custom pack to a ZIP archive.

    Args:
        repository: Repository holding the pack.
        pack_id: Pack to export.
        destination: Archive path, or an existing directory in which
            "<sanitized name>.nubrub" is created.

    Returns:
        Path of the written archive.

    Raises:
        PackNotFoundError: Unknown pack id.
        ReadOnlyPackError: Built-in pack.
        PackValidationError: None of the pack's sounds resolve any more.
        FileOperationError: The archive could not be written.
    """
    record = repository.get_pack(pack_id)
    if record is None:
        raise PackNotFoundError(pack_id)
    if record.is_builtin:
        raise ReadOnlyPackError(record.pack_id)

    destination = Path(destination)
    if destination.is_dir():
        destination = destination / f"{sanitize_name(record.name)}{PACK_ARCHIVE_SUFFIX}"

    assets = repository.resolve_assets(record)
    if not assets.rub_sounds and not assets.finish_sounds:
        raise PackValidationError(
            "Pack has no sounds to export", [record.pack_id], PackErrorCode.ASSET_INVALID
        )

    manifest = record.manifest.model_copy(
        update={
            "rub_sounds": tuple(p.name for p in assets.rub_sounds),
            "finish_sounds": tuple(p.name for p in assets.finish_sounds),
        }
    )

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with atomic_output_path(destination) as temp_path:
            with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr(MANIFEST_FILENAME, serialize_manifest(manifest))
                for path in dict.fromkeys(assets.rub_sounds + assets.finish_sounds):
                    zf.write(path, arcname=path.name)
    except OSError as e:
        raise FileOperationError(destination, f"Failed to write pack archive ({e})") from e

    logger.info("Exported pack %s to %s", record.pack_id, destination)
    return destination


__all__ = ["export_pack"]
