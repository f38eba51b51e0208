"""NubRub - Pack manifest (pack.json) model, parser and serializer.

Wire format (field names are lowercase on the wire, finishsound is singular):

    {
      "name": "Glass",
      "version": "1.0",
      "rubsounds": ["file-1.wav", "file-2.wav"],
      "finishsound": ["trigger-1.wav"]
    }

Validation happens in layers:
1. Size cap on the manifest text (MAX_MANIFEST_BYTES)
2. Document shape via specs/pack_manifest.schema.json (jsonschema)
3. Name rules via the PackManifest pydantic model
4. Asset rules via validate_asset_list(), relative to the pack directory

Asset problems are never fatal for a manifest: invalid entries are dropped
and logged. Whether a pack with dropped assets is usable is the caller's
call (discovery keeps it, import rejects it).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as JsonSchemaValidationError
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from nubrub.config import (
    ALLOWED_ASSET_SUFFIXES,
    DEFAULT_PACK_VERSION,
    MANIFEST_SCHEMA_PATH,
    MAX_ASSET_BYTES,
    MAX_ASSET_NAME_LENGTH,
    MAX_ASSETS_PER_PACK,
    MAX_MANIFEST_BYTES,
    MAX_PACK_NAME_LENGTH,
)
from nubrub.errors import PackErrorCode, PackValidationError
from nubrub.utils.paths import contains_invalid_chars, is_path_contained

logger = logging.getLogger(__name__)


def name_problems(name: Any) -> list[str]:
    """List the pack-name rules a candidate name violates (empty if valid)."""
    if not isinstance(name, str) or not name.strip():
        return ["name is required"]
    problems = []
    if len(name) > MAX_PACK_NAME_LENGTH:
        problems.append(f"name must be {MAX_PACK_NAME_LENGTH} characters or less")
    if contains_invalid_chars(name):
        problems.append("name contains invalid characters")
    return problems


class PackManifest(BaseModel):
    """Typed, immutable pack manifest.

    Asset lists are tuples so one manifest can be handed to several
    components without anyone mutating it behind the others' backs.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(..., description="Display name of the pack")
    version: str = Field(default=DEFAULT_PACK_VERSION, description="Free-form version string")
    rub_sounds: tuple[str, ...] = Field(
        default=(),
        alias="rubsounds",
        description="WAV filenames played during movement",
    )
    finish_sounds: tuple[str, ...] = Field(
        default=(),
        alias="finishsound",
        description="WAV filenames played when the movement threshold is reached",
    )

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        problems = name_problems(value)
        if problems:
            raise ValueError("; ".join(problems))
        return value

    @property
    def asset_count(self) -> int:
        return len(self.rub_sounds) + len(self.finish_sounds)

    def all_sounds(self) -> tuple[str, ...]:
        """Rub sounds followed by finish sounds."""
        return self.rub_sounds + self.finish_sounds


@lru_cache(maxsize=1)
def _manifest_validator() -> Draft202012Validator:
    with open(MANIFEST_SCHEMA_PATH, encoding="utf-8") as f:
        schema = json.load(f)
    return Draft202012Validator(schema)


def _format_schema_error(error: JsonSchemaValidationError) -> str:
    location = "/".join(str(part) for part in error.absolute_path)
    return f"{location or '<root>'}: {error.message}"


def parse_manifest(json_text: str) -> PackManifest:
    """Parse and validate manifest text.

    Args:
        json_text: Manifest document (a leading UTF-8 BOM is tolerated).

    Returns:
        PackManifest with the asset lists as written (not yet checked
        against any directory).

    Raises:
        PackValidationError: Text too large, not JSON, wrong shape, or name
            rules violated. ``reasons`` carries the details.
    """
    encoded_size = len(json_text.encode("utf-8", errors="surrogatepass"))
    if encoded_size > MAX_MANIFEST_BYTES:
        raise PackValidationError(
            "Manifest is too large",
            [f"{encoded_size} bytes exceeds the {MAX_MANIFEST_BYTES} byte limit"],
        )

    try:
        data = json.loads(json_text.lstrip("\ufeff"))
    except json.JSONDecodeError as e:
        raise PackValidationError("Manifest is not valid JSON", [str(e)]) from e
    except RecursionError as e:
        raise PackValidationError("Manifest is not valid JSON", ["document is nested too deeply"]) from e

    try:
        schema_errors = sorted(_manifest_validator().iter_errors(data), key=lambda e: list(e.absolute_path))
        reasons = [_format_schema_error(e) for e in schema_errors]
    except RecursionError as e:
        raise PackValidationError(
            "Manifest does not match the pack.json format", ["document is nested too deeply"]
        ) from e
    if reasons:
        raise PackValidationError("Manifest does not match the pack.json format", reasons)

    try:
        return PackManifest.model_validate(data)
    except PydanticValidationError as e:
        reasons = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise PackValidationError("Manifest is invalid", reasons) from e


def load_manifest_file(path: str | Path) -> PackManifest:
    """Read and parse a manifest file, checking its size before reading.

    Raises:
        PackValidationError: Oversized, undecodable, or invalid manifest.
        OSError: If the file cannot be read at all.
    """
    path = Path(path)
    size = path.stat().st_size
    if size > MAX_MANIFEST_BYTES:
        raise PackValidationError(
            "Manifest is too large",
            [f"{size} bytes exceeds the {MAX_MANIFEST_BYTES} byte limit"],
        )
    try:
        text = path.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError as e:
        raise PackValidationError("Manifest is not UTF-8 text", [str(e)]) from e
    return parse_manifest(text)


def serialize_manifest(manifest: PackManifest) -> str:
    """Serialize to the wire format: stable field order, 2-space indent."""
    data = manifest.model_dump(mode="json", by_alias=True)
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def check_asset(name: Any, pack_directory: str | Path) -> str | None:
    """Check one manifest asset entry against its pack directory.

    Args:
        name: Filename as written in the manifest.
        pack_directory: Directory the asset must live in.

    Returns:
        None if the asset is usable, otherwise a human-readable reason.
    """
    if not isinstance(name, str) or not name.strip():
        return "blank filename"
    if contains_invalid_chars(name):
        return f"{name!r} contains invalid characters"
    if len(name) > MAX_ASSET_NAME_LENGTH:
        return f"{name!r} is longer than {MAX_ASSET_NAME_LENGTH} characters"
    if Path(name).suffix.lower() not in ALLOWED_ASSET_SUFFIXES:
        return f"{name!r} is not a .wav file"

    full_path = Path(pack_directory) / name
    if not is_path_contained(full_path, pack_directory):
        logger.debug("Security: asset %r resolves outside %s", name, pack_directory)
        return f"{name!r} resolves outside the pack directory"

    try:
        if not full_path.is_file():
            return f"{name!r} not found"
        size = full_path.stat().st_size
    except OSError as e:
        return f"{name!r} cannot be read ({e})"
    if size > MAX_ASSET_BYTES:
        return f"{name!r} is larger than {MAX_ASSET_BYTES // (1024 * 1024)} MB"
    return None


def validate_asset_list(names: Iterable[Any], pack_directory: str | Path) -> list[str]:
    """Keep the asset names that pass check_asset(), in order.

    Invalid entries are dropped and logged, never fatal.
    """
    valid = []
    for name in names:
        reason = check_asset(name, pack_directory)
        if reason is None:
            valid.append(name)
        else:
            logger.debug("Dropping asset from %s: %s", pack_directory, reason)
    return valid


def apply_asset_cap(manifest: PackManifest) -> PackManifest:
    """Enforce MAX_ASSETS_PER_PACK.

    Deliberately lossy: over the cap, rub sounds are truncated to the cap and
    every finish sound is dropped (movement sounds matter more than the
    trigger).
    """
    if manifest.asset_count <= MAX_ASSETS_PER_PACK:
        return manifest
    logger.debug(
        "Pack %r lists %d assets (cap %d); dropping finish sounds",
        manifest.name,
        manifest.asset_count,
        MAX_ASSETS_PER_PACK,
    )
    return manifest.model_copy(
        update={
            "rub_sounds": manifest.rub_sounds[:MAX_ASSETS_PER_PACK],
            "finish_sounds": (),
        }
    )


def validate_manifest_assets(manifest: PackManifest, pack_directory: str | Path) -> PackManifest:
    """Filter both asset lists against the directory, then apply the cap."""
    filtered = manifest.model_copy(
        update={
            "rub_sounds": tuple(validate_asset_list(manifest.rub_sounds, pack_directory)),
            "finish_sounds": tuple(validate_asset_list(manifest.finish_sounds, pack_directory)),
        }
    )
    return apply_asset_cap(filtered)


def require_assets(manifest: PackManifest, pack_directory: str | Path) -> None:
    """All-or-nothing asset check (import).

    Raises:
        PackValidationError: ASSET_INVALID listing every failing entry, or
            the asset count is over the cap.
    """
    reasons = [
        reason
        for name in manifest.all_sounds()
        if (reason := check_asset(name, pack_directory)) is not None
    ]
    if manifest.asset_count > MAX_ASSETS_PER_PACK:
        reasons.append(f"{manifest.asset_count} sounds listed, at most {MAX_ASSETS_PER_PACK} allowed")
    if reasons:
        raise PackValidationError("Pack assets are invalid", reasons, PackErrorCode.ASSET_INVALID)


__all__ = [
    "PackManifest",
    "name_problems",
    "parse_manifest",
    "load_manifest_file",
    "serialize_manifest",
    "check_asset",
    "validate_asset_list",
    "apply_asset_cap",
    "validate_manifest_assets",
    "require_assets",
]
