"""NubRub - Pydantic models for the pack API.

Request/response shapes for services/pack_api. The pack.json document itself
is nubrub.manifest.PackManifest.
"""

from pydantic import BaseModel, ConfigDict, Field

from nubrub.importer import CollisionPolicy, ImportOutcome

# --- Request Models ---


class ImportRequest(BaseModel):
    """Request payload for importing a bundle from a local path."""

    model_config = ConfigDict(extra="forbid")

    bundle_path: str = Field(
        ...,
        min_length=1,
        description="Path to a .nubrub archive or a pack directory",
    )
    on_collision: CollisionPolicy = Field(
        default=CollisionPolicy.ABORT,
        description="What to do when a custom pack with the same name exists",
    )


class ExportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    destination: str = Field(
        ...,
        min_length=1,
        description="Archive path, or a directory to create <name>.nubrub in",
    )


# --- Response Models ---


class PackSummary(BaseModel):
    """One entry of the pack list."""

    model_config = ConfigDict(extra="forbid")

    pack_id: str = Field(..., description="Folder name, or fixed id for built-ins")
    name: str = Field(..., description="Display name")
    version: str = Field(..., description="Free-form version string")
    is_builtin: bool = Field(..., description="Embedded, read-only pack")
    rub_count: int = Field(..., ge=0, description="Number of rub sounds")
    finish_count: int = Field(..., ge=0, description="Number of finish sounds")


class PackDetail(PackSummary):
    rub_sounds: list[str] = Field(default_factory=list, description="Rub sound filenames")
    finish_sounds: list[str] = Field(default_factory=list, description="Finish sound filenames")


class PackListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    packs: list[PackSummary] = Field(default_factory=list)


class ImportResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="success", description="Operation status")
    outcome: ImportOutcome = Field(..., description="created, overwritten, renamed or aborted")
    name: str = Field(..., description="Final pack name")
    pack_id: str | None = Field(default=None, description="Id of the new pack (None when aborted)")
    replaced_pack_id: str | None = Field(default=None, description="Id of the pack that was overwritten")


class ExportResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="success", description="Operation status")
    pack_id: str = Field(..., description="Exported pack")
    archive_path: str = Field(..., description="Path of the written archive")


class PackErrorResponse(BaseModel):
    """Error response for every pack operation."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="PackErrorCode value")
    error_message: str = Field(..., description="Human-readable error description")


class DeleteResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="success", description="Operation status")
    pack_id: str = Field(..., description="Deleted pack")
