"""NubRub - Pack API FastAPI application.

HTTP surface over the pack engine: discovery for the playback component
(list, get, asset files) and the management actions (import, export,
delete). Handlers are plain ``def`` so the blocking retry waits of the file
operations run in FastAPI's threadpool, off the event loop.

Run with:
    uvicorn services.pack_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI
from fastapi.responses import FileResponse, JSONResponse

from nubrub import __version__
from nubrub.errors import PackError, PackErrorCode
from nubrub.exporter import export_pack
from nubrub.importer import ImportOutcome, import_bundle
from nubrub.repository import PackRecord, PackRepository
from nubrub.schemas import (
    DeleteResponse,
    ExportRequest,
    ExportResponse,
    ImportRequest,
    ImportResponse,
    PackDetail,
    PackErrorResponse,
    PackListResponse,
    PackSummary,
)

logger = logging.getLogger(__name__)

# --- Repository Setup ---

# Module-level repository (initialized on startup unless overridden)
_repository: PackRepository | None = None


def get_repository() -> PackRepository:
    """Dependency that provides the pack repository.

    Raises:
        RuntimeError: If the repository is not initialized (app lifespan not invoked).
    """
    if _repository is None:
        raise RuntimeError("Pack repository not initialized. App lifespan not invoked?")
    return _repository


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe(repository: PackRepository) -> None:
    """Clean up orphan temp files on startup (best-effort, never raises)."""
    try:
        repository.cleanup_orphan_temp_files()
    except Exception:
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the repository (unless a test injected one) and clean up temp files."""
    global _repository
    if _repository is None:
        _repository = PackRepository()

    _cleanup_orphan_temp_files_safe(_repository)

    yield


# --- FastAPI App ---


app = FastAPI(
    title="NubRub - Pack API",
    description="Audio pack discovery, import, export and delete.",
    version=__version__,
    lifespan=lifespan,
)


# --- Error Handling ---

_STATUS_BY_ERROR_CODE = {
    PackErrorCode.PACK_NOT_FOUND: 404,
    PackErrorCode.BUNDLE_NOT_FOUND: 404,
    PackErrorCode.PACK_READ_ONLY: 403,
    PackErrorCode.PACK_EXISTS: 409,
    PackErrorCode.INVALID_STATE: 409,
    PackErrorCode.FILE_IN_USE: 423,
    PackErrorCode.MANIFEST_INVALID: 422,
    PackErrorCode.ASSET_INVALID: 422,
    PackErrorCode.BUNDLE_INVALID: 422,
    PackErrorCode.PATH_UNSAFE: 422,
}


def error_code_to_status(error_code: str) -> int:
    """Map error codes to HTTP status codes (anything unmapped is a 500)."""
    return _STATUS_BY_ERROR_CODE.get(error_code, 500)


def make_error_response(error_code: str, error_message: str, status_code: int | None = None) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=status_code or error_code_to_status(error_code),
        content=PackErrorResponse(
            error_code=error_code,
            error_message=error_message,
        ).model_dump(),
    )


def _summary(record: PackRecord) -> PackSummary:
    return PackSummary(
        pack_id=record.pack_id,
        name=record.name,
        version=record.version,
        is_builtin=record.is_builtin,
        rub_count=len(record.manifest.rub_sounds),
        finish_count=len(record.manifest.finish_sounds),
    )


RepositoryDep = Annotated[PackRepository, Depends(get_repository)]

_ERROR_RESPONSES = {
    404: {"model": PackErrorResponse, "description": "Pack not found"},
    500: {"model": PackErrorResponse, "description": "Operation failed"},
}


# --- Endpoints ---


@app.get("/v1/packs", response_model=PackListResponse, summary="List packs")
def list_packs(repository: RepositoryDep):
    """Built-in packs followed by every valid custom pack (fresh scan)."""
    return PackListResponse(packs=[_summary(record) for record in repository.list_packs()])


@app.get(
    "/v1/packs/{pack_id}",
    response_model=PackDetail,
    responses=_ERROR_RESPONSES,
    summary="Get one pack",
)
def get_pack(pack_id: str, repository: RepositoryDep):
    record = repository.get_pack(pack_id)
    if record is None:
        return make_error_response(PackErrorCode.PACK_NOT_FOUND, f"Audio pack not found: {pack_id}")
    summary = _summary(record)
    return PackDetail(
        **summary.model_dump(),
        rub_sounds=list(record.manifest.rub_sounds),
        finish_sounds=list(record.manifest.finish_sounds),
    )


@app.get(
    "/v1/packs/{pack_id}/assets/{filename}",
    responses=_ERROR_RESPONSES,
    summary="Download one sound of a custom pack",
)
def get_pack_asset(pack_id: str, filename: str, repository: RepositoryDep):
    """Serve a sound file after re-validating it on disk.

    Built-in sounds are embedded in the playback component and are never
    served here.
    """
    record = repository.get_pack(pack_id)
    if record is None:
        return make_error_response(PackErrorCode.PACK_NOT_FOUND, f"Audio pack not found: {pack_id}")
    path = repository.resolve_asset_path(record, filename)
    if path is None:
        return make_error_response(
            PackErrorCode.ASSET_INVALID,
            f"Sound not available: {filename}",
            status_code=404,
        )
    return FileResponse(path, media_type="audio/wav", filename=filename)


@app.post(
    "/v1/packs/import",
    response_model=ImportResponse,
    responses={
        **_ERROR_RESPONSES,
        409: {"model": PackErrorResponse, "description": "Pack name already exists"},
        422: {"model": PackErrorResponse, "description": "Bundle rejected"},
    },
    summary="Import a pack bundle",
)
def import_pack(request: ImportRequest, repository: RepositoryDep):
    """Import a .nubrub archive or pack directory from a local path.

    With on_collision=abort (default), an existing pack of the same name
    yields 409 PACK_EXISTS and nothing changes.
    """
    try:
        result = import_bundle(request.bundle_path, repository, on_collision=request.on_collision)
    except PackError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        logger.exception("Unexpected error during pack import")
        return make_error_response(PackErrorCode.IO_FAILED, "An unexpected error occurred during import")

    if result.outcome == ImportOutcome.ABORTED:
        return make_error_response(
            PackErrorCode.PACK_EXISTS, f"A pack named '{result.name}' already exists"
        )
    return ImportResponse(
        outcome=result.outcome,
        name=result.name,
        pack_id=result.pack_id,
        replaced_pack_id=result.replaced_pack_id,
    )


@app.post(
    "/v1/packs/{pack_id}/export",
    response_model=ExportResponse,
    responses={
        **_ERROR_RESPONSES,
        403: {"model": PackErrorResponse, "description": "Built-in pack"},
    },
    summary="Export a custom pack",
)
def export_pack_endpoint(pack_id: str, request: ExportRequest, repository: RepositoryDep):
    try:
        archive = export_pack(repository, pack_id, request.destination)
    except PackError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        logger.exception("Unexpected error during pack export")
        return make_error_response(PackErrorCode.IO_FAILED, "An unexpected error occurred during export")
    return ExportResponse(pack_id=pack_id, archive_path=str(archive))


@app.delete(
    "/v1/packs/{pack_id}",
    response_model=DeleteResponse,
    responses={
        **_ERROR_RESPONSES,
        403: {"model": PackErrorResponse, "description": "Built-in pack"},
        423: {"model": PackErrorResponse, "description": "Pack files in use"},
    },
    summary="Delete a custom pack",
)
def delete_pack(pack_id: str, repository: RepositoryDep):
    try:
        repository.delete_pack(pack_id)
    except PackError as e:
        return make_error_response(e.error_code, e.message)
    except Exception:
        logger.exception("Unexpected error during pack delete")
        return make_error_response(PackErrorCode.IO_FAILED, "An unexpected error occurred during delete")
    return DeleteResponse(pack_id=pack_id)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding the repository ---


def override_repository(repository: PackRepository | None) -> None:
    """Override (or reset, with None) the repository for testing."""
    global _repository
    _repository = repository
