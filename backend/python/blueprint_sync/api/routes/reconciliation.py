"""
Reconciliation API routes.

Thin HTTP layer over ReconciliationJobs, OrphanManager, BackupManager and
VersionManager. Structured failures are returned as JSON with a status code
derived from their errorCode.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request  # type: ignore
from fastapi.responses import JSONResponse  # type: ignore
from pydantic import BaseModel, ConfigDict, Field  # type: ignore

from blueprint_sync.config.constants.http_status_code import HttpStatusCode
from blueprint_sync.exceptions.reconciliation_exceptions import ErrorCode, ReconciliationError

router = APIRouter(prefix="/api/v1/reconciliation", tags=["reconciliation"])

_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_REQUIRED.value: HttpStatusCode.BAD_REQUEST.value,
    ErrorCode.VALIDATION_INVALID_VALUE.value: HttpStatusCode.BAD_REQUEST.value,
    ErrorCode.NOT_FOUND_SOURCE.value: HttpStatusCode.NOT_FOUND.value,
    ErrorCode.NOT_FOUND_EMBED.value: HttpStatusCode.NOT_FOUND.value,
    ErrorCode.NOT_FOUND_VERSION.value: HttpStatusCode.NOT_FOUND.value,
    ErrorCode.NOT_FOUND_BACKUP.value: HttpStatusCode.NOT_FOUND.value,
    ErrorCode.RESTORE_CONFLICT.value: HttpStatusCode.CONFLICT.value,
    ErrorCode.NOT_RECOVERABLE.value: HttpStatusCode.CONFLICT.value,
    ErrorCode.OPERATION_NOT_ALLOWED.value: HttpStatusCode.CONFLICT.value,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DryRunRequest(_CamelModel):
    dry_run: Optional[bool] = Field(default=None, alias="dryRun")


class PagePublishedRequest(_CamelModel):
    page_id: str = Field(..., alias="pageId")
    dry_run: Optional[bool] = Field(default=None, alias="dryRun")


class SoftDeleteRequest(_CamelModel):
    reason: str = Field(default="Deleted by administrator")
    dry_run: Optional[bool] = Field(default=None, alias="dryRun")


class RestoreRequest(_CamelModel):
    force: bool = False


class BackupRestoreRequest(_CamelModel):
    local_ids: Optional[List[str]] = Field(default=None, alias="localIds")
    force: bool = True


class VersionRestoreRequest(_CamelModel):
    version_id: str = Field(..., alias="versionId")


async def get_services(request: Request) -> Dict[str, Any]:
    """Get the services used by these routes from the container"""
    container = request.app.container
    return {
        "jobs": container.jobs(),
        "orphan_manager": container.orphan_manager(),
        "backup_manager": container.backup_manager(),
        "version_manager": container.version_manager(),
        "settings": container.settings(),
        "logger": container.logger(),
    }


def _respond(result: Dict[str, Any], success_status: int = HttpStatusCode.OK.value) -> JSONResponse:
    if result.get("success", True):
        return JSONResponse(status_code=success_status, content=result)
    status = _STATUS_BY_CODE.get(result.get("errorCode"), HttpStatusCode.INTERNAL_SERVER_ERROR.value)
    return JSONResponse(status_code=status, content=result)


def _raise_internal(logger, operation: str, error: Exception) -> None:
    if isinstance(error, ReconciliationError):
        raise HTTPException(status_code=HttpStatusCode.INTERNAL_SERVER_ERROR.value, detail=error.to_response())
    logger.error(f"❌ {operation} failed: {error}", exc_info=True)
    raise HTTPException(status_code=HttpStatusCode.INTERNAL_SERVER_ERROR.value, detail=str(error))


# ============================================================================
# Jobs
# ============================================================================

@router.post("/checks/embeds")
async def start_check_embeds(request: Request, body: Optional[DryRunRequest] = None) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["jobs"].start_check_embeds(body.dry_run if body else None)
        return _respond(result, HttpStatusCode.ACCEPTED.value)
    except Exception as e:
        _raise_internal(services["logger"], "start_check_embeds", e)


@router.post("/checks/sources")
async def start_check_sources(request: Request) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["jobs"].start_check_sources()
        return _respond(result, HttpStatusCode.ACCEPTED.value)
    except Exception as e:
        _raise_internal(services["logger"], "start_check_sources", e)


@router.post("/maintenance/prune")
async def start_prune(request: Request, body: Optional[DryRunRequest] = None) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["jobs"].start_prune(body.dry_run if body else None)
        return _respond(result, HttpStatusCode.ACCEPTED.value)
    except Exception as e:
        _raise_internal(services["logger"], "start_prune", e)


@router.get("/progress/{progress_id}")
async def get_progress(request: Request, progress_id: str) -> JSONResponse:
    services = await get_services(request)
    progress = await services["jobs"].get_progress(progress_id)
    if progress is None:
        raise HTTPException(status_code=HttpStatusCode.NOT_FOUND.value, detail=f"Progress {progress_id} not found")
    return JSONResponse(content=progress)


@router.post("/events/page-published")
async def page_published(request: Request, body: PagePublishedRequest) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["jobs"].handle_page_published(body.page_id, body.dry_run)
        return _respond(result, HttpStatusCode.ACCEPTED.value)
    except Exception as e:
        _raise_internal(services["logger"], "page_published", e)


# ============================================================================
# Embeds and Sources
# ============================================================================

@router.get("/embeds/deleted")
async def list_deleted_embeds(request: Request) -> JSONResponse:
    services = await get_services(request)
    try:
        items = await services["orphan_manager"].list_deleted_embeds()
        return JSONResponse(content={"success": True, "count": len(items), "deletedEmbeds": items})
    except Exception as e:
        _raise_internal(services["logger"], "list_deleted_embeds", e)


@router.post("/embeds/{local_id}/soft-delete")
async def soft_delete_embed(request: Request, local_id: str, body: Optional[SoftDeleteRequest] = None) -> JSONResponse:
    services = await get_services(request)
    body = body or SoftDeleteRequest()
    dry_run = services["settings"].default_dry_run if body.dry_run is None else body.dry_run
    try:
        result = await services["orphan_manager"].soft_delete_embed(
            local_id, body.reason, {"requestedVia": "api"}, dry_run=dry_run, deleted_by="api"
        )
        return _respond(result)
    except Exception as e:
        _raise_internal(services["logger"], "soft_delete_embed", e)


@router.post("/embeds/{local_id}/restore")
async def restore_embed(request: Request, local_id: str, body: Optional[RestoreRequest] = None) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["orphan_manager"].restore_embed(local_id, force=body.force if body else False)
        return _respond(result)
    except Exception as e:
        _raise_internal(services["logger"], "restore_embed", e)


@router.post("/sources/{source_id}/restore")
async def restore_source(request: Request, source_id: str, body: Optional[RestoreRequest] = None) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["orphan_manager"].restore_source(source_id, force=body.force if body else False)
        return _respond(result)
    except Exception as e:
        _raise_internal(services["logger"], "restore_source", e)


# ============================================================================
# Backups and versions
# ============================================================================

@router.get("/backups")
async def list_backups(request: Request) -> JSONResponse:
    services = await get_services(request)
    try:
        backups = await services["backup_manager"].list_backups()
        return JSONResponse(content={"success": True, "count": len(backups), "backups": backups})
    except Exception as e:
        _raise_internal(services["logger"], "list_backups", e)


@router.post("/backups/{backup_id}/restore")
async def restore_backup(request: Request, backup_id: str, body: Optional[BackupRestoreRequest] = None) -> JSONResponse:
    services = await get_services(request)
    body = body or BackupRestoreRequest()
    try:
        result = await services["backup_manager"].restore_snapshot(backup_id, body.local_ids, force=body.force)
        return _respond(result)
    except Exception as e:
        _raise_internal(services["logger"], "restore_backup", e)


@router.get("/versions/{entity_id:path}")
async def list_versions(request: Request, entity_id: str) -> JSONResponse:
    services = await get_services(request)
    try:
        versions = await services["version_manager"].list_versions(entity_id)
        return JSONResponse(content={"success": True, "entityId": entity_id, "versions": versions})
    except Exception as e:
        _raise_internal(services["logger"], "list_versions", e)


@router.post("/versions/restore")
async def restore_version(request: Request, body: VersionRestoreRequest) -> JSONResponse:
    services = await get_services(request)
    try:
        result = await services["version_manager"].restore_version(body.version_id)
        return _respond(result)
    except Exception as e:
        _raise_internal(services["logger"], "restore_version", e)
