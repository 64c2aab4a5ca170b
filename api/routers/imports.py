# WORKFLOW: Import run endpoints for operators reviewing and promoting schedule versions.
# Used by: Admin UI, job runners, API tests
# Endpoints:
# 1. POST /imports - Create an import run (optionally execute it right away)
# 2. GET /imports, GET /imports/{id} - List and inspect runs
# 3. GET /imports/{id}/summary - Staged, issue and diff counts plus the promotion gate
# 4. GET /imports/{id}/diffs, /issues - Paged review listings with filters
# 5. POST /imports/{id}/execute|promote|reject|rollback|retry - Orchestrator actions
#
# Request flow: HTTP -> Schema validation -> Orchestrator -> ImportRun -> Response
# Errors: unknown id -> 404, wrong status or blocked gate -> 409, fetch/storage failure -> 502

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from db.session import get_db
from db.repositories import ImportRunRepository, StageDiffRepository, ValidationIssueRepository
from api.schemas.request import (
    CreateImportRequest, ImportActionRequest, PromoteImportRequest, RejectImportRequest,
)
from api.schemas.response import (
    ImportRunResponse, ImportSummaryResponse, StageDiffResponse, ValidationIssueResponse,
)
from core.exceptions import (
    FetchError, ImportNotFoundError, InvalidStageTransitionError, PromotionBlockedError, StorageError,
)
from services.import_orchestrator import ImportOrchestrator, create_import_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])


def get_orchestrator(db: Session = Depends(get_db)) -> ImportOrchestrator:
    """Dependency building an orchestrator bound to the request session."""
    return create_import_orchestrator(db)


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, ImportNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, PromotionBlockedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "gate": error.gate},
        )
    if isinstance(error, InvalidStageTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, (FetchError, StorageError)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    logger.error(f"Import request failed: {error}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Import request failed: {str(error)}",
    )


@router.post("", response_model=ImportRunResponse, status_code=status.HTTP_201_CREATED)
def create_import(
    request: CreateImportRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Create an import run for a schedule version; the latest published one when omitted."""
    try:
        run = orchestrator.create_import(request.version, request.source_url, request.started_by)
        if request.execute:
            run = orchestrator.execute(run.id)
        return run
    except Exception as e:
        raise _to_http_error(e)


@router.get("", response_model=List[ImportRunResponse])
def list_imports(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return ImportRunRepository(db).list_recent(limit)


@router.get("/{import_id}", response_model=ImportRunResponse)
def get_import(import_id: int, db: Session = Depends(get_db)):
    try:
        return ImportRunRepository(db).get(import_id)
    except ImportNotFoundError as e:
        raise _to_http_error(e)


@router.get("/{import_id}/summary", response_model=ImportSummaryResponse)
def get_import_summary(import_id: int, orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    """
    Review summary of an import.

    The gate is recomputed from the stored issues, so it reflects the current state
    even if the cached validation summary is stale.
    """
    try:
        return orchestrator.summary(import_id)
    except Exception as e:
        raise _to_http_error(e)


@router.get("/{import_id}/diffs", response_model=List[StageDiffResponse])
def list_import_diffs(
    import_id: int,
    diff_type: Optional[str] = Query(None, pattern="^(ADDED|CHANGED|UNCHANGED|REMOVED)$"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    try:
        ImportRunRepository(db).get(import_id)
    except ImportNotFoundError as e:
        raise _to_http_error(e)
    return StageDiffRepository(db).list_for_import(import_id, diff_type, limit, offset)


@router.get("/{import_id}/issues", response_model=List[ValidationIssueResponse])
def list_import_issues(
    import_id: int,
    severity: Optional[str] = Query(None, pattern="^(ERROR|WARNING|INFO)$"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    try:
        ImportRunRepository(db).get(import_id)
    except ImportNotFoundError as e:
        raise _to_http_error(e)
    return ValidationIssueRepository(db).list_for_import(import_id, severity, limit, offset)


@router.post("/{import_id}/execute", response_model=ImportRunResponse)
def execute_import(import_id: int, orchestrator: ImportOrchestrator = Depends(get_orchestrator)):
    """Run the automatic stages from the stored checkpoint. Halts before promotion."""
    try:
        return orchestrator.execute(import_id)
    except Exception as e:
        raise _to_http_error(e)


@router.post("/{import_id}/promote", response_model=ImportRunResponse)
def promote_import(
    import_id: int,
    request: PromoteImportRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"Promotion requested for import {import_id} by {request.actor} (override={request.validation_override})")
    try:
        return orchestrator.promote(import_id, request.validation_override, request.actor)
    except Exception as e:
        raise _to_http_error(e)


@router.post("/{import_id}/reject", response_model=ImportRunResponse)
def reject_import(
    import_id: int,
    request: RejectImportRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.reject(import_id, request.reason, request.actor)
    except Exception as e:
        raise _to_http_error(e)


@router.post("/{import_id}/rollback", response_model=ImportRunResponse)
def rollback_import(
    import_id: int,
    request: ImportActionRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.rollback(import_id, request.actor)
    except Exception as e:
        raise _to_http_error(e)


@router.post("/{import_id}/retry", response_model=ImportRunResponse)
def retry_import(
    import_id: int,
    request: ImportActionRequest,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Discard staged data and restart the run at STAGING with the downloaded file."""
    try:
        return orchestrator.retry_from_staging(import_id, request.actor)
    except Exception as e:
        raise _to_http_error(e)
