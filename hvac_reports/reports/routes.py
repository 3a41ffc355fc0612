"""
Report API Routes - CRUD, sharing, execution, analytics and cache administration.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Query
from fastapi.responses import JSONResponse

from hvac_reports.domain.models import (
    AnalyticsTimeRange,
    ErrorResponse,
    ExecuteReportRequest,
    ExecuteReportResponse,
    ReportDefinition,
    ReportQuery,
    ReportType,
    ShareRequest,
    TemplateInstantiateRequest,
)
from hvac_reports.reports.errors import ReportEngineError, ReportNotFound, ValidationError
from hvac_reports.reports.service import get_report_service
from hvac_reports.utils.log_utils import get_logger

router = APIRouter(prefix="/api/reports", tags=["Reports"])
logger = get_logger(__name__)


def _error(status_code: int, error: ReportEngineError) -> JSONResponse:
    body = ErrorResponse(error=error.to_report_error())
    return JSONResponse(status_code=status_code, content=body.to_api())


def _handle(error: ReportEngineError) -> JSONResponse:
    if isinstance(error, ReportNotFound):
        return _error(404, error)
    if isinstance(error, ValidationError):
        return _error(422, error)
    logger.error(f"[ReportRoutes] Unexpected engine error: {error.message}")
    return _error(500, error)


# ---------------------------------------------------------------------------
# Cache administration
# ---------------------------------------------------------------------------

@router.get("/cache/stats")
def cache_stats():
    """Entry count, byte usage and hit ratio of the result cache."""
    return get_report_service().cache.stats()


@router.post("/cache/cleanup")
def cache_cleanup():
    """Purge expired cache entries."""
    removed = get_report_service().cache.purge_expired()
    return {"success": True, "removed": removed}


# ---------------------------------------------------------------------------
# Execution analytics
# ---------------------------------------------------------------------------

@router.get("/analytics")
def report_analytics(
    report_id: Optional[str] = Query(None, alias="reportId"),
    time_range: AnalyticsTimeRange = Query(AnalyticsTimeRange.WEEK, alias="timeRange"),
):
    """Execution count, mean time, backend usage and domain metrics over a window."""
    service = get_report_service()
    if report_id is not None and service.repository.get(report_id) is None:
        return _handle(ReportNotFound(report_id))
    analytics = service.history.summarize(report_id, time_range)
    return analytics.to_api()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@router.get("")
def list_reports(
    report_type: Optional[ReportType] = Query(None, alias="type"),
    category: Optional[str] = None,
    is_template: Optional[bool] = Query(None, alias="isTemplate"),
    is_public: Optional[bool] = Query(None, alias="isPublic"),
    search: Optional[str] = None,
    principal: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
):
    query = ReportQuery(
        report_type=report_type,
        category=category,
        is_template=is_template,
        is_public=is_public,
        search=search,
        principal=principal,
        limit=limit,
    )
    reports = get_report_service().repository.list(query)
    return {"reports": [r.to_api() for r in reports], "total": len(reports)}


@router.get("/{report_id}")
def get_report(report_id: str):
    definition = get_report_service().repository.get(report_id)
    if definition is None:
        return _handle(ReportNotFound(report_id))
    return definition.to_api()


@router.post("", status_code=201)
def create_report(definition: ReportDefinition):
    repository = get_report_service().repository
    try:
        report_id = repository.create(definition)
    except ReportEngineError as e:
        return _handle(e)
    return repository.get(report_id).to_api()


@router.patch("/{report_id}")
def update_report(report_id: str, partial: Dict[str, Any] = Body(...)):
    try:
        updated = get_report_service().repository.update(report_id, partial)
    except ReportEngineError as e:
        return _handle(e)
    return updated.to_api()


@router.delete("/{report_id}")
def delete_report(report_id: str):
    try:
        get_report_service().repository.remove(report_id)
    except ReportEngineError as e:
        return _handle(e)
    return {"success": True, "id": report_id}


# ---------------------------------------------------------------------------
# Sharing and templates
# ---------------------------------------------------------------------------

@router.post("/{report_id}/share")
def share_report(report_id: str, request: ShareRequest):
    try:
        updated = get_report_service().repository.share_report(
            report_id, request.principal, request.permission
        )
    except ReportEngineError as e:
        return _handle(e)
    return updated.to_api()


@router.delete("/{report_id}/share/{principal}")
def unshare_report(report_id: str, principal: str):
    try:
        updated = get_report_service().repository.unshare_report(report_id, principal)
    except ReportEngineError as e:
        return _handle(e)
    return updated.to_api()


@router.post("/templates/{template_id}/instantiate", status_code=201)
def instantiate_template(template_id: str, request: TemplateInstantiateRequest):
    repository = get_report_service().repository
    try:
        report_id = repository.create_from_template(
            template_id, request.name, request.description, request.owner
        )
    except ReportEngineError as e:
        return _handle(e)
    return repository.get(report_id).to_api()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@router.post("/{report_id}/execute")
async def execute_report(report_id: str, request: Optional[ExecuteReportRequest] = None):
    """
    Execute a report.

    Validation failures return 422 and unknown reports 404, both with the
    {success: false, error} envelope. Backend failures do not fail the
    request; they show up in metadata.failedBackends and warnings.
    """
    request = request or ExecuteReportRequest()
    try:
        result = await get_report_service().executor.execute(
            report_id, request.parameters, use_cache=request.use_cache
        )
    except ReportEngineError as e:
        return _handle(e)
    response = ExecuteReportResponse(
        data=result.data,
        metadata=result.metadata,
        cached=result.metadata.cached,
    )
    return response.to_api()
