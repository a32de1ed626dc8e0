# escalate/routes/incidents.py
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from escalate.errors import (
    EscalateError,
    JobValidationError,
    LockUnavailable,
    MaxRetriesExceeded,
    PersistenceFailure,
)
from escalate.models import (
    AnalysisResult,
    AnalyzeRequest,
    IncidentDetail,
    IncidentPage,
    IncidentStatus,
    JobAccepted,
    Severity,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/incidents")


def _http_error(exc: EscalateError) -> HTTPException:
    if isinstance(exc, MaxRetriesExceeded) and isinstance(exc.last_error, LockUnavailable):
        exc = exc.last_error
    if isinstance(exc, LockUnavailable):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, JobValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/{incident_id}/analyze", status_code=202, response_model=JobAccepted)
async def request_analysis(incident_id: str, request: Request, body: AnalyzeRequest = AnalyzeRequest()):
    orchestrator = request.app.state.services.orchestrator
    try:
        job = await orchestrator.request_analysis(
            incident_id,
            source=body.source,
            force=body.force,
            severity=body.severity,
            priority=body.priority,
            delay_ms=body.delay_ms,
        )
    except EscalateError as e:
        logger.error("Could not queue analysis for %s: %s", incident_id, e)
        raise _http_error(e)
    return JobAccepted(
        job_id=job.id,
        queue=job.queue,
        incident_id=incident_id,
        priority=job.priority,
        state=job.state,
    )


@router.post("/{incident_id}/analyze/sync", response_model=AnalysisResult)
async def analyze_now(incident_id: str, request: Request, body: AnalyzeRequest = AnalyzeRequest()):
    orchestrator = request.app.state.services.orchestrator
    try:
        return await orchestrator.analyze_with_retry(incident_id, source=body.source, force_refresh=body.force)
    except EscalateError as e:
        raise _http_error(e)


@router.delete("/{incident_id}/cache")
async def invalidate_cache(incident_id: str, request: Request):
    removed = await request.app.state.services.cache.invalidate(incident_id)
    return JSONResponse({"incident_id": incident_id, "removed": removed})


@router.get("", response_model=IncidentPage)
async def list_incidents(
    request: Request,
    status: Optional[IncidentStatus] = None,
    severity: Optional[Severity] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    incidents = request.app.state.services.orchestrator.incidents
    try:
        total, rows = await incidents.query(status, severity, since, until, limit=limit, offset=offset)
    except PersistenceFailure as e:
        raise _http_error(e)
    return IncidentPage(total=total, incidents=rows)


@router.get("/{incident_id}", response_model=IncidentDetail)
async def get_incident(incident_id: str, request: Request):
    orchestrator = request.app.state.services.orchestrator
    try:
        incident = await orchestrator.incidents.get(incident_id)
        if incident is None:
            raise HTTPException(status_code=404, detail=f"Incident {incident_id} not found")
        analyses = await orchestrator.analyses.list_by_incident(incident_id)
    except PersistenceFailure as e:
        raise _http_error(e)
    # newest analysis first
    return IncidentDetail(**incident.model_dump(), analyses=sorted(analyses, key=lambda a: a.created_at, reverse=True))
