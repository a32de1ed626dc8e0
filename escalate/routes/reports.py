# escalate/routes/reports.py
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from escalate.errors import PersistenceFailure
from escalate.models import IncidentStats, Pattern, PatternType, utcnow

router = APIRouter(prefix="/api")


@router.get("/patterns", response_model=List[Pattern])
async def list_patterns(
    request: Request,
    type: Optional[PatternType] = None,
    limit: int = Query(20, ge=1, le=100),
):
    try:
        return await request.app.state.services.patterns.patterns.list(type, limit=limit)
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/stats", response_model=IncidentStats)
async def incident_stats(request: Request):
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    incidents = request.app.state.services.orchestrator.incidents
    try:
        return await incidents.stats(today, today - timedelta(days=6))
    except PersistenceFailure as e:
        raise HTTPException(status_code=500, detail=str(e))
