# escalate/routes/queues.py
from fastapi import APIRouter, HTTPException, Request

from escalate.errors import JobValidationError

router = APIRouter(prefix="/api/queues")


@router.get("")
async def list_queues(request: Request):
    stats = await request.app.state.services.queues.all_stats()
    return {name: s.model_dump() for name, s in stats.items()}


@router.post("/{name}/pause")
async def pause_queue(name: str, request: Request):
    queues = request.app.state.services.queues
    try:
        await queues.pause(name)
    except JobValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queue": name, "paused": True}


@router.post("/{name}/resume")
async def resume_queue(name: str, request: Request):
    queues = request.app.state.services.queues
    try:
        await queues.resume(name)
    except JobValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queue": name, "paused": False}


@router.get("/{name}/failed")
async def failed_jobs(name: str, request: Request):
    try:
        return await request.app.state.services.queues.failed_jobs(name)
    except JobValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/clean")
async def clean_queues(request: Request):
    services = request.app.state.services
    removed = await services.queues.clean_all(
        services.settings.completed_retention_seconds, services.settings.failed_retention_seconds
    )
    return {"removed": removed}
