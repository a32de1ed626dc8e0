# escalate/routes/health.py
import time
from fastapi import APIRouter, Request

router = APIRouter(prefix="/health")


@router.get("")
async def health(request: Request):
    services = request.app.state.services
    status = {"orchestrator": "ok"}

    # Redis check
    start = time.time()
    cache_stats = await services.cache.stats()
    status["redis"] = "ok" if cache_stats.get("connected") else "error"
    status["redis_latency_ms"] = round((time.time() - start) * 1000, 2)
    status["cache"] = cache_stats

    # Postgres check
    try:
        if services.pg_pool:
            async with services.pg_pool.acquire() as conn:
                await conn.execute("SELECT 1")
            status["postgres"] = "ok"
        else:
            status["postgres"] = "not_configured"
    except Exception as e:
        status["postgres"] = f"error ({e})"

    # Collaborator checks
    for collaborator in services.orchestrator.collaborators:
        ping = getattr(collaborator, "ping", None)
        if ping is None:
            continue
        try:
            status[collaborator.name] = "ok" if await ping() else "error (ping failed)"
        except Exception as e:
            status[collaborator.name] = f"error ({repr(e)})"

    status["queues"] = {
        name: stats.model_dump() for name, stats in (await services.queues.all_stats()).items()
    }
    status["integrations"] = services.settings.integrations_enabled()
    return status
