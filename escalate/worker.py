"""Celery worker for the analysis, notifications and patterns queues.

Run one worker per queue so each keeps its own concurrency:
- celery -A escalate.worker worker -Q analysis -c 2 -n analysis@%h
- python -m escalate.worker analysis        (same, with concurrency from settings)

Broker and queue state live in Redis (REDIS_URL). Each worker process keeps one
event loop and one set of services; job handlers are the same coroutines the
API process would run.
"""

import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import worker_process_shutdown
from kombu import Queue

from escalate.config import Settings, configure_logging
from escalate.services.queue import PAYLOAD_MODELS, PROCESS_TASK

logger = logging.getLogger(__name__)


def make_celery(settings: Settings) -> Celery:
    app = Celery("escalate", broker=settings.redis_url)
    app.conf.update(
        task_queues=[Queue(name) for name in PAYLOAD_MODELS],
        task_default_queue="analysis",
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_ignore_result=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.queue_concurrency,
        worker_soft_shutdown_timeout=settings.shutdown_grace_seconds,
        broker_transport_options={
            "queue_order_strategy": "priority",
            "priority_steps": list(range(10)),
            "sep": ":",
            "visibility_timeout": settings.broker_visibility_timeout_seconds,
        },
    )
    return app


class WorkerRuntime:
    """One event loop and one Services container per worker process."""

    def __init__(self, services=None, settings: Optional[Settings] = None):
        self.loop = asyncio.new_event_loop()
        self.services = services
        self.settings = settings
        self.owns_connections = services is None

    def start(self) -> "WorkerRuntime":
        if self.services is None:
            from escalate.main import connect

            self.services = self.loop.run_until_complete(connect(self.settings or Settings.from_env()))
        self.services.register_handlers()
        return self

    def run(self, coro) -> Any:
        task = self.loop.create_task(coro)
        try:
            return self.loop.run_until_complete(task)
        except BaseException:
            # Time limits and shutdown interrupt the loop; let the pipeline record its own cancellation.
            if not task.done():
                task.cancel()
                self.loop.run_until_complete(asyncio.gather(task, return_exceptions=True))
            raise

    def close(self) -> None:
        services = self.services
        if services is not None and self.owns_connections:
            if services.pg_pool:
                self.loop.run_until_complete(services.pg_pool.close())
            if services.redis:
                self.loop.run_until_complete(services.redis.aclose())
        self.loop.close()


_runtime: Optional[WorkerRuntime] = None


def get_runtime() -> WorkerRuntime:
    global _runtime
    if _runtime is None:
        _runtime = WorkerRuntime().start()
    return _runtime


def set_runtime(runtime: Optional[WorkerRuntime]) -> None:
    global _runtime
    _runtime = runtime


settings = Settings.from_env()
celery_app = make_celery(settings)


@celery_app.task(bind=True, name=PROCESS_TASK, max_retries=None)
def process_job(
    self,
    queue_name: str,
    payload: Dict[str, Any],
    priority: int = 1,
    stalls: int = 0,
    delayed: bool = False,
) -> Any:
    """Run one delivery of a queued job; retry and failure decisions come from the queue manager."""
    runtime = get_runtime()
    queues = runtime.services.queues
    job = queues.job_for(self.request.id, queue_name, payload, priority, retries=self.request.retries, stalls=stalls)
    outcome = runtime.run(queues.process(job, delayed=delayed))
    if outcome.retry:
        raise self.retry(
            exc=outcome.error,
            countdown=outcome.retry_in_ms / 1000,
            kwargs={
                "queue_name": queue_name,
                "payload": payload,
                "priority": priority,
                "stalls": job.stall_count,
                "delayed": bool(outcome.retry_in_ms),
            },
        )
    if outcome.error is not None:
        raise outcome.error
    return outcome.result


@worker_process_shutdown.connect
def _close_runtime(**kwargs) -> None:
    if _runtime is not None:
        _runtime.close()
        set_runtime(None)


def main(argv=None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    queue_name = args[0] if args else "analysis"
    if queue_name not in PAYLOAD_MODELS:
        raise SystemExit(f"Unknown queue {queue_name!r}; expected one of {', '.join(PAYLOAD_MODELS)}")
    configure_logging(settings.log_level)
    concurrency = settings.queue_settings()[queue_name].concurrency
    celery_app.worker_main([
        "worker", "-Q", queue_name, "-c", str(concurrency), "-n", f"{queue_name}@%h", "-l", settings.log_level,
    ])


if __name__ == "__main__":
    main()
