# escalate/services/queue.py
import asyncio
import inspect
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from celery import Celery
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

from escalate.config import QueueSettings
from escalate.errors import JobValidationError, MaxRetriesExceeded
from escalate.models import (
    AnalysisJobPayload,
    NotificationJobPayload,
    PatternJobPayload,
    QueueStats,
    utcnow,
)

logger = logging.getLogger(__name__)

ANALYSIS_QUEUE = "analysis"
NOTIFICATIONS_QUEUE = "notifications"
PATTERNS_QUEUE = "patterns"

PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    ANALYSIS_QUEUE: AnalysisJobPayload,
    NOTIFICATIONS_QUEUE: NotificationJobPayload,
    PATTERNS_QUEUE: PatternJobPayload,
}

# Registered name of the Celery task that runs every queue's jobs (escalate/worker.py).
PROCESS_TASK = "escalate.process_job"

SEVERITY_PRIORITY = {"P1": 10, "P2": 5, "P3": 2, "P4": 1}

EVENTS = ("completed", "failed", "retrying", "stalled")
COUNTERS = ("waiting", "active", "completed", "failed", "delayed")

# Retained job records per queue, newest first.
KEEP_COMPLETED = 100
KEEP_FAILED = 50


def priority_for(severity: Optional[str]) -> int:
    return SEVERITY_PRIORITY.get(str(severity or "").strip().upper(), 1)


def broker_priority(priority: int) -> int:
    """Celery's Redis transport serves priority 0 first; job priorities grow with urgency."""
    return max(0, 9 - min(priority, 9))


def backoff_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Exponential backoff before the retry that follows failed attempt `attempt` (1-based)."""
    return base_delay_ms * 2 ** (attempt - 1)


class StalledJobError(Exception):
    pass


@dataclass
class Job:
    id: str
    queue: str
    payload: BaseModel
    priority: int = 1
    delay_ms: int = 0
    max_attempts: int = 1
    attempts_made: int = 0
    stall_count: int = 0
    state: str = "waiting"
    progress_value: Any = None
    last_progress_at: float = 0.0
    result: Any = None
    error: Optional[str] = None

    def progress(self, value: Any = None) -> None:
        """Report liveness; the stall watchdog only looks at the timestamp."""
        if value is not None:
            self.progress_value = value
        self.last_progress_at = time.monotonic()


@dataclass
class Outcome:
    """What the Celery task does with a finished run: return, retry later, or fail."""
    result: Any = None
    error: Optional[BaseException] = None
    retry_in_ms: Optional[int] = None

    @property
    def retry(self) -> bool:
        return self.retry_in_ms is not None


Handler = Callable[[Job], Awaitable[Any]]


class JobQueueManager:
    """
    The three named queues, carried by Celery over the Redis broker.

    Producers call `enqueue`; the worker task calls `process` for each delivery.
    Counters, pause flags and retained job records live in Redis next to the
    broker so every process sees the same numbers.
    """

    def __init__(
        self,
        redis: Redis,
        celery_app: Celery,
        queue_settings: Dict[str, QueueSettings],
        stalled_interval_ms: int = 300_000,
        stalled_check_interval_ms: int = 5_000,
    ):
        self.redis = redis
        self.celery_app = celery_app
        self.settings: Dict[str, QueueSettings] = {
            name: queue_settings.get(name, QueueSettings()) for name in PAYLOAD_MODELS
        }
        self.queues = tuple(PAYLOAD_MODELS)
        self.stalled_interval = stalled_interval_ms / 1000
        self.stalled_check_interval = stalled_check_interval_ms / 1000
        self.handlers: Dict[str, Handler] = {}
        self._listeners: Dict[str, Dict[str, List[Callable]]] = {
            name: {event: [] for event in EVENTS} for name in PAYLOAD_MODELS
        }
        self._closing = False

    # ----------------------------
    # Wiring
    # ----------------------------
    def _check(self, queue_name: str) -> str:
        if queue_name not in PAYLOAD_MODELS:
            raise JobValidationError(f"Unknown queue {queue_name!r}")
        return queue_name

    def _key(self, queue_name: str, part: str) -> str:
        return f"queue:{queue_name}:{part}"

    def register(self, queue_name: str, handler: Handler) -> None:
        self.handlers[self._check(queue_name)] = handler

    def on(self, event: str, listener: Callable, queue_name: Optional[str] = None) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown queue event {event}")
        targets = [self._check(queue_name)] if queue_name else self.queues
        for name in targets:
            self._listeners[name][event].append(listener)

    def validate(self, queue_name: str, payload: Any) -> BaseModel:
        model = PAYLOAD_MODELS[self._check(queue_name)]
        if isinstance(payload, BaseModel):
            if not isinstance(payload, model):
                raise JobValidationError(f"Queue {queue_name} expects {model.__name__}, got {type(payload).__name__}")
            payload = payload.model_dump()
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise JobValidationError(f"Invalid {queue_name} payload: {e.errors()}") from e

    # ----------------------------
    # Producer side
    # ----------------------------
    async def enqueue(
        self,
        queue_name: str,
        payload: Any,
        priority: Optional[int] = None,
        delay_ms: int = 0,
    ) -> Job:
        validated = self.validate(queue_name, payload)
        if delay_ms < 0:
            raise JobValidationError("delay_ms must be >= 0")
        if self._closing:
            raise JobValidationError(f"Queue {queue_name} is closed")

        job = Job(
            id=str(uuid.uuid4()),
            queue=queue_name,
            payload=validated,
            priority=priority if priority is not None else 1,
            delay_ms=delay_ms,
            max_attempts=self.settings[queue_name].max_attempts,
            state="delayed" if delay_ms else "waiting",
        )
        await self._count(queue_name, job.state, 1)
        try:
            self.celery_app.send_task(
                PROCESS_TASK,
                kwargs={
                    "queue_name": queue_name,
                    "payload": validated.model_dump(mode="json"),
                    "priority": job.priority,
                    "delayed": bool(delay_ms),
                },
                task_id=job.id,
                queue=queue_name,
                priority=broker_priority(job.priority),
                countdown=delay_ms / 1000 if delay_ms else None,
            )
        except Exception:
            await self._count(queue_name, job.state, -1)
            raise
        logger.info("Added job %s to queue %s (priority %d, delay %dms)", job.id, queue_name, job.priority, delay_ms)
        return job

    # ----------------------------
    # Worker side
    # ----------------------------
    def job_for(
        self,
        job_id: str,
        queue_name: str,
        payload: Dict[str, Any],
        priority: int = 1,
        retries: int = 0,
        stalls: int = 0,
    ) -> Job:
        """Rebuild a Job from a Celery delivery. The first stall is free, so it does not count as an attempt."""
        return Job(
            id=job_id,
            queue=queue_name,
            payload=self.validate(queue_name, payload),
            priority=priority,
            max_attempts=self.settings[queue_name].max_attempts,
            attempts_made=retries + 1 - min(stalls, 1),
            stall_count=stalls,
        )

    async def process(self, job: Job, delayed: bool = False) -> Outcome:
        handler = self.handlers.get(job.queue)
        if handler is None:
            raise JobValidationError(f"No handler registered for queue {job.queue}")

        await self._count(job.queue, "delayed" if delayed else "waiting", -1)
        await self._count(job.queue, "active", 1)
        job.state = "active"
        job.progress()
        try:
            outcome = await self._run(job, handler)
        finally:
            await self._count(job.queue, "active", -1)
        await self._settle(job, outcome)
        return outcome

    async def _run(self, job: Job, handler: Handler) -> Outcome:
        task = asyncio.ensure_future(handler(job))
        try:
            while not task.done():
                await asyncio.wait({task}, timeout=self.stalled_check_interval)
                if not task.done() and time.monotonic() - job.last_progress_at > self.stalled_interval:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    return await self._stalled(job)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        try:
            return Outcome(result=task.result())
        except Exception as exc:
            return await self._attempt_failed(job, exc)

    async def _stalled(self, job: Job) -> Outcome:
        job.stall_count += 1
        logger.warning("Job %s in queue %s stalled (%d)", job.id, job.queue, job.stall_count)
        await self._emit(job.queue, "stalled", job)
        error = StalledJobError(f"job stalled {job.stall_count} times")
        if job.stall_count == 1:
            return Outcome(error=error, retry_in_ms=0)
        return await self._attempt_failed(job, error)

    async def _attempt_failed(self, job: Job, exc: BaseException) -> Outcome:
        job.error = str(exc) or type(exc).__name__
        if job.attempts_made < job.max_attempts:
            delay = backoff_delay_ms(job.attempts_made, self.settings[job.queue].base_delay_ms)
            logger.warning(
                "Job %s in queue %s failed (attempt %d/%d), retrying in %dms: %s",
                job.id, job.queue, job.attempts_made, job.max_attempts, delay, job.error,
            )
            await self._emit(job.queue, "retrying", job, exc)
            return Outcome(error=exc, retry_in_ms=delay)
        terminal = MaxRetriesExceeded(job.attempts_made, exc) if job.max_attempts > 1 else exc
        return Outcome(error=terminal)

    async def _settle(self, job: Job, outcome: Outcome) -> None:
        if outcome.retry:
            job.state = "delayed" if outcome.retry_in_ms else "waiting"
            await self._count(job.queue, job.state, 1)
            return
        if outcome.error is None:
            job.state = "completed"
            job.result = outcome.result
            await self._count(job.queue, "completed", 1)
            await self._record(job, "completed", KEEP_COMPLETED)
            logger.info("Job %s in queue %s completed", job.id, job.queue)
            await self._emit(job.queue, "completed", job, outcome.result)
            return
        job.state = "failed"
        job.error = str(outcome.error) or type(outcome.error).__name__
        await self._count(job.queue, "failed", 1)
        await self._record(job, "failed", KEEP_FAILED)
        logger.error("Job %s in queue %s failed: %s", job.id, job.queue, job.error)
        await self._emit(job.queue, "failed", job, outcome.error)

    async def _emit(self, queue_name: str, event: str, *args) -> None:
        for listener in self._listeners[queue_name][event]:
            try:
                outcome = listener(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Listener for %s on queue %s failed", event, queue_name)

    # ----------------------------
    # Shared state in Redis
    # ----------------------------
    async def _count(self, queue_name: str, counter: str, amount: int) -> None:
        await self.redis.hincrby(self._key(queue_name, "stats"), counter, amount)

    async def _record(self, job: Job, state: str, keep: int) -> None:
        entry = {
            "id": job.id,
            "payload": job.payload.model_dump(mode="json"),
            "attempts": job.attempts_made,
            "error": job.error,
            "finished_at": utcnow().isoformat(),
        }
        key = self._key(job.queue, state)
        await self.redis.lpush(key, json.dumps(entry, default=str))
        await self.redis.ltrim(key, 0, keep - 1)

    async def _records(self, queue_name: str, state: str) -> List[Dict[str, Any]]:
        raw = await self.redis.lrange(self._key(self._check(queue_name), state), 0, -1)
        return [json.loads(item) for item in raw]

    async def stats(self, queue_name: str) -> QueueStats:
        raw = await self.redis.hgetall(self._key(self._check(queue_name), "stats"))
        counts = {name: max(0, int(raw.get(name, 0))) for name in COUNTERS}
        paused = bool(await self.redis.exists(self._key(queue_name, "paused")))
        return QueueStats(**counts, paused=paused)

    async def all_stats(self) -> Dict[str, QueueStats]:
        return {name: await self.stats(name) for name in self.queues}

    async def failed_jobs(self, queue_name: str) -> List[Dict[str, Any]]:
        return await self._records(queue_name, "failed")

    async def clean(self, queue_name: str, state: str, older_than_seconds: int) -> int:
        """Drop retained completed/failed records finished more than `older_than_seconds` ago."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        key = self._key(self._check(queue_name), state)
        kept, removed = [], 0
        for item in await self.redis.lrange(key, 0, -1):
            if datetime.fromisoformat(json.loads(item)["finished_at"]) < cutoff:
                removed += 1
            else:
                kept.append(item)
        if removed:
            await self.redis.delete(key)
            if kept:
                await self.redis.rpush(key, *kept)
        return removed

    async def clean_all(self, completed_seconds: int, failed_seconds: int) -> Dict[str, int]:
        removed = {}
        for name in self.queues:
            removed[name] = (
                await self.clean(name, "completed", completed_seconds)
                + await self.clean(name, "failed", failed_seconds)
            )
        logger.info("Cleaned old jobs from queues: %s", removed)
        return removed

    # ----------------------------
    # Control
    # ----------------------------
    async def pause(self, queue_name: str) -> None:
        """Workers stop taking deliveries from the queue; queued jobs stay in the broker."""
        await self.redis.set(self._key(self._check(queue_name), "paused"), "1")
        self.celery_app.control.cancel_consumer(queue_name)
        logger.info("Queue %s paused", queue_name)

    async def resume(self, queue_name: str) -> None:
        await self.redis.delete(self._key(self._check(queue_name), "paused"))
        self.celery_app.control.add_consumer(queue_name)
        logger.info("Queue %s resumed", queue_name)

    async def pause_all(self) -> None:
        for name in self.queues:
            await self.pause(name)

    async def close(self) -> None:
        """Stop accepting new jobs from this process. Workers drain on their own warm shutdown."""
        self._closing = True
        logger.info("Job queue producer closed")
