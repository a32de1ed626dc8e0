import asyncio
import fnmatch
import time
import uuid
from collections import Counter
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from escalate.collaborators import (
    DataCollaborator,
    IncidentSource,
    NotificationCollaborator,
    SummarizationCollaborator,
)
from escalate.config import Settings
from escalate.data.cache import CacheService
from escalate.errors import InvalidTransition
from escalate.models import (
    ANALYSIS_TRANSITIONS,
    Analysis,
    DailyCount,
    Incident,
    IncidentStats,
    Pattern,
    PatternCandidate,
    ServiceCount,
    signature_key,
    utcnow,
)
from escalate.orchestrator import IncidentOrchestrator
from escalate.services.events import EventBus
from escalate.services.patterns import PatternDetector, PatternService
from escalate.services.queue import JobQueueManager


class FakeRedis:
    """The slice of redis.asyncio.Redis the engine uses, kept in a dict."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.expires: Dict[str, float] = {}
        self.published: List[tuple] = []
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("redis is down")

    def _alive(self, key: str) -> bool:
        expires_at = self.expires.get(key)
        if expires_at is not None and expires_at <= time.monotonic():
            self.store.pop(key, None)
            self.expires.pop(key, None)
        return key in self.store

    def expire_now(self, key: str) -> None:
        self.store.pop(key, None)
        self.expires.pop(key, None)

    async def get(self, key):
        self._check()
        return self.store.get(key) if self._alive(key) else None

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and self._alive(key):
            return None
        self.store[key] = value
        if ex:
            self.expires[key] = time.monotonic() + ex
        else:
            self.expires.pop(key, None)
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.store.pop(key, None)
            self.expires.pop(key, None)
        return removed

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.store):
            if self._alive(key) and fnmatch.fnmatchcase(key, match):
                yield key

    async def eval(self, script, numkeys, *args):
        # Only the lock release script is ever evaluated.
        self._check()
        key, token = args[0], args[1]
        if self._alive(key) and self.store[key] == token:
            return await self.delete(key)
        return 0

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 0

    async def ping(self):
        self._check()
        return True

    async def dbsize(self):
        return len([k for k in list(self.store) if self._alive(k)])

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if self._alive(key))

    async def hincrby(self, key, field, amount=1):
        self._check()
        bucket = self.store.setdefault(key, {})
        bucket[field] = int(bucket.get(field, 0)) + amount
        return bucket[field]

    async def hgetall(self, key):
        self._check()
        return {f: str(v) for f, v in self.store.get(key, {}).items()}

    async def lpush(self, key, *values):
        self._check()
        items = self.store.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpush(self, key, *values):
        self._check()
        items = self.store.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def ltrim(self, key, start, stop):
        self._check()
        items = self.store.get(key, [])
        self.store[key] = items[start:] if stop == -1 else items[start:stop + 1]
        return True

    async def lrange(self, key, start, stop):
        self._check()
        items = self.store.get(key, [])
        return list(items[start:] if stop == -1 else items[start:stop + 1])


class RecordingControl:
    def __init__(self):
        self.calls = []

    def cancel_consumer(self, queue, **kwargs):
        self.calls.append(("cancel_consumer", queue))

    def add_consumer(self, queue, **kwargs):
        self.calls.append(("add_consumer", queue))


class RecordingCelery:
    """Stands in for the Celery app on the producer side: keeps sent tasks instead of publishing them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.control = RecordingControl()

    def send_task(self, name, kwargs=None, task_id=None, **options):
        self.sent.append({"name": name, "kwargs": kwargs, "task_id": task_id, **options})
        return SimpleNamespace(id=task_id)


class InMemoryIncidents:
    def __init__(self):
        self.rows: Dict[str, Incident] = {}

    async def upsert(self, incident: Incident) -> Incident:
        now = utcnow()
        existing = self.rows.get(incident.id)
        if existing is None:
            stored = incident.model_copy(update={"analysis_count": 1, "last_analyzed_at": now})
        else:
            stored = existing.model_copy(update={
                "analysis_count": existing.analysis_count + 1,
                "metrics": incident.metrics,
                "similar_incidents": incident.similar_incidents,
                "affected_services": incident.affected_services,
                "severity": existing.severity if incident.severity == "Unknown" else incident.severity,
                "status": incident.status,
                "last_analyzed_at": now,
                "updated_at": now,
            })
        self.rows[incident.id] = stored
        return stored

    def add(self, incident: Incident) -> Incident:
        self.rows[incident.id] = incident
        return incident

    async def get(self, incident_id: str) -> Optional[Incident]:
        return self.rows.get(incident_id)

    async def search_by_title(self, keywords: str, limit: int, exclude_id: Optional[str] = None) -> List[Incident]:
        found = [
            i for i in self.rows.values()
            if keywords.lower() in i.title.lower() and i.id != exclude_id
        ]
        return sorted(found, key=lambda i: i.created_at, reverse=True)[:limit]

    async def created_since(self, since: datetime) -> List[Incident]:
        return sorted((i for i in self.rows.values() if i.created_at >= since), key=lambda i: i.created_at)

    async def query(self, status=None, severity=None, since=None, until=None, limit=100, offset=0):
        found = [
            i for i in self.rows.values()
            if (status is None or i.status == status)
            and (severity is None or i.severity == severity)
            and (since is None or i.created_at >= since)
            and (until is None or i.created_at < until)
        ]
        found.sort(key=lambda i: i.created_at, reverse=True)
        return len(found), found[offset:offset + limit]

    async def stats(self, today, week_start, top=5):
        rows = list(self.rows.values())
        days = Counter(
            i.created_at.replace(hour=0, minute=0, second=0, microsecond=0)
            for i in rows if i.created_at >= week_start
        )
        services = Counter(s for i in rows for s in i.affected_services)
        return IncidentStats(
            total_incidents=len(rows),
            open_incidents=sum(1 for i in rows if i.status == "open"),
            today_incidents=sum(1 for i in rows if i.created_at >= today),
            weekly_trend=[DailyCount(day=d, incidents=n) for d, n in sorted(days.items())],
            top_services=[
                ServiceCount(service=s, incidents=n)
                for s, n in sorted(services.items(), key=lambda kv: (-kv[1], kv[0]))[:top]
            ],
        )


class InMemoryAnalyses:
    def __init__(self):
        self.rows: Dict[str, Analysis] = {}

    async def create(self, incident_id, status="pending", data_sources=None, model=None, triggered_by="webhook"):
        analysis = Analysis(
            id=str(uuid.uuid4()),
            incident_id=incident_id,
            status=status,
            data_sources=data_sources or {},
            model=model,
            triggered_by=triggered_by,
        )
        self.rows[analysis.id] = analysis
        return analysis

    async def get(self, analysis_id):
        return self.rows.get(analysis_id)

    def _transition(self, analysis_id, target, **changes):
        current = self.rows.get(analysis_id)
        if current is None or target not in ANALYSIS_TRANSITIONS[current.status]:
            raise InvalidTransition(f"Analysis {analysis_id}: {current.status if current else 'missing'} -> {target}")
        updated = current.model_copy(update={"status": target, "updated_at": utcnow(), **changes})
        self.rows[analysis_id] = updated
        return updated

    async def mark_completed(self, analysis_id, summary, duration_ms):
        return self._transition(analysis_id, "completed", summary=summary, duration_ms=duration_ms)

    async def mark_failed(self, analysis_id, errors, duration_ms=None):
        return self._transition(analysis_id, "failed", errors=errors, duration_ms=duration_ms)

    async def list_by_incident(self, incident_id):
        return [a for a in self.rows.values() if a.incident_id == incident_id]


class InMemoryPatterns:
    def __init__(self):
        self.rows: Dict[str, Pattern] = {}

    async def find(self, type_, signature):
        for pattern in self.rows.values():
            if pattern.type == type_ and signature_key(pattern.signature) == signature:
                return pattern
        return None

    async def create(self, candidate: PatternCandidate, last_occurred):
        pattern = Pattern(
            id=str(uuid.uuid4()),
            type=candidate.type,
            signature=candidate.signature,
            name=candidate.name,
            description=candidate.description,
            incidents=sorted(set(candidate.incidents)),
            occurrences=candidate.occurrences,
            confidence=candidate.confidence,
            last_occurred=last_occurred,
        )
        self.rows[pattern.id] = pattern
        return pattern

    async def update(self, pattern: Pattern):
        self.rows[pattern.id] = pattern.model_copy(update={"updated_at": utcnow()})
        return self.rows[pattern.id]

    async def list(self, type_=None, limit=100):
        found = [p for p in self.rows.values() if type_ is None or p.type == type_]
        return sorted(found, key=lambda p: p.occurrences, reverse=True)[:limit]


class StubSummarizer(SummarizationCollaborator):
    model = "stub-model"

    def __init__(self, text: str = "root cause X", error: Optional[Exception] = None, delay: float = 0):
        self.text = text
        self.error = error
        self.delay = delay
        self.contexts = []

    async def summarize(self, context):
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.text


class StubSource(IncidentSource):
    def __init__(self, name: str = "jira", details: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.name = name
        self.details = details or {}
        self.error = error
        self.calls = []

    async def fetch_incident(self, incident_id):
        self.calls.append(incident_id)
        if self.error:
            raise self.error
        return self.details


class StubCollaborator(DataCollaborator):
    def __init__(self, name: str, value: Any = None, error: Optional[Exception] = None):
        self.name = name
        self.value = value if value is not None else {"name": name}
        self.error = error
        self.calls = 0

    async def fetch(self, time_range, incident_id):
        self.calls += 1
        if self.error:
            raise self.error
        return self.value


class RecordingNotifier(NotificationCollaborator):
    def __init__(self, name: str, cross_links_similar: bool = False, max_content_length: Optional[int] = None,
                 error: Optional[Exception] = None):
        self.name = name
        self.cross_links_similar = cross_links_similar
        self.max_content_length = max_content_length
        self.error = error
        self.sent = []

    async def publish(self, target, content):
        if self.error:
            raise self.error
        self.sent.append((target, content))


@pytest.fixture
def settings():
    return Settings(
        retry_delay_ms=0,
        enable_pattern_detection=False,
        collaborator_timeout_seconds=1.0,
        summarization_timeout_seconds=1.0,
        lock_ttl_seconds=30,
    )


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def cache(redis):
    return CacheService(redis)


@pytest.fixture
def incidents():
    return InMemoryIncidents()


@pytest.fixture
def analyses():
    return InMemoryAnalyses()


@pytest.fixture
def patterns():
    return InMemoryPatterns()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def summarizer():
    return StubSummarizer()


@pytest.fixture
def make_orchestrator(cache, incidents, analyses, patterns, summarizer, settings, events):
    def build(**overrides):
        pattern_service = PatternService(PatternDetector(min_occurrences=2), incidents, patterns, events)
        kwargs = dict(
            cache=cache,
            incidents=incidents,
            analyses=analyses,
            summarizer=summarizer,
            settings=settings,
            events=events,
            patterns=pattern_service,
        )
        kwargs.update(overrides)
        return IncidentOrchestrator(**kwargs)

    return build


@pytest.fixture
def celery_app():
    return RecordingCelery()


@pytest.fixture
def queues(settings, redis, celery_app):
    return JobQueueManager(redis, celery_app, settings.queue_settings(), stalled_check_interval_ms=10)


async def deliver(manager, sent, retries=0, stalls=0, delayed=None):
    """Run one recorded delivery through the worker side of the manager."""
    kwargs = sent["kwargs"]
    if delayed is None:
        delayed = kwargs.get("delayed", False)
    job = manager.job_for(
        sent["task_id"], kwargs["queue_name"], kwargs["payload"], kwargs.get("priority", 1),
        retries=retries, stalls=stalls,
    )
    return job, await manager.process(job, delayed=delayed)
