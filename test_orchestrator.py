import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from escalate.config import Settings
from escalate.errors import (
    AnalysisTimeout,
    ConfigurationError,
    LockUnavailable,
    MaxRetriesExceeded,
    SummarizationFailure,
)
from escalate.models import Incident, SimilarIncident
from escalate.orchestrator import IncidentOrchestrator
from escalate.services.events import ANALYSIS_COMPLETE, ANALYSIS_UPDATED, INCIDENT_UPDATED
from escalate.services.notifications import NotificationDispatcher
from escalate.services.queue import ANALYSIS_QUEUE, NOTIFICATIONS_QUEUE, PATTERNS_QUEUE

from conftest import (
    InMemoryIncidents,
    RecordingNotifier,
    StubCollaborator,
    StubSource,
    StubSummarizer,
    deliver,
)


DETAILS = {
    "title": "Checkout latency spike",
    "description": "p99 above 3s",
    "severity": "P1 - Critical",
    "status": "In Progress",
    "created": "2024-05-01T14:03:00Z",
    "affected_services": ["checkout", "payments", "checkout"],
}


async def test_end_to_end_analysis(make_orchestrator, analyses, incidents, events, cache):
    published = []
    events.subscribe(published.append)
    orchestrator = make_orchestrator(sources={"jira": StubSource(details=DETAILS)})

    result = await orchestrator.analyze("INC-1", "jira")

    assert result.summary == "root cause X"
    assert result.cached is False
    assert result.data_sources == {"jira": True}

    stored = await analyses.get(result.analysis_id)
    assert stored.status == "completed"
    assert stored.summary == "root cause X"
    assert stored.model == "stub-model"

    incident = await incidents.get("INC-1")
    assert incident.analysis_count == 1
    assert incident.severity == "P1"
    assert incident.status == "investigating"
    assert incident.affected_services == ["checkout", "payments"]
    assert incident.started_at == datetime(2024, 5, 1, 14, 3, tzinfo=timezone.utc)

    cached = await cache.get_cached_analysis("INC-1")
    assert cached["summary"] == "root cause X"

    types = [e.type for e in published]
    assert types[0] == INCIDENT_UPDATED
    assert types.count(ANALYSIS_UPDATED) == 2
    assert types[-1] == ANALYSIS_COMPLETE


async def test_cached_analysis_is_reused(make_orchestrator, summarizer, analyses):
    orchestrator = make_orchestrator()

    first = await orchestrator.analyze("INC-1")
    second = await orchestrator.analyze("INC-1")

    assert second.cached is True
    assert second.analysis_id == first.analysis_id
    assert len(summarizer.contexts) == 1
    assert len(analyses.rows) == 1


async def test_force_refresh_bypasses_cache(make_orchestrator, summarizer, incidents):
    orchestrator = make_orchestrator()

    await orchestrator.analyze("INC-1")
    result = await orchestrator.analyze("INC-1", force_refresh=True)

    assert result.cached is False
    assert len(summarizer.contexts) == 2
    assert (await incidents.get("INC-1")).analysis_count == 2


async def test_partial_collaborator_failure_is_recorded(make_orchestrator, analyses, summarizer):
    collaborators = [
        StubCollaborator("a", {"cpu": 91}),
        StubCollaborator("b", error=RuntimeError("timeout talking to b")),
        StubCollaborator("c", {"deploys": 2}),
    ]
    orchestrator = make_orchestrator(collaborators=collaborators)

    result = await orchestrator.analyze("INC-1")

    assert result.data_sources == {"a": True, "b": False, "c": True}
    context = summarizer.contexts[0]
    assert set(context.collaborator_data) == {"a", "c"}
    assert "timeout talking to b" in context.errors["b"]
    assert (await analyses.get(result.analysis_id)).data_sources == {"a": True, "b": False, "c": True}


async def test_collaborator_metrics_are_cached(make_orchestrator, cache):
    collaborator = StubCollaborator("grafana", {"cpu": 50})
    orchestrator = make_orchestrator(collaborators=[collaborator])
    context = await orchestrator.gather("INC-1", "jira")

    await orchestrator._fetch_branch(collaborator, context.time_range, "INC-1")

    assert collaborator.calls == 1
    assert await cache.get_cached_metrics(
        "grafana", context.time_range.start, context.time_range.end, incident_id="INC-1"
    ) == {"cpu": 50}


async def test_summarization_failure_marks_analysis_failed(make_orchestrator, analyses, cache, redis):
    orchestrator = make_orchestrator(summarizer=StubSummarizer(error=RuntimeError("model unavailable")))

    with pytest.raises(SummarizationFailure):
        await orchestrator.analyze("INC-1")

    [analysis] = analyses.rows.values()
    assert analysis.status == "failed"
    assert analysis.errors["message"] == "model unavailable"
    assert analysis.errors["stage"] == "summarizing"
    assert await cache.get_cached_analysis("INC-1") is None
    assert "lock:incident:INC-1" not in redis.store


async def test_empty_summary_is_a_failure(make_orchestrator, analyses):
    orchestrator = make_orchestrator(summarizer=StubSummarizer(text="   "))

    with pytest.raises(SummarizationFailure):
        await orchestrator.analyze("INC-1")
    assert [a.status for a in analyses.rows.values()] == ["failed"]


async def test_held_lock_raises_lock_unavailable(make_orchestrator, cache, summarizer, analyses):
    orchestrator = make_orchestrator()
    await cache.acquire_lock("incident:INC-1")

    with pytest.raises(LockUnavailable):
        await orchestrator.analyze("INC-1")
    assert summarizer.contexts == []
    assert analyses.rows == {}


async def test_concurrent_analyses_run_once(make_orchestrator, analyses):
    orchestrator = make_orchestrator(summarizer=StubSummarizer(delay=0.05))

    results = await asyncio.gather(
        orchestrator.analyze("INC-1"), orchestrator.analyze("INC-1"), return_exceptions=True
    )

    assert sum(isinstance(r, LockUnavailable) for r in results) == 1
    assert len(analyses.rows) == 1


async def test_analyze_with_retry_gives_up(make_orchestrator, settings):
    summarizer = StubSummarizer(error=RuntimeError("boom"))
    orchestrator = make_orchestrator(summarizer=summarizer)

    with pytest.raises(MaxRetriesExceeded) as exc:
        await orchestrator.analyze_with_retry("INC-1")

    assert exc.value.attempts == settings.max_retries
    assert len(summarizer.contexts) == settings.max_retries


async def test_similar_incidents_come_from_history(make_orchestrator, incidents, summarizer):
    incidents.add(Incident(id="INC-0", title="Checkout latency spike last week"))
    orchestrator = make_orchestrator(sources={"jira": StubSource(details=DETAILS)})

    result = await orchestrator.analyze("INC-1")

    assert [s.id for s in result.similar_incidents] == ["INC-0"]
    assert summarizer.contexts[0].similar_incidents[0].id == "INC-0"


async def test_notifiers_receive_summary_and_cross_links(make_orchestrator):
    tracker = RecordingNotifier("jira", cross_links_similar=True)
    chat = RecordingNotifier("slack", max_content_length=4)
    broken = RecordingNotifier("teams", error=RuntimeError("403"))

    class Lookup:
        async def find_similar(self, keywords):
            return [SimilarIncident(id="INC-0", summary="older"), SimilarIncident(id="INC-1")]

    orchestrator = make_orchestrator(
        sources={"jira": StubSource(details=DETAILS)},
        issue_lookup=Lookup(),
        notifiers=[tracker, chat, broken],
    )

    result = await orchestrator.analyze("INC-1")

    assert result.summary == "root cause X"
    assert tracker.sent[0] == ("INC-1", "root cause X")
    assert tracker.sent[1][0] == "INC-0"
    assert "INC-1" in tracker.sent[1][1]
    assert chat.sent == [("INC-1", "root")]


async def test_pattern_detection_is_queued_after_analysis(make_orchestrator, settings, queues, celery_app):
    settings.enable_pattern_detection = True
    orchestrator = make_orchestrator(queues=queues)

    await orchestrator.analyze("INC-1")

    [sent] = celery_app.sent
    assert sent["queue"] == PATTERNS_QUEUE
    assert sent["kwargs"]["payload"]["incident_id"] == "INC-1"
    assert (await queues.stats(PATTERNS_QUEUE)).waiting == 1


async def test_request_analysis_uses_severity_priority(make_orchestrator, incidents, queues):
    incidents.add(Incident(id="INC-7", severity="P1"))
    orchestrator = make_orchestrator(queues=queues)

    job = await orchestrator.request_analysis("INC-7")
    explicit = await orchestrator.request_analysis("INC-8", severity="P3")

    assert job.priority == 10
    assert explicit.priority == 2
    assert job.payload.incident_id == "INC-7"


async def test_queued_analysis_runs_through_handler(make_orchestrator, queues, celery_app, analyses):
    orchestrator = make_orchestrator(queues=queues)
    queues.register(ANALYSIS_QUEUE, orchestrator.handle_analysis_job)

    await orchestrator.request_analysis("INC-1", severity="P2")
    job, outcome = await deliver(queues, celery_app.sent[0])

    assert outcome.result["summary"] == "root cause X"
    assert job.progress_value == "notifying"
    assert [a.status for a in analyses.rows.values()] == ["completed"]


async def test_terminal_failure_enqueues_notifications(make_orchestrator, queues, celery_app):
    chat = RecordingNotifier("slack")
    orchestrator = make_orchestrator(queues=queues, summarizer=StubSummarizer(error=RuntimeError("down")))
    dispatcher = NotificationDispatcher([chat], queues)
    queues.register(ANALYSIS_QUEUE, orchestrator.handle_analysis_job)
    queues.register(NOTIFICATIONS_QUEUE, dispatcher.handle_notification_job)
    queues.on("failed", dispatcher.on_analysis_failed, queue_name=ANALYSIS_QUEUE)

    await orchestrator.request_analysis("INC-1")
    analysis_task = celery_app.sent[0]
    for attempt in range(3):
        job, outcome = await deliver(queues, analysis_task, retries=attempt)

    assert job.state == "failed"
    assert job.attempts_made == 3
    [notification] = [s for s in celery_app.sent if s["queue"] == NOTIFICATIONS_QUEUE]
    await deliver(queues, notification)
    assert chat.sent[0][0] == "INC-1"
    assert "INC-1" in chat.sent[0][1]


async def test_similar_lookup_failure_is_not_fatal(make_orchestrator):
    lookup = AsyncMock()
    lookup.find_similar.side_effect = RuntimeError("search index offline")
    orchestrator = make_orchestrator(sources={"jira": StubSource(details=DETAILS)}, issue_lookup=lookup)

    result = await orchestrator.analyze("INC-1")

    assert result.similar_incidents == []
    lookup.find_similar.assert_awaited_once_with("Checkout latency spike")


def test_lock_ttl_must_cover_worst_case_hold():
    with pytest.raises(ConfigurationError):
        Settings(lock_ttl_seconds=60)
    with pytest.raises(ConfigurationError):
        Settings(lock_ttl_seconds=1, collaborator_timeout_seconds=0.1, summarization_timeout_seconds=1.5)

    settings = Settings()
    assert settings.lock_deadline_seconds() < settings.lock_ttl_seconds
    assert settings.lock_hold_seconds() <= settings.lock_deadline_seconds()


class SlowIncidents(InMemoryIncidents):
    async def upsert(self, incident):
        await asyncio.sleep(5)
        return await super().upsert(incident)


async def test_locked_section_is_abandoned_before_lock_expires(cache, analyses, summarizer, redis):
    settings = Settings(
        retry_delay_ms=0,
        enable_pattern_detection=False,
        lock_ttl_seconds=1,
        lock_margin_seconds=0.8,
        collaborator_timeout_seconds=0.01,
        summarization_timeout_seconds=0.1,
    )
    orchestrator = IncidentOrchestrator(
        cache=cache, incidents=SlowIncidents(), analyses=analyses, summarizer=summarizer, settings=settings,
    )

    with pytest.raises(AnalysisTimeout):
        await orchestrator.analyze("INC-1")

    assert summarizer.contexts == []
    assert "lock:incident:INC-1" not in redis.store


async def test_cancelled_analysis_is_marked_failed(make_orchestrator, analyses, redis):
    orchestrator = make_orchestrator(summarizer=StubSummarizer(delay=0.5))

    task = asyncio.create_task(orchestrator.analyze("INC-1"))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [analysis] = analyses.rows.values()
    assert analysis.status == "failed"
    assert analysis.errors["stage"] == "cancelled"
    assert "lock:incident:INC-1" not in redis.store
