"""
Incident analysis pipeline.

Requested -> Deduped(exit) | LockFailed(exit) -> Gathering -> Summarizing ->
Persisting -> CacheWriteback -> PatternTrigger -> NotifyExternal -> Completed.
Any fatal step marks the Analysis row failed before the error propagates.
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from dateutil import parser as dateparser

from escalate.collaborators import (
    DataCollaborator,
    IncidentSource,
    IssueLookupCollaborator,
    NotificationCollaborator,
    SummarizationCollaborator,
)
from escalate.config import Settings
from escalate.data.cache import CacheService
from escalate.data.repositories import AnalysisRepository, IncidentRepository
from escalate.errors import (
    AnalysisTimeout,
    CollaboratorFailure,
    ConfigurationError,
    MaxRetriesExceeded,
    PersistenceFailure,
    SummarizationFailure,
)
from escalate.models import (
    Analysis,
    AnalysisResult,
    Incident,
    IncidentContext,
    SimilarIncident,
    TimeRange,
    normalize_severity,
    normalize_status,
    utcnow,
)
from escalate.services.events import (
    ANALYSIS_COMPLETE,
    ANALYSIS_UPDATED,
    INCIDENT_UPDATED,
    EventBus,
)
from escalate.services.patterns import PatternService
from escalate.services.queue import (
    ANALYSIS_QUEUE,
    PATTERNS_QUEUE,
    Job,
    JobQueueManager,
    backoff_delay_ms,
    priority_for,
)

logger = logging.getLogger(__name__)


@dataclass
class BranchResult:
    """Outcome of one fan-out branch; failures are carried, not raised."""
    name: str
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = dateparser.isoparse(str(value))
    except (ValueError, OverflowError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class IncidentOrchestrator:
    def __init__(
        self,
        cache: CacheService,
        incidents: IncidentRepository,
        analyses: AnalysisRepository,
        summarizer: SummarizationCollaborator,
        settings: Settings,
        sources: Optional[Dict[str, IncidentSource]] = None,
        collaborators: Sequence[DataCollaborator] = (),
        issue_lookup: Optional[IssueLookupCollaborator] = None,
        notifiers: Sequence[NotificationCollaborator] = (),
        events: Optional[EventBus] = None,
        queues: Optional[JobQueueManager] = None,
        patterns: Optional[PatternService] = None,
    ):
        self.cache = cache
        self.incidents = incidents
        self.analyses = analyses
        self.summarizer = summarizer
        self.settings = settings
        self.sources = sources or {}
        self.collaborators = list(collaborators)
        self.issue_lookup = issue_lookup
        self.notifiers = list(notifiers)
        self.events = events or EventBus()
        self.queues = queues
        self.patterns = patterns
        self._background: set = set()

    # ----------------------------
    # Trigger interface
    # ----------------------------
    async def request_analysis(
        self,
        incident_id: str,
        source: str = "jira",
        force: bool = False,
        severity: Optional[str] = None,
        priority: Optional[int] = None,
        delay_ms: int = 0,
    ) -> Job:
        if self.queues is None:
            raise ConfigurationError("request_analysis needs a JobQueueManager")
        if priority is None and severity is None:
            try:
                known = await self.incidents.get(incident_id)
                severity = known.severity if known else None
            except PersistenceFailure as e:
                logger.warning("Could not look up severity for %s: %s", incident_id, e)
        job = await self.queues.enqueue(
            ANALYSIS_QUEUE,
            {"incident_id": incident_id, "source": source, "force": force},
            priority=priority if priority is not None else priority_for(severity),
            delay_ms=delay_ms,
        )
        logger.info("Added analysis job %s for incident %s", job.id, incident_id)
        return job

    async def handle_analysis_job(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        logger.info("Processing analysis job %s for incident %s", job.id, payload.incident_id)
        result = await self.analyze(payload.incident_id, payload.source, payload.force, progress=job.progress)
        return result.model_dump(mode="json")

    # ----------------------------
    # Pipeline
    # ----------------------------
    async def analyze(
        self,
        incident_id: str,
        source: str = "jira",
        force_refresh: bool = False,
        progress: Optional[Callable[[Any], None]] = None,
    ) -> AnalysisResult:
        report = progress or (lambda stage: None)
        logger.info("Starting analysis for incident %s", incident_id)

        if not force_refresh:
            cached = await self.cache.get_cached_analysis(incident_id)
            if cached:
                report("deduped")
                return AnalysisResult.model_validate({**cached, "cached": True})

        # The locked section must finish before the lock can expire under it.
        deadline = self.settings.lock_deadline_seconds()
        async with self.cache.lock(f"incident:{incident_id}", ttl=self.settings.lock_ttl_seconds):
            try:
                context, result = await asyncio.wait_for(self._run_locked(incident_id, source, report), deadline)
            except asyncio.TimeoutError as exc:
                logger.error("Analysis for incident %s ran past its %ss deadline", incident_id, deadline)
                raise AnalysisTimeout(f"Analysis for {incident_id} exceeded {deadline:.1f}s") from exc

        await self._trigger_patterns(incident_id)

        report("notifying")
        await self.notify(incident_id, result.summary, context)

        await self.events.publish(incident_id, ANALYSIS_COMPLETE, {
            "analysis_id": result.analysis_id,
            "summary": result.summary,
        })
        logger.info(
            "Completed analysis %s for incident %s in %dms", result.analysis_id, incident_id, result.duration_ms
        )
        return result

    async def _run_locked(self, incident_id: str, source: str, report: Callable[[Any], None]):
        report("gathering")
        context = await self.gather(incident_id, source)
        context.similar_incidents = await self.find_similar(context)

        report("persisting")
        analysis = await self._open_analysis(context)

        try:
            report("summarizing")
            summary, duration_ms = await self._summarize(context, analysis)

            report("persisting")
            analysis = await self._complete(analysis, summary, duration_ms)
        except asyncio.CancelledError as exc:
            logger.warning("Analysis %s for incident %s was cancelled", analysis.id, incident_id)
            await self._fail(analysis, exc, "cancelled", None)
            raise

        result = AnalysisResult(
            incident_id=incident_id,
            analysis_id=analysis.id,
            summary=summary,
            duration_ms=duration_ms,
            data_sources=context.data_sources,
            similar_incidents=context.similar_incidents,
        )
        report("caching")
        await self.cache.set_cached_analysis(incident_id, result.model_dump(mode="json"))
        return context, result

    async def analyze_with_retry(
        self,
        incident_id: str,
        source: str = "jira",
        force_refresh: bool = False,
        max_attempts: Optional[int] = None,
    ) -> AnalysisResult:
        """Pipeline-level retries for synchronous callers. Queued jobs rely on the queue's policy instead."""
        attempts = max_attempts or self.settings.max_retries
        for attempt in range(1, attempts + 1):
            try:
                return await self.analyze(incident_id, source, force_refresh)
            except Exception as exc:
                if attempt >= attempts:
                    logger.error("Max retries reached for incident %s", incident_id)
                    raise MaxRetriesExceeded(attempt, exc) from exc
                delay = backoff_delay_ms(attempt, self.settings.retry_delay_ms)
                logger.warning("Retry %d/%d for incident %s after %dms: %s", attempt, attempts, incident_id, delay, exc)
                await asyncio.sleep(delay / 1000)
        raise ConfigurationError("max_attempts must be at least 1")

    # ----------------------------
    # Gathering
    # ----------------------------
    async def gather(self, incident_id: str, source: str) -> IncidentContext:
        context = IncidentContext(id=incident_id, source=source)

        incident_source = self.sources.get(source)
        if incident_source is not None:
            branch = await self._call(
                source, incident_source.fetch_incident(incident_id)
            )
            context.data_sources[source] = branch.ok
            if branch.ok:
                self._apply_details(context, branch.value or {})
            else:
                context.errors[source] = str(branch.error)

        end = utcnow()
        start = context.created or end - timedelta(minutes=self.settings.analysis_window_minutes)
        context.time_range = TimeRange(start=start, end=end)

        branches = await asyncio.gather(*(
            self._fetch_branch(collaborator, context.time_range, incident_id)
            for collaborator in self.collaborators
        ))
        for branch in branches:
            context.data_sources[branch.name] = branch.ok
            if branch.ok:
                context.collaborator_data[branch.name] = branch.value
            else:
                context.errors[branch.name] = str(branch.error)
        return context

    async def _call(self, name: str, call) -> BranchResult:
        try:
            value = await asyncio.wait_for(call, self.settings.collaborator_timeout_seconds)
        except Exception as exc:
            logger.error("%s gathering failed: %s", name, exc)
            return BranchResult(name=name, ok=False, error=CollaboratorFailure(name, exc))
        return BranchResult(name=name, ok=True, value=value)

    async def _fetch_branch(self, collaborator: DataCollaborator, time_range: TimeRange, incident_id: str) -> BranchResult:
        name = collaborator.name
        cached = await self.cache.get_cached_metrics(name, time_range.start, time_range.end, incident_id=incident_id)
        if cached is not None:
            return BranchResult(name=name, ok=True, value=cached)
        branch = await self._call(name, collaborator.fetch(time_range, incident_id))
        if branch.ok:
            await self.cache.set_cached_metrics(
                name, time_range.start, time_range.end, branch.value,
                ttl=self.settings.metrics_cache_ttl_seconds, incident_id=incident_id,
            )
        return branch

    def _apply_details(self, context: IncidentContext, details: Dict[str, Any]) -> None:
        context.title = details.get("title") or context.title
        context.description = details.get("description") or context.description
        context.severity = normalize_severity(details.get("severity"))
        context.status = normalize_status(details.get("status"))
        context.created = _parse_datetime(details.get("created"))
        services = details.get("affected_services") or []
        context.affected_services = [s for s in services if s]

    async def find_similar(self, context: IncidentContext) -> List[SimilarIncident]:
        if not context.title:
            return []
        keywords = " ".join(context.title.split()[:3])
        limit = self.settings.max_similar_incidents
        timeout = self.settings.collaborator_timeout_seconds
        try:
            if self.issue_lookup is not None:
                found = await asyncio.wait_for(self.issue_lookup.find_similar(keywords), timeout)
            else:
                rows = await asyncio.wait_for(
                    self.incidents.search_by_title(keywords, limit, exclude_id=context.id), timeout
                )
                found = [SimilarIncident(id=i.id, summary=i.title, created=i.created_at) for i in rows]
        except Exception as e:
            logger.error("Failed to find similar incidents for %s: %s", context.id, e)
            return []
        return [s for s in found if s.id != context.id][:limit]

    # ----------------------------
    # Persistence
    # ----------------------------
    async def _open_analysis(self, context: IncidentContext) -> Analysis:
        incident = await self.incidents.upsert(Incident(
            id=context.id,
            title=context.title or "Unknown Incident",
            description=context.description,
            severity=context.severity,
            status=context.status,
            source=context.source,
            affected_services=context.affected_services,
            metrics=context.collaborator_data,
            similar_incidents=[s.id for s in context.similar_incidents],
            started_at=context.created,
        ))
        await self.events.publish(incident.id, INCIDENT_UPDATED, {
            "analysis_count": incident.analysis_count,
            "status": incident.status,
        })

        analysis = await self.analyses.create(
            incident.id,
            status="processing",
            data_sources=context.data_sources,
            model=getattr(self.summarizer, "model", None),
            triggered_by=context.source,
        )
        await self.events.publish(incident.id, ANALYSIS_UPDATED, {"analysis_id": analysis.id, "status": analysis.status})
        return analysis

    async def _summarize(self, context: IncidentContext, analysis: Analysis):
        started = time.monotonic()
        try:
            summary = await asyncio.wait_for(
                self.summarizer.summarize(context), self.settings.summarization_timeout_seconds
            )
            if not summary or not summary.strip():
                raise ValueError("summarizer returned an empty summary")
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("Failed to analyze incident %s: %s", context.id, exc)
            await self._fail(analysis, exc, "summarizing", duration_ms)
            raise SummarizationFailure(str(exc) or type(exc).__name__) from exc
        return summary, int((time.monotonic() - started) * 1000)

    async def _complete(self, analysis: Analysis, summary: str, duration_ms: int) -> Analysis:
        try:
            completed = await self.analyses.mark_completed(analysis.id, summary, duration_ms)
        except PersistenceFailure as exc:
            await self._fail(analysis, exc, "persisting", duration_ms)
            raise
        await self.events.publish(completed.incident_id, ANALYSIS_UPDATED, {
            "analysis_id": completed.id,
            "status": completed.status,
        })
        return completed

    async def _fail(self, analysis: Analysis, exc: BaseException, stage: str, duration_ms: Optional[int]) -> None:
        errors = {
            "message": str(exc) or type(exc).__name__,
            "type": type(exc).__name__,
            "stage": stage,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }
        try:
            await self.analyses.mark_failed(analysis.id, errors, duration_ms)
        except Exception:
            logger.exception("Could not record failure for analysis %s", analysis.id)
            return
        await self.events.publish(analysis.incident_id, ANALYSIS_UPDATED, {
            "analysis_id": analysis.id,
            "status": "failed",
            "errors": {"message": errors["message"], "stage": stage},
        })

    # ----------------------------
    # After the lock
    # ----------------------------
    async def _trigger_patterns(self, incident_id: str) -> None:
        if not self.settings.enable_pattern_detection:
            return
        if self.queues is not None:
            try:
                await self.queues.enqueue(
                    PATTERNS_QUEUE, {"incident_id": incident_id}, delay_ms=self.settings.pattern_delay_ms
                )
            except Exception as e:
                logger.error("Failed to schedule pattern detection for %s: %s", incident_id, e)
        elif self.patterns is not None:
            task = asyncio.create_task(self._detect_patterns(incident_id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _detect_patterns(self, incident_id: str) -> None:
        try:
            await self.patterns.detect_for(incident_id)
        except Exception:
            logger.exception("Pattern detection failed for %s", incident_id)

    async def notify(self, incident_id: str, summary: str, context: IncidentContext) -> List[BranchResult]:
        calls = []
        for notifier in self.notifiers:
            content = summary
            if notifier.max_content_length:
                content = summary[:notifier.max_content_length]
            calls.append(self._publish(notifier, notifier.target_for(incident_id), content))
            if notifier.cross_links_similar:
                for similar in context.similar_incidents:
                    note = f"Possibly related to {incident_id}: {context.title or 'see linked incident'}"
                    calls.append(self._publish(notifier, similar.id, note))
        return list(await asyncio.gather(*calls))

    async def _publish(self, notifier: NotificationCollaborator, target: str, content: str) -> BranchResult:
        try:
            await asyncio.wait_for(notifier.publish(target, content), self.settings.collaborator_timeout_seconds)
        except Exception as exc:
            logger.error("Failed to post to %s (%s): %s", notifier.name, target, exc)
            return BranchResult(name=notifier.name, ok=False, error=CollaboratorFailure(notifier.name, exc))
        return BranchResult(name=notifier.name, ok=True)
