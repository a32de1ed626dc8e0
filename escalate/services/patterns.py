# escalate/services/patterns.py
import logging
from datetime import timedelta, timezone
from typing import List, Optional, Sequence

from escalate.data.repositories import IncidentRepository, PatternRepository
from escalate.models import (
    Incident,
    Pattern,
    PatternCandidate,
    ServiceSignature,
    TimeSignature,
    signature_key,
    utcnow,
)
from escalate.services.events import EventBus, PATTERN_UPDATED

logger = logging.getLogger(__name__)

CONFIDENCE_STEP = 0.1
MAX_CONFIDENCE = 1.0


def _hour(incident: Incident) -> int:
    created = incident.created_at
    if created.tzinfo is not None:
        created = created.astimezone(timezone.utc)
    return created.hour


class PatternDetector:
    """Clusters a triggering incident against a recent window of incidents."""

    def __init__(self, min_occurrences: int = 3, lookback_days: int = 7):
        self.min_occurrences = min_occurrences
        self.lookback = timedelta(days=lookback_days)

    def detect(self, incident: Incident, recent: Sequence[Incident]) -> List[PatternCandidate]:
        candidates: List[PatternCandidate] = []
        total = len(recent)
        if total == 0:
            return candidates

        hour = _hour(incident)
        same_hour = [i for i in recent if _hour(i) == hour]
        if len(same_hour) >= self.min_occurrences:
            candidates.append(PatternCandidate(
                type="time",
                signature=TimeSignature(hour=hour),
                name=f"Incidents at {hour}:00",
                description=f"Multiple incidents occur around {hour}:00",
                incidents=[i.id for i in same_hour],
                occurrences=len(same_hour),
                confidence=len(same_hour) / total,
            ))

        if incident.affected_services:
            service = incident.affected_services[0]
            same_service = [i for i in recent if service in i.affected_services]
            if len(same_service) >= self.min_occurrences:
                candidates.append(PatternCandidate(
                    type="service",
                    signature=ServiceSignature(service=service),
                    name=f"{service} failures",
                    description=f"Recurring issues with {service}",
                    incidents=[i.id for i in same_service],
                    occurrences=len(same_service),
                    confidence=len(same_service) / total,
                ))

        return candidates


def merge_pattern(existing: Pattern, incident_id: str) -> Pattern:
    """Upsert rule for a pattern seen again; confidence creeps up, never recomputed."""
    return existing.model_copy(update={
        "occurrences": existing.occurrences + 1,
        "incidents": sorted(set(existing.incidents) | {incident_id}),
        "last_occurred": utcnow(),
        "confidence": min(MAX_CONFIDENCE, round(existing.confidence + CONFIDENCE_STEP, 2)),
    })


class PatternService:
    def __init__(
        self,
        detector: PatternDetector,
        incidents: IncidentRepository,
        patterns: PatternRepository,
        events: Optional[EventBus] = None,
    ):
        self.detector = detector
        self.incidents = incidents
        self.patterns = patterns
        self.events = events

    async def detect_for(self, incident_id: str) -> List[Pattern]:
        incident = await self.incidents.get(incident_id)
        if not incident:
            logger.warning("Pattern detection skipped, incident %s not found", incident_id)
            return []

        recent = await self.incidents.created_since(utcnow() - self.detector.lookback)
        stored: List[Pattern] = []
        for candidate in self.detector.detect(incident, recent):
            stored.append(await self.upsert(candidate, incident_id))

        if stored:
            logger.info("Detected %d patterns for incident %s", len(stored), incident_id)
        return stored

    async def upsert(self, candidate: PatternCandidate, incident_id: str) -> Pattern:
        existing = await self.patterns.find(candidate.type, signature_key(candidate.signature))
        if existing is None:
            pattern = await self.patterns.create(candidate, last_occurred=utcnow())
        else:
            pattern = await self.patterns.update(merge_pattern(existing, incident_id))
        if self.events:
            await self.events.publish(incident_id, PATTERN_UPDATED, {
                "pattern_id": pattern.id,
                "type": pattern.type,
                "signature": signature_key(pattern.signature),
                "occurrences": pattern.occurrences,
                "confidence": pattern.confidence,
            })
        return pattern

    async def handle_pattern_job(self, job) -> List[str]:
        job.progress("detecting")
        patterns = await self.detect_for(job.payload.incident_id)
        return [p.id for p in patterns]
