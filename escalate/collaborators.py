"""
Narrow interfaces the orchestrator uses to reach external systems.

Concrete adapters live in ``escalate.clients`` and ``escalate.agents``; tests
provide their own recording implementations.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from escalate.models import IncidentContext, SimilarIncident, TimeRange


class SummarizationCollaborator(ABC):
    """Produces the analysis text. A failure here fails the pipeline attempt."""

    model: str = "unknown"

    @abstractmethod
    async def summarize(self, context: IncidentContext) -> str:
        ...


class DataCollaborator(ABC):
    """One external telemetry or communication source gathered for an analysis."""

    name: str = "data"

    @abstractmethod
    async def fetch(self, time_range: TimeRange, incident_id: str) -> Any:
        ...


class IncidentSource(ABC):
    """Where an incident id comes from (ticket system); yields its details."""

    name: str = "source"

    @abstractmethod
    async def fetch_incident(self, incident_id: str) -> Dict[str, Any]:
        """
        Returns a dict with any of: title, description, severity, status,
        created (datetime or ISO string), affected_services (list of str).
        """
        ...


class NotificationCollaborator(ABC):
    name: str = "notifier"
    # Issue trackers also leave a note on each similar incident.
    cross_links_similar: bool = False
    # Chat notifiers get a truncated summary.
    max_content_length: Optional[int] = None

    def target_for(self, incident_id: str) -> str:
        return incident_id

    @abstractmethod
    async def publish(self, target: str, content: str) -> None:
        ...


class IssueLookupCollaborator(ABC):
    @abstractmethod
    async def find_similar(self, keywords: str) -> List[SimilarIncident]:
        ...
