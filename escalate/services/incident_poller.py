# escalate/services/incident_poller.py
import asyncio
import logging
from collections import OrderedDict
from typing import List, Optional

from escalate.clients.servicenow_client import ServiceNowClient
from escalate.models import normalize_severity
from escalate.orchestrator import IncidentOrchestrator

logger = logging.getLogger(__name__)


class IncidentPoller:
    """Background loop that pulls new ServiceNow incidents and requests their analysis."""

    def __init__(
        self,
        snow: ServiceNowClient,
        orchestrator: IncidentOrchestrator,
        poll_interval: int = 30,
        incidents_per_poll: int = 5,
        query: str = "state=1",
        seen_limit: int = 1000,
    ):
        self.snow = snow
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.incidents_per_poll = incidents_per_poll
        self.query = query
        self.seen_limit = seen_limit
        self.seen: "OrderedDict[str, None]" = OrderedDict()
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running:
            logger.info("Incident poller already running")
            return
        self.running = True
        logger.info(
            "Starting incident poller (poll interval: %ss, incidents per poll: %s)",
            self.poll_interval, self.incidents_per_poll,
        )
        self.task = asyncio.create_task(self._poll_loop())

    async def stop(self):
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("Incident poller stopped")

    async def _poll_loop(self):
        while self.running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Error in incident poller")
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> List[str]:
        """Enqueue analysis for every unseen incident. Returns the incident numbers queued."""
        incidents = await self.snow.query_incidents(self.query, limit=self.incidents_per_poll)
        queued = []
        for incident in incidents:
            if not isinstance(incident, dict):
                continue
            number = incident.get("number")
            if not number:
                continue
            if number in self.seen:
                self.seen.move_to_end(number)
                continue
            job = await self.orchestrator.request_analysis(
                number,
                source=self.snow.name,
                severity=normalize_severity(incident.get("priority") or incident.get("severity")),
            )
            self._remember(number)
            queued.append(number)
            logger.info("Queued incident %s from ServiceNow as job %s", number, job.id)
        return queued

    def _remember(self, number: str) -> None:
        # evict the least recently seen number
        self.seen[number] = None
        while len(self.seen) > self.seen_limit:
            self.seen.popitem(last=False)
