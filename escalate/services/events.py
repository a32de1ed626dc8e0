# escalate/services/events.py
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional
from redis.asyncio import Redis
from redis.exceptions import RedisError

from escalate.models import IncidentEvent

logger = logging.getLogger(__name__)

ANALYSIS_COMPLETE = "analysis-complete"
ANALYSIS_UPDATED = "analysis-updated"
INCIDENT_UPDATED = "incident-updated"
PATTERN_UPDATED = "pattern-updated"

DEFAULT_CHANNEL = "incident-events"


class EventBus:
    """
    Fan-out of incident events to in-process subscribers and, when a Redis
    client is given, to a pub/sub channel read by other processes.
    Subscriber errors are logged and never reach the publisher.
    """

    def __init__(self, redis: Optional[Redis] = None, channel: str = DEFAULT_CHANNEL):
        self.redis = redis
        self.channel = channel
        self._subscribers: List[Callable[[IncidentEvent], Any]] = []

    def subscribe(self, callback: Callable[[IncidentEvent], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, incident_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> IncidentEvent:
        event = IncidentEvent(incident_id=incident_id, type=event_type, payload=payload or {})
        for callback in list(self._subscribers):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Event subscriber failed for %s on %s", event_type, incident_id)
        if self.redis is not None:
            try:
                await self.redis.publish(self.channel, event.model_dump_json())
            except RedisError as e:
                logger.error("Failed to publish %s for %s: %s", event_type, incident_id, e)
        return event
