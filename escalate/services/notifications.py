# escalate/services/notifications.py
import logging
from typing import Dict, Optional, Sequence

from escalate.collaborators import NotificationCollaborator
from escalate.services.queue import ANALYSIS_QUEUE, NOTIFICATIONS_QUEUE, Job, JobQueueManager

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Handles `notifications` queue jobs by routing them to a notifier by channel name."""

    def __init__(self, notifiers: Sequence[NotificationCollaborator], queues: Optional[JobQueueManager] = None):
        self.notifiers: Dict[str, NotificationCollaborator] = {n.name: n for n in notifiers}
        self.queues = queues

    async def handle_notification_job(self, job: Job) -> bool:
        payload = job.payload
        logger.info("Processing notification: %s", payload.channel)
        notifier = self.notifiers.get(payload.channel)
        if notifier is None:
            logger.warning("Unknown notification channel: %s", payload.channel)
            return False
        target = payload.target or notifier.target_for(payload.incident_id or "")
        await notifier.publish(target, payload.content)
        return True

    async def on_analysis_failed(self, job: Job, error: BaseException) -> None:
        """Queue listener: tell every channel when an analysis job gives up."""
        if self.queues is None or job.queue != ANALYSIS_QUEUE:
            return
        incident_id = job.payload.incident_id
        content = f"Automated analysis for {incident_id} failed after {job.attempts_made} attempts: {error}"
        for channel in self.notifiers:
            await self.queues.enqueue(
                NOTIFICATIONS_QUEUE,
                {"channel": channel, "content": content, "incident_id": incident_id},
            )
