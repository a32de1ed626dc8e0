# escalate/clients/slack_webhook.py
from typing import Optional
import httpx

from escalate.collaborators import NotificationCollaborator


class SlackWebhookNotifier(NotificationCollaborator):
    """Posts the incident summary to a Slack incoming webhook."""

    name = "slack"
    max_content_length = 500

    def __init__(
        self,
        webhook_url: str,
        incident_url_template: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.incident_url_template = incident_url_template
        self.timeout = timeout
        self.transport = transport

    def _link(self, incident_id: str) -> Optional[str]:
        if not self.incident_url_template or not incident_id:
            return None
        return self.incident_url_template.format(incident_id=incident_id)

    async def publish(self, target: str, content: str) -> None:
        text = f"*Incident {target}*\n{content}" if target else content
        link = self._link(target)
        if link:
            text += f"\n<{link}|Open incident>"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.webhook_url, json={"text": text})
            resp.raise_for_status()
