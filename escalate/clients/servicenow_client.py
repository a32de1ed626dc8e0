# escalate/clients/servicenow_client.py
import logging
from typing import Any, Dict, List, Optional
import httpx
from dateutil import parser as dateparser

from escalate.collaborators import IncidentSource, IssueLookupCollaborator, NotificationCollaborator
from escalate.models import SimilarIncident

logger = logging.getLogger(__name__)


def _parse_created(value: Optional[str]):
    if not value:
        return None
    try:
        return dateparser.parse(value)
    except (ValueError, OverflowError):
        return None


class ServiceNowClient(IncidentSource, IssueLookupCollaborator, NotificationCollaborator):
    """
    Async client for ServiceNow Incident API.
    - Auth: Token or Basic (depending on your setup)
    - Base URL example: https://instance.service-now.com

    Serves as the `servicenow` incident source, the similar-incident lookup
    and a notifier that writes the analysis as work notes.
    """

    name = "servicenow"
    cross_links_similar = True

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url.endswith("/"):
            base_url = base_url + "/"
        self.base_url = base_url
        self.username = username
        self.password = password
        self.token = token
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        auth = None
        if self.username and self.password and not self.token:
            auth = (self.username, self.password)

        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            verify=self.verify_ssl,
            auth=auth,
            transport=self.transport,
        )

    # ----------------------------
    # Incident operations
    # ----------------------------
    async def get_incident(self, number: str) -> Optional[Dict[str, Any]]:
        async with self._client() as client:
            resp = await client.get("api/now/table/incident", params={
                "number": number,
                "sysparm_display_value": "true",
                "sysparm_exclude_reference_link": "true",
            })
            resp.raise_for_status()
            results = resp.json().get("result", [])
            return results[0] if results else None

    async def query_incidents(self, query: str = "", limit: int = 100) -> List[Dict[str, Any]]:
        """
        query: ServiceNow encoded query (e.g., "state=1^ORstate=2").
        Defaults to New or In Progress.
        """
        params = {
            "sysparm_limit": limit,
            "sysparm_query": query if query else "stateIN1,2",
            "sysparm_exclude_reference_link": "true",
        }
        async with self._client() as client:
            resp = await client.get("api/now/table/incident", params=params)
            resp.raise_for_status()
            return resp.json().get("result", [])

    async def add_work_notes(self, number: str, notes: str) -> bool:
        """Append work notes to an incident without closing it."""
        incident = await self.get_incident(number)
        sys_id = incident.get("sys_id") if incident else None
        if not sys_id:
            raise LookupError(f"ServiceNow incident {number} not found")

        async with self._client() as client:
            resp = await client.patch(f"api/now/table/incident/{sys_id}", json={"work_notes": notes})
            resp.raise_for_status()
            return resp.status_code in (200, 204)

    # ----------------------------
    # Collaborator interfaces
    # ----------------------------
    async def fetch_incident(self, incident_id: str) -> Dict[str, Any]:
        incident = await self.get_incident(incident_id)
        if not incident:
            raise LookupError(f"ServiceNow incident {incident_id} not found")
        services = [
            incident.get("business_service"),
            incident.get("cmdb_ci"),
        ]
        return {
            "title": incident.get("short_description"),
            "description": incident.get("description"),
            "severity": incident.get("priority") or incident.get("severity"),
            "status": incident.get("state"),
            "created": incident.get("opened_at") or incident.get("sys_created_on"),
            "affected_services": [s for s in services if isinstance(s, str) and s],
        }

    async def find_similar(self, keywords: str) -> List[SimilarIncident]:
        rows = await self.query_incidents(
            query=f"short_descriptionLIKE{keywords}^ORDERBYDESCsys_created_on", limit=10
        )
        return [
            SimilarIncident(
                id=row.get("number", ""),
                summary=row.get("short_description", ""),
                created=_parse_created(row.get("sys_created_on")),
            )
            for row in rows
            if row.get("number")
        ]

    async def publish(self, target: str, content: str) -> None:
        await self.add_work_notes(target, content)

    # ----------------------------
    # Health / utility
    # ----------------------------
    async def ping(self) -> bool:
        async with self._client() as client:
            resp = await client.get("api/now/")
            return resp.status_code == 200
