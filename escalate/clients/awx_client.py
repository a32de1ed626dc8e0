# escalate/clients/awx_client.py
from typing import Any, Dict, List, Optional
import httpx

from escalate.collaborators import DataCollaborator
from escalate.models import TimeRange

FAILED_STATUSES = {"failed", "error", "canceled"}
RUNNING_STATUSES = {"pending", "waiting", "running"}


class AWXClient(DataCollaborator):
    """
    Async client for AWX/Tower API.
    - Auth: Token-based (Bearer)
    - Base URL example: http://awx.local

    As a data collaborator it reports automation jobs that failed or were
    still running around the incident window.
    """

    name = "awx"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url.endswith("/"):
            base_url = base_url + "/"
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            verify=self.verify_ssl,
            transport=self.transport,
        )

    # ----------------------------
    # Jobs
    # ----------------------------
    async def jobs_between(self, time_range: TimeRange, page_size: int = 200) -> List[Dict[str, Any]]:
        params = {
            "created__gte": time_range.start.isoformat(),
            "created__lte": time_range.end.isoformat(),
            "order_by": "-created",
            "page_size": page_size,
        }
        async with self._client() as client:
            resp = await client.get("api/v2/jobs/", params=params)
            resp.raise_for_status()
            return resp.json().get("results", [])

    async def fetch(self, time_range: TimeRange, incident_id: str) -> Dict[str, Any]:
        jobs = await self.jobs_between(time_range)
        simplified = [
            {
                "id": job.get("id"),
                "name": job.get("name"),
                "status": job.get("status"),
                "started": job.get("started"),
                "finished": job.get("finished"),
            }
            for job in jobs
        ]
        return {
            "failed_jobs": [j for j in simplified if j["status"] in FAILED_STATUSES],
            "running_jobs": [j for j in simplified if j["status"] in RUNNING_STATUSES],
        }

    # ----------------------------
    # Health / utility
    # ----------------------------
    async def ping(self) -> bool:
        """
        Basic health check: attempts to access API root.
        """
        async with self._client() as client:
            resp = await client.get("api/v2/")
            return resp.status_code == 200
