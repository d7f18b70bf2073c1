"""
LPTracker API client
Creates leads with their contact in the user's LPTracker project.
Responses are wrapped as {"status": "success" | "error", "result": ..., "errors": [...]}.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..amocrm.client import AccountRateLimiter
from ..config import get_settings
from ..exceptions import LPTrackerError
from ..models import MatchStrategy, NormalizedRecord, Platform, PlatformSettings

logger = structlog.get_logger("crmsync.lptracker.client")


class LPTrackerClient:
    """Asynchronous LPTracker API client"""

    def __init__(
        self,
        config_cache,
        rate_limiter: Optional[AccountRateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = get_settings()
        self.config_cache = config_cache
        self.rate_limiter = rate_limiter or AccountRateLimiter(self.settings.lptracker_rate_limit)
        self.base_url = self.settings.lptracker_base_url.rstrip("/")
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout)
        return self._client

    async def _credentials(self, user_id: str) -> PlatformSettings:
        settings = await self.config_cache.get_settings(user_id, Platform.LPTRACKER)
        if not settings or not settings.api_key:
            raise LPTrackerError("LPTracker settings not found", context={"user_id": user_id})
        return settings

    async def _make_request(
        self,
        user_id: str,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Any:
        credentials = await self._credentials(user_id)
        await self.rate_limiter.acquire(user_id)

        try:
            response = await self.client.request(
                method=method,
                url=f"{self.base_url}/{endpoint.lstrip('/')}",
                headers={"token": credentials.api_key, "Content-Type": "application/json"},
                json=data
            )
        except httpx.HTTPError as e:
            logger.error("LPTracker transport error", endpoint=endpoint, error=str(e))
            raise LPTrackerError(f"API request failed: {e}", context={"endpoint": endpoint})

        logger.info(
            "LPTracker API request",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code
        )

        if response.status_code >= 300:
            raise LPTrackerError(
                f"LPTracker API error: {response.status_code}",
                status_code=response.status_code,
                context={"endpoint": endpoint, "user_id": user_id}
            )

        body = response.json() if response.content else {}
        if isinstance(body, dict) and body.get("status") == "error":
            raise LPTrackerError(
                "LPTracker rejected request",
                status_code=response.status_code,
                context={"endpoint": endpoint, "errors": body.get("errors")}
            )
        return body.get("result") if isinstance(body, dict) else body

    @staticmethod
    def _contact_details(record: NormalizedRecord, match_by: str) -> List[Dict[str, str]]:
        """Contact details with the matching one first; LPTracker merges contacts on it"""
        details = []
        if record.phone:
            details.append({"type": "phone", "data": record.phone})
        if record.email:
            details.append({"type": "email", "data": record.email})
        if match_by == MatchStrategy.EMAIL.value:
            details.sort(key=lambda d: d["type"] != "email")
        return details

    def _lead_payload(self, record: NormalizedRecord, project_id: str, match_by: str) -> Dict[str, Any]:
        lead: Dict[str, Any] = {
            "project_id": project_id,
            "name": record.deal_name,
            "source": record.source,
            "contact": {
                "project_id": project_id,
                "name": record.name,
                "details": self._contact_details(record, match_by),
            },
        }
        if record.price:
            lead["lead_price"] = record.price
        if record.lptracker_stage_id:
            lead["stage_id"] = record.lptracker_stage_id
        if record.mapped_values:
            lead["custom"] = [
                {"id": field_id, "value": value}
                for field_id, value in record.mapped_values.items()
            ]
        return lead

    async def sync_to_lptracker(
        self,
        user_id: str,
        record: NormalizedRecord,
        match_by: str = MatchStrategy.PHONE.value
    ) -> Dict[str, Any]:
        credentials = await self._credentials(user_id)
        project_id = record.lptracker_project_id or credentials.project_id
        if not project_id:
            raise LPTrackerError("LPTracker project is not configured", context={"user_id": user_id})

        result = await self._make_request(
            user_id, "POST", "lead", data=self._lead_payload(record, str(project_id), match_by)
        )

        logger.info(
            "Lead synced to LPTracker",
            user_id=user_id,
            project_id=project_id,
            match_by=match_by,
            lead_id=result.get("id") if isinstance(result, dict) else None
        )
        return result if isinstance(result, dict) else {}

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
