"""
AmoCRM API Client with rate limiting
Per-user credentials come from the configuration cache: every account lives on
its own subdomain and authenticates with a long-lived Bearer key.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import get_settings
from ..exceptions import AmoCRMError
from ..models import MatchStrategy, NormalizedRecord, Platform, PlatformSettings

logger = structlog.get_logger("crmsync.amocrm.client")

LEAD_EMBEDS = "contacts,companies,catalog_elements,loss_reason,source"


class RateLimiter:
    """Simple rate limiter for API calls"""

    def __init__(self, calls_per_second: int = 7):
        self.calls_per_second = calls_per_second
        self.calls: List[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Wait if necessary to respect rate limits"""
        async with self._lock:
            while True:
                now = time.monotonic()
                # Remove calls older than 1 second
                self.calls = [t for t in self.calls if now - t < 1.0]
                if len(self.calls) < self.calls_per_second:
                    break
                await asyncio.sleep(1.0 - (now - self.calls[0]))
            self.calls.append(now)


class AccountRateLimiter:
    """One RateLimiter per account, shared by every client instance"""

    def __init__(self, calls_per_second: int):
        self.calls_per_second = calls_per_second
        self._limiters: Dict[str, RateLimiter] = {}

    async def acquire(self, account: str):
        limiter = self._limiters.get(account)
        if limiter is None:
            limiter = self._limiters[account] = RateLimiter(self.calls_per_second)
        await limiter.acquire()


def _custom_field_value(entity: Optional[Dict[str, Any]], field_code: str, field_name: str) -> str:
    """First value of a contact field found by code or display name"""
    for item in (entity or {}).get("custom_fields_values") or []:
        if item.get("field_code") == field_code or item.get("field_name") == field_name:
            values = item.get("values") or []
            if values:
                return values[0].get("value") or ""
    return ""


def contact_phone(contact: Optional[Dict[str, Any]]) -> str:
    return _custom_field_value(contact, "PHONE", "Телефон")


def contact_email(contact: Optional[Dict[str, Any]]) -> str:
    return _custom_field_value(contact, "EMAIL", "Email")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AmoCRMClient:
    """Asynchronous AmoCRM API client"""

    def __init__(
        self,
        config_cache,
        rate_limiter: Optional[AccountRateLimiter] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = get_settings()
        self.config_cache = config_cache
        self.rate_limiter = rate_limiter or AccountRateLimiter(self.settings.amocrm_rate_limit)
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout)
        return self._client

    async def _credentials(self, user_id: str) -> PlatformSettings:
        settings = await self.config_cache.get_settings(user_id, Platform.AMOCRM)
        if not settings or not settings.subdomain or not settings.api_key:
            raise AmoCRMError("AmoCRM settings not found", context={"user_id": user_id})
        return settings

    async def _make_request(
        self,
        user_id: str,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        data: Optional[Any] = None
    ) -> Any:
        """Make authenticated request to the user's AmoCRM account"""
        credentials = await self._credentials(user_id)
        await self.rate_limiter.acquire(credentials.subdomain)

        url = f"https://{credentials.subdomain}.amocrm.ru/api/v4/{endpoint}"
        headers = {
            "Authorization": f"Bearer {credentials.api_key}",
            "Content-Type": "application/json"
        }

        try:
            response = await self.client.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=data
            )
        except httpx.HTTPError as e:
            logger.error("AmoCRM transport error", endpoint=endpoint, error=str(e))
            raise AmoCRMError(f"API request failed: {e}", context={"endpoint": endpoint})

        logger.info(
            "AmoCRM API request",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code
        )

        if response.status_code >= 300:
            raise AmoCRMError(
                f"AmoCRM API error: {response.status_code}",
                status_code=response.status_code,
                context={"endpoint": endpoint, "user_id": user_id}
            )

        # 204 - пустой результат поиска
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def get_lead_details(self, user_id: str, lead_id: str) -> Dict[str, Any]:
        """Lead with embedded contacts, companies, catalog elements, loss reason and source"""
        return await self._make_request(
            user_id, "GET", f"leads/{lead_id}", params={"with": LEAD_EMBEDS}
        )

    async def get_contact_details(self, user_id: str, contact_id: str) -> Dict[str, Any]:
        return await self._make_request(user_id, "GET", f"contacts/{contact_id}")

    async def find_contact(self, user_id: str, query: str) -> Optional[Dict[str, Any]]:
        """First contact matching a free-text query (phone, email or name)"""
        if not query:
            return None
        result = await self._make_request(
            user_id, "GET", "contacts", params={"query": query, "limit": 1}
        )
        contacts = result.get("_embedded", {}).get("contacts", [])
        return contacts[0] if contacts else None

    @staticmethod
    def _search_query(record: NormalizedRecord, match_by: str) -> str:
        if match_by == MatchStrategy.EMAIL.value:
            return record.email
        if match_by == MatchStrategy.NAME.value:
            return record.name
        return record.phone

    @staticmethod
    def _contact_payload(record: NormalizedRecord) -> Dict[str, Any]:
        contact: Dict[str, Any] = {"name": record.name}
        if record.first_name:
            contact["first_name"] = record.first_name
        if record.last_name:
            contact["last_name"] = record.last_name

        fields = []
        if record.phone:
            fields.append({"field_code": "PHONE", "values": [{"value": record.phone, "enum_code": "WORK"}]})
        if record.email:
            fields.append({"field_code": "EMAIL", "values": [{"value": record.email, "enum_code": "WORK"}]})
        if fields:
            contact["custom_fields_values"] = fields
        return contact

    @staticmethod
    def _lead_payload(record: NormalizedRecord) -> Dict[str, Any]:
        lead: Dict[str, Any] = {
            "name": record.deal_name,
            "price": int(record.price or 0),
        }

        pipeline_id = _as_int(record.amocrm_pipeline_id)
        status_id = _as_int(record.amocrm_status_id)
        if pipeline_id:
            lead["pipeline_id"] = pipeline_id
        if status_id:
            lead["status_id"] = status_id

        custom_fields = []
        for target, value in record.mapped_values.items():
            if target == "name":
                lead["name"] = str(value)
                continue
            if target == "price":
                if _as_int(value) is not None:
                    lead["price"] = _as_int(value)
                continue
            field_id = _as_int(target)
            if field_id is None:
                logger.debug("Skipping non-numeric AmoCRM field mapping", target=target)
                continue
            custom_fields.append({"field_id": field_id, "values": [{"value": value}]})

        if custom_fields:
            lead["custom_fields_values"] = custom_fields
        lead["_embedded"] = {"tags": [{"name": record.source}]}
        return lead

    async def sync_to_amocrm(
        self,
        user_id: str,
        record: NormalizedRecord,
        match_by: str = MatchStrategy.PHONE.value
    ) -> Dict[str, Any]:
        """
        Create a lead for ``record``, attached to an existing contact when one
        matches by ``match_by``, otherwise together with a new contact.
        """
        existing = await self.find_contact(user_id, self._search_query(record, match_by))

        lead = self._lead_payload(record)
        if existing:
            lead["_embedded"]["contacts"] = [{"id": existing["id"]}]
        else:
            lead["_embedded"]["contacts"] = [self._contact_payload(record)]

        result = await self._make_request(user_id, "POST", "leads/complex", data=[lead])
        created = result[0] if isinstance(result, list) and result else result

        logger.info(
            "Lead synced to AmoCRM",
            user_id=user_id,
            match_by=match_by,
            contact_matched=bool(existing),
            lead_id=created.get("id") if isinstance(created, dict) else None
        )
        return created if isinstance(created, dict) else {}

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
