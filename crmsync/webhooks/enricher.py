"""
Event enrichment
AmoCRM webhooks carry only ids; the lead and its contacts are fetched
from the CRM read API before rules are evaluated.
"""

from typing import Any, Dict, List, Protocol

import structlog

from ..exceptions import EnrichmentError
from ..models import WebhookSource
from ..utils.log_sink import LogSink
from .events import EventContext

logger = structlog.get_logger("crmsync.webhooks.enricher")


class CrmReadApi(Protocol):
    async def get_lead_details(self, user_id: str, lead_id: str) -> Dict[str, Any]: ...

    async def get_contact_details(self, user_id: str, contact_id: str) -> Dict[str, Any]: ...


class EventEnricher:
    """Fills EventContext.lead and EventContext.contacts"""

    def __init__(self, read_api: CrmReadApi, log_sink: LogSink):
        self.read_api = read_api
        self.log_sink = log_sink

    async def enrich(self, context: EventContext) -> EventContext:
        if context.source != WebhookSource.AMOCRM:
            return context

        user_id = context.user_id
        lead_id = context.external_id

        try:
            lead = await self.read_api.get_lead_details(user_id, lead_id)
        except Exception as e:
            self.log_sink.error(
                user_id,
                f"Failed to fetch lead {lead_id}",
                {"lead_id": lead_id, "error": str(e)}
            )
            raise EnrichmentError(
                f"Lead {lead_id} could not be fetched: {e}",
                {"user_id": user_id, "lead_id": lead_id}
            ) from e

        context.lead = lead or {}
        context.contacts = await self._fetch_contacts(user_id, lead_id, context.lead)

        self.log_sink.info(
            user_id,
            f"Lead {lead_id} enriched",
            {"lead_id": lead_id, "contacts": len(context.contacts)}
        )
        return context

    async def _fetch_contacts(self, user_id: str, lead_id: str, lead: Dict[str, Any]) -> List[Dict[str, Any]]:
        embedded = (lead.get("_embedded") or {}).get("contacts") or []
        contacts = []
        for ref in embedded:
            contact_id = ref.get("id") if isinstance(ref, dict) else None
            if contact_id is None:
                continue
            try:
                contacts.append(await self.read_api.get_contact_details(user_id, str(contact_id)))
            except Exception as e:
                self.log_sink.warning(
                    user_id,
                    f"Failed to fetch contact {contact_id}",
                    {"lead_id": lead_id, "contact_id": contact_id, "error": str(e)}
                )
        return contacts
