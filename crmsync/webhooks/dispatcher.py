"""
Action dispatch
Turns an enriched event into a NormalizedRecord per action and hands it to the
CRM sync adapter named by the action type. Adapters are checked out of
bounded pools owned by the dispatcher.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Generic, List, TypeVar

import structlog
from pydantic import ValidationError

from ..amocrm.client import contact_email, contact_phone
from ..exceptions import DispatchError
from ..models import ActionType, NormalizedRecord, SyncAction
from ..utils.log_sink import LogSink
from .events import EventContext, first_populated, is_missing

logger = structlog.get_logger("crmsync.webhooks.dispatcher")

DEFAULT_CONTACT_NAME = "Новый контакт"
DEFAULT_DEAL_NAME = "Новая сделка"

T = TypeVar("T")


class AdapterPool(Generic[T]):
    """
    Bounded set of adapter instances. At most ``size`` calls run at once;
    instances are created lazily and reused.
    """

    def __init__(self, name: str, factory: Callable[[], T], size: int = 5):
        self.name = name
        self._factory = factory
        self.size = size
        self._semaphore = asyncio.Semaphore(size)
        self._idle: List[T] = []
        self._created: List[T] = []
        self._in_use = 0
        self._closed = False

    @property
    def in_use(self) -> int:
        return self._in_use

    @asynccontextmanager
    async def checkout(self) -> AsyncIterator[T]:
        if self._closed:
            raise DispatchError(f"Adapter pool {self.name} is closed")

        async with self._semaphore:
            if self._idle:
                adapter = self._idle.pop()
            else:
                adapter = self._factory()
                self._created.append(adapter)
            self._in_use += 1
            try:
                yield adapter
            finally:
                self._in_use -= 1
                self._idle.append(adapter)

    async def aclose(self) -> None:
        self._closed = True
        for adapter in self._created:
            close = getattr(adapter, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning("Adapter close failed", pool=self.name, error=str(e))
        self._created.clear()
        self._idle.clear()


def _lpt_contact_phone(contact: Dict[str, Any]) -> str:
    for detail in contact.get("contacts") or contact.get("details") or []:
        if isinstance(detail, dict) and detail.get("type") == "phone":
            return detail.get("data") or ""
    return ""


def build_record(action: SyncAction, context: EventContext) -> NormalizedRecord:
    """Source-independent sync payload for one action"""
    lead = context.lead or {}
    amo_contact = context.contacts[0] if context.contacts else {}
    lpt = context.lpt_event
    lpt_contact = lpt.contact if lpt else {}
    amo = context.amo_event

    event_name = lpt.name if lpt else (amo.lead_field("name") if amo else None)

    mapped_values: Dict[str, Any] = {}
    for source_field, target_field in action.field_mappings.items():
        value = context.custom_field_value(source_field)
        if not is_missing(value):
            mapped_values[str(target_field)] = value

    return NormalizedRecord(
        name=first_populated(
            amo_contact.get("name"),
            amo_contact.get("first_name"),
            lpt_contact.get("name"),
        ) or DEFAULT_CONTACT_NAME,
        first_name=amo_contact.get("first_name") or "",
        last_name=amo_contact.get("last_name") or "",
        phone=first_populated(_lpt_contact_phone(lpt_contact), contact_phone(amo_contact)) or "",
        email=contact_email(amo_contact) or "",
        deal_name=first_populated(lead.get("name"), event_name) or DEFAULT_DEAL_NAME,
        price=lead.get("price") or 0,
        custom_fields=context.raw_custom_fields(),
        field_mappings=action.field_mappings,
        mapped_values=mapped_values,
        # пустые строки не передаем
        amocrm_pipeline_id=action.amocrm_pipeline_id or None,
        amocrm_status_id=action.amocrm_status_id or None,
        lptracker_stage_id=action.lptracker_stage_id or None,
        lptracker_project_id=action.lptracker_project_id or None,
    )


class ActionDispatcher:
    """Runs rule actions against the CRM sync adapters"""

    def __init__(
        self,
        amocrm_pool: AdapterPool,
        lptracker_pool: AdapterPool,
        log_sink: LogSink
    ):
        self.pools: Dict[str, AdapterPool] = {
            ActionType.SYNC_TO_AMOCRM.value: amocrm_pool,
            ActionType.SYNC_TO_LPTRACKER.value: lptracker_pool,
        }
        self.log_sink = log_sink

    async def _run(self, action: SyncAction, record: NormalizedRecord, user_id: str) -> None:
        pool = self.pools[action.type]
        async with pool.checkout() as adapter:
            if action.type == ActionType.SYNC_TO_AMOCRM.value:
                await adapter.sync_to_amocrm(user_id, record, action.search_by or "phone")
            else:
                await adapter.sync_to_lptracker(user_id, record, action.search_by or "phone")

    async def dispatch(self, actions: Any, context: EventContext) -> int:
        """
        Execute every action of a rule. Failures are logged per action and never
        abort sibling actions. Returns the number of actions that succeeded.
        """
        user_id = context.user_id
        action_list = actions.get("list") if isinstance(actions, dict) else actions
        if not isinstance(action_list, list):
            return 0

        succeeded = 0
        for raw in action_list:
            action_type = raw.get("type") if isinstance(raw, dict) else None
            try:
                action = SyncAction.model_validate(raw)
            except ValidationError as e:
                self.log_sink.warning(user_id, "Malformed action skipped", {"action": raw, "error": str(e)})
                continue

            if action.type not in self.pools:
                self.log_sink.warning(user_id, f"Unknown action type: {action.type}", {"action": raw})
                continue

            self.log_sink.info(user_id, f"Executing action: {action_type}", {"action": raw})
            try:
                record = build_record(action, context)
                await self._run(action, record, user_id)
                succeeded += 1
            except Exception as e:
                self.log_sink.error(
                    user_id,
                    f"Action failed: {action_type}",
                    {
                        "action": raw,
                        "error": str(e),
                        "error_type": type(e).__name__,
                        "external_id": context.external_id,
                    }
                )

        return succeeded

    async def close(self) -> None:
        for pool in self.pools.values():
            await pool.aclose()
