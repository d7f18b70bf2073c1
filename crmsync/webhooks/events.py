"""
Inbound webhook events
AmoCRM posts flat bracket-keyed form fields, LPTracker posts nested JSON
(usually wrapped as {"data": "<json string>"}). Each source gets its own
event type with accessors, and EventContext gives the evaluator and the
dispatcher one source-agnostic view.
"""

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from ..exceptions import PayloadParseError
from ..models import WebhookSource

# Порядок важен: первый заполненный ключ определяет тип события
AMOCRM_LEAD_EVENT_KINDS: Tuple[str, ...] = ("add", "status", "update", "delete")

_MISSING = object()


def _populated(value: Any) -> bool:
    return value is not None and value != ""


def first_populated(*values: Any) -> Any:
    """First value that is neither None nor an empty string"""
    for value in values:
        if _populated(value):
            return value
    return None


@dataclass(frozen=True)
class AmoCrmEvent:
    """AmoCRM lead webhook (flat keys like ``leads[status][0][id]``)"""

    payload: Mapping[str, Any]
    source: ClassVar[WebhookSource] = WebhookSource.AMOCRM

    @property
    def subdomain(self) -> Optional[str]:
        return first_populated(self.payload.get("account[subdomain]"))

    @property
    def lead_event_kind(self) -> Optional[str]:
        for kind in AMOCRM_LEAD_EVENT_KINDS:
            if _populated(self.payload.get(f"leads[{kind}][0][id]")):
                return kind
        return None

    @property
    def external_id(self) -> Optional[str]:
        kind = self.lead_event_kind
        if kind is None:
            return None
        return str(self.payload[f"leads[{kind}][0][id]"])

    @property
    def event_type(self) -> Optional[str]:
        return self.lead_event_kind

    @property
    def action_timestamp(self) -> Optional[str]:
        # AmoCRM lead webhooks carry no per-action timestamp
        return None

    @property
    def updated_fields(self) -> Optional[List[str]]:
        return None

    def lead_field(self, name: str) -> Any:
        kind = self.lead_event_kind
        if kind is None:
            return None
        return self.payload.get(f"leads[{kind}][0][{name}]")


@dataclass(frozen=True)
class LpTrackerEvent:
    """LPTracker lead webhook (already unwrapped from the ``data`` string)"""

    payload: Mapping[str, Any]
    source: ClassVar[WebhookSource] = WebhookSource.LPTRACKER

    @property
    def project_id(self) -> Optional[str]:
        project_id = self.payload.get("project_id")
        return str(project_id) if _populated(project_id) else None

    @property
    def external_id(self) -> Optional[str]:
        lead_id = self.payload.get("id")
        return str(lead_id) if _populated(lead_id) else None

    @property
    def event_type(self) -> Optional[str]:
        return first_populated(self.payload.get("type"), self.payload.get("action"))

    @property
    def action_timestamp(self) -> Optional[str]:
        timestamp = self.payload.get("action_timestamp")
        return str(timestamp) if _populated(timestamp) else None

    @property
    def updated_fields(self) -> Optional[List[str]]:
        fields = self.payload.get("action_update_fields")
        if not isinstance(fields, list):
            return None
        return [str(f) for f in fields]

    @property
    def stage(self) -> Dict[str, Any]:
        stage = self.payload.get("stage")
        return stage if isinstance(stage, dict) else {}

    @property
    def stage_id(self) -> Any:
        return first_populated(self.payload.get("stage_id"), self.stage.get("id"))

    @property
    def custom(self) -> List[Dict[str, Any]]:
        custom = self.payload.get("custom")
        return [c for c in custom if isinstance(c, dict)] if isinstance(custom, list) else []

    @property
    def contact(self) -> Dict[str, Any]:
        contact = self.payload.get("contact")
        return contact if isinstance(contact, dict) else {}

    @property
    def name(self) -> Optional[str]:
        return first_populated(self.payload.get("name"))


InboundEvent = Union[AmoCrmEvent, LpTrackerEvent]


def parse_event(source: Union[str, WebhookSource], raw: Mapping[str, Any]) -> InboundEvent:
    """Build the typed event for a raw webhook body"""
    source = WebhookSource(source)
    raw = dict(raw or {})

    if source == WebhookSource.AMOCRM:
        return AmoCrmEvent(payload=raw)

    data = raw.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise PayloadParseError(
                f"LPTracker data is not valid JSON: {e}",
                {"payload_keys": list(raw.keys())}
            )
        if not isinstance(data, dict):
            raise PayloadParseError(
                "LPTracker data must decode to an object",
                {"decoded_type": type(data).__name__}
            )
        return LpTrackerEvent(payload=data)

    return LpTrackerEvent(payload=raw)


@dataclass
class EventContext:
    """Event plus everything fetched for it while processing"""

    event: InboundEvent
    user_id: str
    lead: Optional[Dict[str, Any]] = None
    contacts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def source(self) -> WebhookSource:
        return self.event.source

    @property
    def external_id(self) -> Optional[str]:
        return self.event.external_id

    @property
    def event_type(self) -> Optional[str]:
        return self.event.event_type

    @property
    def lpt_event(self) -> Optional[LpTrackerEvent]:
        return self.event if isinstance(self.event, LpTrackerEvent) else None

    @property
    def amo_event(self) -> Optional[AmoCrmEvent]:
        return self.event if isinstance(self.event, AmoCrmEvent) else None

    def _lead_value(self, key: str) -> Any:
        return (self.lead or {}).get(key)

    def pipeline_id(self) -> Any:
        amo = self.amo_event
        return first_populated(
            self._lead_value("pipeline_id"),
            amo.lead_field("pipeline_id") if amo else None,
        )

    def status_id(self) -> Any:
        amo = self.amo_event
        lpt = self.lpt_event
        return first_populated(
            self._lead_value("status_id"),
            amo.lead_field("status_id") if amo else None,
            lpt.stage_id if lpt else None,
        )

    def custom_field_value(self, field_id: Any) -> Any:
        """
        Value of a custom field, or _MISSING when no representation has it.
        AmoCRM keyed list is checked before the LPTracker array.
        """
        wanted = str(field_id)

        for item in self._lead_value("custom_fields_values") or []:
            if isinstance(item, dict) and str(item.get("field_id")) == wanted:
                values = item.get("values") or []
                if values and isinstance(values[0], dict) and "value" in values[0]:
                    return values[0]["value"]

        lpt = self.lpt_event
        if lpt:
            for item in lpt.custom:
                if str(item.get("id")) == wanted and "value" in item:
                    return item["value"]

        return _MISSING

    def raw_custom_fields(self) -> Any:
        if self.lead is not None:
            return self._lead_value("custom_fields_values") or []
        lpt = self.lpt_event
        return lpt.custom if lpt else []


def is_missing(value: Any) -> bool:
    return value is _MISSING
