"""
Тесты для разбора входящих вебхуков
"""

import json

import pytest

from crmsync.exceptions import PayloadParseError
from crmsync.models import WebhookSource
from crmsync.webhooks.events import (
    AmoCrmEvent,
    EventContext,
    LpTrackerEvent,
    is_missing,
    parse_event,
)


class TestAmoCrmEvent:
    """Тесты для событий AmoCRM"""

    def test_lead_id_priority(self):
        """Тест: add важнее status, status важнее update"""
        event = parse_event("amocrm", {
            "leads[update][0][id]": "3",
            "leads[status][0][id]": "2",
            "leads[add][0][id]": "1",
        })
        assert isinstance(event, AmoCrmEvent)
        assert event.external_id == "1"
        assert event.event_type == "add"

    def test_empty_id_is_skipped(self):
        """Тест: пустой ключ не считается заполненным"""
        event = parse_event(WebhookSource.AMOCRM, {
            "leads[add][0][id]": "",
            "leads[delete][0][id]": "8",
        })
        assert event.external_id == "8"
        assert event.event_type == "delete"

    def test_no_lead_id(self):
        """Тест: вебхук без сделки"""
        event = parse_event("amocrm", {"account[subdomain]": "acme"})
        assert event.external_id is None
        assert event.subdomain == "acme"
        assert event.action_timestamp is None
        assert event.updated_fields is None


class TestLpTrackerEvent:
    """Тесты для событий LPTracker"""

    def test_unwraps_data_string(self):
        """Тест: данные в поле data как JSON-строка"""
        inner = {
            "id": 15,
            "project_id": 42,
            "action": "update",
            "action_timestamp": 1700000000,
            "action_update_fields": ["stage_id", "custom.5"],
        }
        event = parse_event("lptracker", {"data": json.dumps(inner)})

        assert isinstance(event, LpTrackerEvent)
        assert event.external_id == "15"
        assert event.project_id == "42"
        assert event.event_type == "update"
        assert event.action_timestamp == "1700000000"
        assert event.updated_fields == ["stage_id", "custom.5"]

    def test_plain_json_body(self):
        """Тест: тело без обертки data"""
        event = parse_event("lptracker", {"id": 1, "project_id": "42", "type": "lead_add"})
        assert event.event_type == "lead_add"
        assert event.updated_fields is None

    @pytest.mark.parametrize("data", ["{not json", "[1, 2]"])
    def test_bad_data_string(self, data):
        """Тест: некорректная строка data"""
        with pytest.raises(PayloadParseError):
            parse_event("lptracker", {"data": data})

    def test_unknown_source(self):
        """Тест: неизвестный источник"""
        with pytest.raises(ValueError):
            parse_event("bitrix", {})


class TestEventContext:
    """Тесты для контекста события"""

    def test_custom_field_prefers_amocrm_list(self):
        """Тест: поле из сделки AmoCRM"""
        context = EventContext(
            event=AmoCrmEvent(payload={"leads[add][0][id]": "1"}),
            user_id="u",
            lead={"custom_fields_values": [{"field_id": 10, "values": [{"value": 0}]}]},
        )
        assert context.custom_field_value("10") == 0
        assert is_missing(context.custom_field_value("11"))

    def test_raw_custom_fields(self):
        """Тест: сырые пользовательские поля по источнику"""
        lpt = EventContext(
            event=LpTrackerEvent(payload={"custom": [{"id": 1, "value": "a"}, "junk"]}),
            user_id="u",
        )
        assert lpt.raw_custom_fields() == [{"id": 1, "value": "a"}]

        amo = EventContext(event=AmoCrmEvent(payload={}), user_id="u", lead={})
        assert amo.raw_custom_fields() == []
