"""
Тесты для вычисления условий правил и фильтра релевантности
"""

import pytest

from crmsync.webhooks.conditions import (
    evaluate_condition,
    evaluate_conditions,
    is_relevant,
    referenced_fields,
)
from crmsync.webhooks.events import AmoCrmEvent, EventContext, LpTrackerEvent

from conftest import make_rule


@pytest.fixture
def amo_context():
    event = AmoCrmEvent(payload={
        "account[subdomain]": "acme",
        "leads[status][0][id]": "555",
        "leads[status][0][status_id]": "100",
        "leads[status][0][pipeline_id]": "7",
    })
    lead = {
        "id": 555,
        "status_id": 142,
        "custom_fields_values": [
            {"field_id": 123, "values": [{"value": "Москва"}]},
            {"field_id": 124, "values": [{"value": ""}]},
        ],
    }
    return EventContext(event=event, user_id="user-1", lead=lead)


@pytest.fixture
def lpt_context():
    event = LpTrackerEvent(payload={
        "id": 9,
        "project_id": 42,
        "type": "lead_update",
        "stage": {"id": 3},
        "custom": [{"id": 77, "value": "VIP клиент"}],
    })
    return EventContext(event=event, user_id="user-1")


class TestConditionTypes:
    """Тесты для отдельных типов условий"""

    def test_status_prefers_enriched_lead(self, amo_context):
        """Тест: статус берется из сделки, а не из вебхука"""
        assert evaluate_condition({"type": "status", "value": "142"}, amo_context)
        assert not evaluate_condition({"type": "status", "value": "100"}, amo_context)

    def test_pipeline_falls_back_to_payload(self, amo_context):
        """Тест: воронка из вебхука, если в сделке ее нет"""
        assert evaluate_condition({"type": "pipeline", "value": 7}, amo_context)

    def test_lptracker_status_from_stage(self, lpt_context):
        """Тест: статус LPTracker берется из stage.id"""
        assert evaluate_condition({"type": "status", "value": "3"}, lpt_context)

    def test_event_type(self, amo_context, lpt_context):
        """Тест: тип события"""
        assert evaluate_condition({"type": "event_type", "value": "status"}, amo_context)
        assert evaluate_condition({"type": "event_type", "value": "lead_update"}, lpt_context)
        assert not evaluate_condition({"type": "event_type", "value": "add"}, amo_context)

    def test_field_equals(self, amo_context):
        """Тест: равенство пользовательского поля"""
        assert evaluate_condition({"type": "field_equals", "field": "123", "value": "Москва"}, amo_context)
        assert not evaluate_condition({"type": "field_equals", "field": "999", "value": "Москва"}, amo_context)

    def test_field_contains(self, lpt_context):
        """Тест: подстрока в поле LPTracker"""
        assert evaluate_condition({"type": "field_contains", "field": 77, "value": "VIP"}, lpt_context)
        assert not evaluate_condition({"type": "field_contains", "field": 77, "value": "Gold"}, lpt_context)

    def test_field_not_empty(self, amo_context):
        """Тест: пустое и отсутствующее поле"""
        assert evaluate_condition({"type": "field_not_empty", "field": "123"}, amo_context)
        assert not evaluate_condition({"type": "field_not_empty", "field": "124"}, amo_context)
        assert not evaluate_condition({"type": "field_not_empty", "field": "999"}, amo_context)

    def test_unknown_type_is_false(self, amo_context):
        """Тест: неизвестный тип условия"""
        assert not evaluate_condition({"type": "moon_phase", "value": "full"}, amo_context)


class TestOperators:
    """Тесты для операторов AND/OR"""

    TRUE = {"type": "status", "value": "142"}
    FALSE = {"type": "status", "value": "999"}

    def test_or(self, amo_context):
        """Тест: OR с одним истинным условием"""
        assert evaluate_conditions({"operator": "OR", "rules": [self.FALSE, self.TRUE]}, amo_context)

    def test_and(self, amo_context):
        """Тест: AND с одним ложным условием"""
        assert not evaluate_conditions({"operator": "AND", "rules": [self.FALSE, self.TRUE]}, amo_context)

    def test_default_operator_is_and(self, amo_context):
        """Тест: оператор по умолчанию"""
        assert not evaluate_conditions({"rules": [self.FALSE, self.TRUE]}, amo_context)
        assert evaluate_conditions({"rules": [self.TRUE, self.TRUE]}, amo_context)

    @pytest.mark.parametrize("conditions", [
        None,
        {},
        {"operator": "AND"},
        {"operator": "OR", "rules": []},
        {"rules": "status"},
        {"rules": [None, 5]},
        "AND",
    ])
    def test_malformed_trees_never_match(self, amo_context, conditions):
        """Тест: некорректные условия дают false без исключений"""
        assert evaluate_conditions(conditions, amo_context) is False

    def test_internal_error_is_fail_closed(self, amo_context):
        """Тест: исключение внутри проверки"""
        amo_context.lead = ["not", "a", "mapping"]
        conditions = {"rules": [{"type": "field_equals", "field": "1", "value": "x"}]}
        assert evaluate_conditions(conditions, amo_context) is False


class TestRelevance:
    """Тесты для фильтра релевантности LPTracker"""

    def test_no_update_list_is_relevant(self):
        """Тест: без списка изменений событие релевантно"""
        assert is_relevant(None, make_rule(1))

    def test_stage_change_always_relevant(self):
        """Тест: изменение этапа обрабатывается всегда"""
        rule = make_rule(1, {"rules": [{"type": "field_equals", "field": "500", "value": "x"}]})
        assert is_relevant(["stage_id"], rule)
        assert is_relevant(["payments"], rule)

    def test_referenced_field_by_condition(self):
        """Тест: изменилось поле из условия"""
        rule = make_rule(1, {"rules": [{"type": "field_equals", "field": "500", "value": "x"}]})
        assert is_relevant(["custom.500"], rule)
        assert not is_relevant(["custom.600", "name"], rule)

    def test_referenced_field_by_mapping(self):
        """Тест: изменилось поле из маппинга действия"""
        rule = make_rule(1, actions=[{"type": "sync_to_amocrm", "fieldMappings": {"600": "1001"}}])
        assert referenced_fields(rule) == {"600"}
        assert is_relevant(["custom.600"], rule)

    def test_non_field_conditions_do_not_count(self):
        """Тест: условия без поля не влияют на релевантность"""
        rule = make_rule(1, {"rules": [{"type": "status", "field": "700", "value": "1"}]})
        assert referenced_fields(rule) == set()
        assert not is_relevant(["custom.700"], rule)
