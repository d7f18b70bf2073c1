"""
Rule condition evaluation and relevance filtering
Both functions are pure: no I/O, no logging side effects beyond debug
"""

from typing import Any, Callable, Dict, Iterable, Optional, Set

import structlog

from ..models import SyncRule
from .events import EventContext, is_missing

logger = structlog.get_logger("crmsync.webhooks.conditions")

# Изменения этапа и оплат обрабатываем всегда
MUST_PROCESS_FIELDS = frozenset({"stage", "stage_id", "payments"})


def _check_event_type(condition: Dict[str, Any], context: EventContext) -> bool:
    return context.event_type is not None and context.event_type == condition.get("value")


def _check_pipeline(condition: Dict[str, Any], context: EventContext) -> bool:
    return str(context.pipeline_id()) == str(condition.get("value"))


def _check_status(condition: Dict[str, Any], context: EventContext) -> bool:
    return str(context.status_id()) == str(condition.get("value"))


def _check_field_equals(condition: Dict[str, Any], context: EventContext) -> bool:
    value = context.custom_field_value(condition.get("field"))
    if is_missing(value):
        return False
    return str(value) == str(condition.get("value"))


def _check_field_contains(condition: Dict[str, Any], context: EventContext) -> bool:
    value = context.custom_field_value(condition.get("field"))
    if is_missing(value) or value is None:
        return False
    return str(condition.get("value")) in str(value)


def _check_field_not_empty(condition: Dict[str, Any], context: EventContext) -> bool:
    value = context.custom_field_value(condition.get("field"))
    if is_missing(value):
        return False
    return value is not None and value != ""


CONDITION_CHECKS: Dict[str, Callable[[Dict[str, Any], EventContext], bool]] = {
    "event_type": _check_event_type,
    "pipeline": _check_pipeline,
    "status": _check_status,
    "field_equals": _check_field_equals,
    "field_contains": _check_field_contains,
    "field_not_empty": _check_field_not_empty,
}


def evaluate_condition(condition: Any, context: EventContext) -> bool:
    if not isinstance(condition, dict):
        return False
    check = CONDITION_CHECKS.get(condition.get("type"))
    if check is None:
        return False
    return bool(check(condition, context))


def evaluate_conditions(conditions: Any, context: EventContext) -> bool:
    """
    Evaluate a one-level condition tree.

    ``{"operator": "AND" | "OR", "rules": [...]}``; operator defaults to AND.
    Empty or malformed trees never match and nothing is raised to the caller.
    """
    try:
        if not isinstance(conditions, dict):
            return False

        rules = conditions.get("rules")
        if not isinstance(rules, list) or not rules:
            return False

        operator = str(conditions.get("operator") or "AND").upper()
        results = [evaluate_condition(condition, context) for condition in rules]

        if operator == "OR":
            return any(results)
        return all(results)

    except Exception as e:
        logger.debug("Condition evaluation failed", error=str(e))
        return False


def referenced_fields(rule: SyncRule) -> Set[str]:
    """Custom fields a rule reads, through field_* conditions or action mappings"""
    fields: Set[str] = set()

    for condition in rule.condition_list:
        if not isinstance(condition, dict):
            continue
        field_id = condition.get("field")
        condition_type = condition.get("type") or ""
        if field_id not in (None, "") and isinstance(condition_type, str) and "field_" in condition_type:
            fields.add(str(field_id))

    for action in rule.action_list:
        if not isinstance(action, dict):
            continue
        mappings = action.get("fieldMappings") or action.get("field_mappings") or {}
        if isinstance(mappings, dict):
            fields.update(str(source_field) for source_field in mappings.keys())

    return fields


def is_relevant(updated_fields: Optional[Iterable[str]], rule: SyncRule) -> bool:
    """
    Whether a change touching ``updated_fields`` can affect ``rule``.
    No list means every change is relevant.
    """
    if updated_fields is None:
        return True

    updated = [str(f) for f in updated_fields]

    if MUST_PROCESS_FIELDS.intersection(updated):
        return True

    for field_id in referenced_fields(rule):
        pattern = f"custom.{field_id}"
        if any(field_id in changed or changed == pattern for changed in updated):
            return True

    return False
