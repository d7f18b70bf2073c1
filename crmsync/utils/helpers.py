"""
Helper utilities and common functions
"""

import json
from typing import Any

import structlog

logger = structlog.get_logger("crmsync.helpers")


def safe_json_loads(json_str: str, default: Any = None) -> Any:
    """Safely parse JSON string"""
    try:
        return json.loads(json_str)
    except (json.JSONDecodeError, TypeError):
        return default


def safe_json_dumps(data: Any, default: str = "{}") -> str:
    """Safely serialize to JSON string"""
    try:
        return json.dumps(data, ensure_ascii=False, default=str)
    except Exception:
        return default
