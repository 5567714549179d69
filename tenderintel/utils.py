"""Shared utility functions used across tenderintel modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def as_str_list(value: Any) -> list[str]:
    """Normalise a decoded collection to a list of strings."""
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        if item is None:
            continue
        out.append(item if isinstance(item, str) else to_json(item))
    return out


def utc_now() -> datetime:
    return datetime.now(UTC)
