"""Shared utility functions used across Loyalty modules."""
from __future__ import annotations

import json
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


def json_list(value: str | None) -> list[str]:
    """Parse a JSON-encoded id list column; anything but a list yields ``[]``."""
    parsed = json_parse(value, [])
    if not isinstance(parsed, list):
        return []
    return [str(v) for v in parsed]
