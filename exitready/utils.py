"""Shared utility functions used across exitready modules."""
from __future__ import annotations

import json
import math
from datetime import UTC, datetime
from enum import Enum
from typing import Any

_MISSING = object()

SCORE_TOLERANCE = 1e-6


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str:
    """Serialize for a Text column; enums and datetimes fall back to ``str``."""
    return json.dumps(value, default=str, sort_keys=True)


def same_score(a: float, b: float) -> bool:
    """Exact score-level equality, tolerant only of float representation noise."""
    return math.isclose(a, b, abs_tol=SCORE_TOLERANCE)


def enum_value(value: Any) -> Any:
    """Plain value of an enum member; other values pass through unchanged."""
    return value.value if isinstance(value, Enum) else value


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with SQLite ``DateTime`` columns."""
    return datetime.now(UTC).replace(tzinfo=None)
