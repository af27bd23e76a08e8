"""
Cursor helper - remember a position (usually a timestamp) in State.

    cursor("yesterday")
    cursor(S.last_sync, {"defaultValue": "today"})
    fetch(since=S.cursor)

Keywords are turned into UTC ISO-8601 timestamps when the step runs:
- now: the current time
- today, start: 00:00:00 today
- yesterday: 00:00:00 yesterday
- end: 23:59:59 today
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from opflow.lazy import resolve
from opflow.operation import operation

logger = logging.getLogger(__name__)

DEFAULT_CURSOR_KEY = "cursor"
CURSOR_KEYWORDS = ("now", "today", "start", "yesterday", "end")


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _isoformat(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def resolve_keyword(value: Any, now: Optional[datetime] = None) -> Any:
    """
    Convert a cursor keyword to a timestamp; other values pass through.

    Args:
        value: A keyword such as "yesterday", or any value
        now: Reference time (defaults to the current UTC time)
    """
    if not isinstance(value, str) or value not in CURSOR_KEYWORDS:
        return value
    now = now or _utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if value == "now":
        ts = now
    elif value in ("today", "start"):
        ts = midnight
    elif value == "yesterday":
        ts = midnight - timedelta(days=1)
    else:
        ts = now.replace(hour=23, minute=59, second=59, microsecond=0)
    return _isoformat(ts)


@operation(name="cursor", paths=("value",), raw=("options", "format"))
def cursor(
    state,
    value,
    options=None,
    *,
    default_value=None,
    key=DEFAULT_CURSOR_KEY,
    format: Optional[Callable[[Any], Any]] = None,
):
    """
    Set ``state[key]`` to ``value``.

    Args:
        state: The current State
        value: The cursor value; a keyword, a "$..." path, a lazy expression,
            a callback or a literal
        options: Mapping accepting defaultValue/default_value, key and format
        default_value: Used when ``value`` resolves to None
        key: State key to write (default "cursor")
        format: Callable applied to the final value

    Returns:
        A new State with the cursor set
    """
    if options is not None:
        if not isinstance(options, Mapping):
            raise TypeError(f"cursor() options must be a mapping, got {type(options).__name__}")
        options = dict(options)
        format = options.pop("format", format)
        options = resolve(options, state)
        default_value = options.get("defaultValue", options.get("default_value", default_value))
        key = options.get("key", key)

    if value is None:
        value = default_value
    value = resolve_keyword(value)
    if format is not None:
        value = format(value)

    logger.info(f"Setting cursor '{key}' to {value!r}")
    return {**state, key: value}


def read_cursor(state: Mapping[str, Any], key: str = DEFAULT_CURSOR_KEY, default: Any = None) -> Any:
    """Return the cursor stored under ``key``, or ``default``."""
    return state.get(key, default)
