"""
Built-in operations available to every job.

Operations:
- fn(callback): run a callback State -> State
- fn_if(condition, operation): run ``operation`` only if ``condition`` holds
- each(source, operation): run ``operation`` per item (see opflow.iteration)
- cursor(value, options): set the cursor (see opflow.cursor)
- assign(key, value): set a (dotted) key
- append(key, value): append to a list
- merge(values): merge a mapping into State
- log(message): write a message to the job log

Helpers (not operations):
- data_value(path): lazy path below State["data"]
- template(fmt, *args): lazy str.format

None of these mutate the State they receive; they return a new top-level
dict.
"""

import inspect
import logging
from collections.abc import Mapping
from typing import Any

from opflow.chain import settle
from opflow.cursor import cursor
from opflow.iteration import each
from opflow.lazy import LazyExpr, current_item, parse_path, template
from opflow.operation import Operation, operation

logger = logging.getLogger(__name__)
job_logger = logging.getLogger("opflow.jobs")

__all__ = [
    "append",
    "assign",
    "cursor",
    "data_value",
    "each",
    "fn",
    "fn_if",
    "log",
    "merge",
    "template",
]


@operation(raw=("callback",))
async def fn(state, callback):
    """Run ``callback(state)`` and use its result as the next State."""
    if not callable(callback) or isinstance(callback, (LazyExpr, Operation)):
        raise TypeError(f"fn() expects a function, got {type(callback).__name__}")
    result = callback(state)
    if inspect.isawaitable(result):
        result = await result
    return result


@operation(raw=("operation",))
async def fn_if(state, condition, operation):
    """
    Run ``operation`` (with its chain) when ``condition`` resolves truthy.

    Inside each(), ``operation`` sees the same item as the condition.
    """
    if not isinstance(operation, Operation):
        raise TypeError(f"fn_if() expects an operation, got {type(operation).__name__}")
    if not condition:
        logger.debug(f"fn_if: condition false, skipping '{operation.name}'")
        return state
    settled = await settle(operation, state, item=current_item())
    return settled.state


def _set_path(target: Mapping[str, Any], parts: list[str], value: Any) -> dict[str, Any]:
    result = dict(target)
    head = parts[0]
    if len(parts) == 1:
        result[head] = value
        return result
    child = result.get(head)
    result[head] = _set_path(child if isinstance(child, Mapping) else {}, parts[1:], value)
    return result


@operation
def assign(state, key, value):
    """
    Set ``key`` to ``value``.

    Dotted keys ("patient.name") write into nested dicts, creating them when
    missing. Only the dicts along the path are copied.
    """
    if not isinstance(key, str) or not key:
        raise TypeError(f"assign() key must be a non-empty string, got {key!r}")
    return _set_path(state, key.split("."), value)


@operation
def append(state, key, value):
    """Append ``value`` to the list at ``key`` (created when missing)."""
    existing = state.get(key)
    if existing is None:
        existing = []
    if not isinstance(existing, (list, tuple)):
        raise TypeError(f"append(): state[{key!r}] is {type(existing).__name__}, not a list")
    return {**state, key: [*existing, value]}


@operation
def merge(state, values):
    """Merge the mapping ``values`` into the top level of State."""
    if not isinstance(values, Mapping):
        raise TypeError(f"merge() expects a mapping, got {type(values).__name__}")
    return {**state, **values}


@operation
def log(state, message):
    job_logger.info(f"{message}")
    return state


def data_value(path: str) -> LazyExpr:
    """
    Lazy path below State["data"].

    Example:
        data_value("patient.id")    # same as S.data.patient.id
    """
    path = path.strip()
    if not path:
        return parse_path("$.data")
    if path.startswith("["):
        return parse_path(f"$.data{path}")
    return parse_path(f"$.data.{path}")
