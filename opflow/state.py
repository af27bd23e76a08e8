"""
State helpers - the contract for State values and the serialization boundary.

State is any mapping. Operations and handlers must return one; see
ensure_state for what happens when they don't.

to_output() turns a State into plain JSON-compatible data, dropping keys that
must not leave the process (the injected configuration by default).
"""

import json
import logging
from collections.abc import Mapping
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import yaml

from opflow.errors import LazyEvaluationError, StateContractError
from opflow.lazy import LazyExpr, is_callback
from opflow.runtime import current_options

logger = logging.getLogger(__name__)

DEFAULT_REDACT_KEYS = ("configuration",)


def _find_lazy(value: Any, where: str, seen: set[int]) -> Optional[tuple[str, LazyExpr]]:
    if isinstance(value, LazyExpr):
        return where, value
    if not isinstance(value, (Mapping, list, tuple)) or id(value) in seen:
        return None
    seen.add(id(value))
    if isinstance(value, Mapping):
        children = ((f"{where}[{k!r}]", v) for k, v in value.items())
    else:
        children = ((f"{where}[{i}]", v) for i, v in enumerate(value))
    for child_where, child in children:
        found = _find_lazy(child, child_where, seen)
        if found:
            return found
    return None


def ensure_state(result: Any, previous: Any, *, step: str) -> Any:
    """
    Check that ``result`` is a State.

    Args:
        result: What an operation or handler returned
        previous: The State it received
        step: Step name for messages

    Returns:
        ``result`` when it is a mapping. Otherwise ``previous``, if the run
        is not strict.

    Raises:
        StateContractError: If ``result`` is not a mapping and the run is strict
        LazyEvaluationError: If ``result`` holds an unresolved lazy expression
    """
    if isinstance(result, Mapping):
        found = _find_lazy(result, "State", set())
        if found:
            where, expr = found
            raise LazyEvaluationError(
                f"Step '{step}' put lazy expression {expr._label} into {where}. "
                f"Lazy expressions are only resolved as operation arguments; read the "
                f"value from the state the callback receives instead."
            )
        return result
    message = f"Step '{step}' returned {type(result).__name__}, expected a State mapping"
    if current_options().strict_state:
        raise StateContractError(message)
    logger.warning(f"{message}; keeping the previous State")
    return previous


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            str(k): _plain(v)
            for k, v in value.items()
            if not _droppable(v)
        }
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value if not _droppable(v)]
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _droppable(value: Any) -> bool:
    from opflow.operation import Operation

    return isinstance(value, (LazyExpr, Operation)) or is_callback(value)


def to_output(state: Mapping[str, Any], redact: Iterable[str] = DEFAULT_REDACT_KEYS) -> dict[str, Any]:
    """
    Convert a State into plain data for printing or writing.

    - redacted top-level keys are removed
    - mappings become dicts with string keys, tuples become lists
    - datetimes become ISO-8601 strings
    - functions, lazy expressions and operations are dropped
    - anything else becomes str(value)

    Args:
        state: The State to convert
        redact: Top-level keys to remove

    Returns:
        A JSON-serializable dict
    """
    redact = set(redact)
    return _plain({k: v for k, v in state.items() if k not in redact})


def load_state(path: Union[str, Path]) -> dict[str, Any]:
    """
    Load a State from a JSON or YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not valid or its root is not a mapping
    """
    path = Path(path)
    text = path.read_text()
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Invalid state file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"State file {path} must contain a mapping, got {type(data).__name__}")
    return data


def dump_state(
    state: Mapping[str, Any],
    path: Union[str, Path],
    redact: Iterable[str] = DEFAULT_REDACT_KEYS,
) -> Path:
    """Write the redacted State to ``path`` as JSON (or YAML for .yaml/.yml)."""
    path = Path(path)
    data = to_output(state, redact)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix in (".yaml", ".yml"):
        path.write_text(yaml.safe_dump(data, sort_keys=False))
    else:
        path.write_text(json.dumps(data, indent=2) + "\n")
    return path
