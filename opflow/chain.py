"""
Chains - then/catch handlers attached to an operation, and their resolution.

settle() runs one operation and walks its handlers in attachment order with
promise semantics:
- while no error is pending, then handlers run and catch handlers are skipped
- while an error is pending, then handlers are skipped and the next catch
  handler runs
- a catch handler that returns a State recovers; one that raises replaces
  the pending error
- an error still pending after the last handler becomes an
  UnrecoverableFailure

Structural errors (NestedOperationError, LazyEvaluationError, LazyWriteError)
are never given to catch handlers.
"""

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, NamedTuple, Optional

from opflow.errors import (
    LazyEvaluationError,
    LazyWriteError,
    NestedOperationError,
    UnrecoverableFailure,
)
from opflow.lazy import NO_ITEM
from opflow.runtime import executing
from opflow.state import ensure_state

if TYPE_CHECKING:
    from opflow.operation import Operation

logger = logging.getLogger(__name__)

STRUCTURAL_ERRORS = (NestedOperationError, LazyEvaluationError, LazyWriteError)


class HandlerKind(str, Enum):
    """When a handler runs."""
    ON_SUCCESS = "then"
    ON_FAILURE = "catch"


@dataclass(frozen=True, eq=False)
class Handler:
    """A then (fn(state)) or catch (fn(error, state)) handler."""
    kind: HandlerKind
    fn: Callable[..., Any]


@dataclass(frozen=True)
class Chain:
    """Immutable, ordered handlers of one operation."""
    handlers: tuple[Handler, ...] = ()

    def append(self, handler: Handler) -> "Chain":
        return Chain(self.handlers + (handler,))

    def __iter__(self) -> Iterator[Handler]:
        return iter(self.handlers)

    def __len__(self) -> int:
        return len(self.handlers)


class Settled(NamedTuple):
    """Result of settling an operation."""
    state: Any
    recovered: bool = False


async def _call_handler(step: str, fn: Callable[..., Any], *args: Any) -> Any:
    with executing(step):
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
    return result


async def settle(
    op: "Operation",
    state: Any,
    *,
    item: Any = NO_ITEM,
    label: Optional[str] = None,
) -> Settled:
    """
    Run ``op`` against ``state`` and resolve its chain.

    Args:
        op: The operation to run
        state: The State the operation receives
        item: The current each() item, if any
        label: Step name for logs and errors (defaults to op.name)

    Returns:
        Settled with the resulting State and whether a catch recovered

    Raises:
        UnrecoverableFailure: If the operation or a handler failed and no
            catch handler recovered
        NestedOperationError, LazyEvaluationError, LazyWriteError: Always
            propagated unchanged
    """
    step = label or op.name
    current = state
    error: Optional[Exception] = None
    recovered = False

    try:
        result = await op.invoke(state, item=item)
        current = ensure_state(result, current, step=step)
    except STRUCTURAL_ERRORS:
        raise
    except Exception as e:
        logger.debug(f"Step '{step}' raised {type(e).__name__}: {e}")
        error = e

    for handler in op.chain:
        if error is None and handler.kind is HandlerKind.ON_SUCCESS:
            try:
                result = await _call_handler(step, handler.fn, current)
                current = ensure_state(result, current, step=f"{step}.then")
            except STRUCTURAL_ERRORS:
                raise
            except Exception as e:
                logger.debug(f"then handler of '{step}' raised {type(e).__name__}: {e}")
                error = e
        elif error is not None and handler.kind is HandlerKind.ON_FAILURE:
            try:
                result = await _call_handler(step, handler.fn, error, current)
                current = ensure_state(result, current, step=f"{step}.catch")
            except STRUCTURAL_ERRORS:
                raise
            except Exception as e:
                logger.debug(f"catch handler of '{step}' raised {type(e).__name__}: {e}")
                error = e
            else:
                logger.warning(f"Step '{step}' recovered from {type(error).__name__}: {error}")
                error = None
                recovered = True

    if error is not None:
        raise UnrecoverableFailure(step, error, current)
    return Settled(current, recovered)
