"""
each() - run one operation per item of a list.

    each("$.data.patients", post_patient(template("/patients/{}", item.id)))

For every item, in order, the sub-operation (with its own then/catch chain)
runs with ``data`` set to the item and ``index`` to its position, and with
``item`` bound for lazy expressions.

Modes:
- default: one running State is threaded through the iterations; afterwards
  the caller's ``data`` and ``index`` keys are restored
- isolate=True: every iteration starts from a copy of the entry State, and
  the step's output is the entry State with ``data`` set to the list of each
  iteration's final ``data``

A failure the sub-operation does not catch halts the loop; the
UnrecoverableFailure carries the item index.
"""

import copy
import logging
from typing import Any

from opflow.chain import settle
from opflow.errors import UnrecoverableFailure
from opflow.operation import Operation, operation

logger = logging.getLogger(__name__)

ITERATION_KEYS = ("data", "index")


async def _iterate(sub: Operation, state: Any, value: Any, index: int) -> Any:
    try:
        settled = await settle(sub, state, item=value)
    except UnrecoverableFailure as e:
        logger.debug(f"each: item {index} halted in '{e.step}'")
        raise UnrecoverableFailure(e.step, e.cause, e.state, index=index) from e.cause
    return settled.state


@operation(name="each", paths=("source",), raw=("operation",))
async def each(state, source, operation, isolate=False):
    """
    Run ``operation`` once per item of ``source``.

    Args:
        state: The current State
        source: The items; a "$..." path, lazy expression, callback or list
        operation: The sub-operation to run per item
        isolate: Start every iteration from a copy of the entry State

    Raises:
        TypeError: If ``operation`` is not an operation or ``source`` does not
            resolve to a list
        UnrecoverableFailure: If an iteration fails and is not caught by the
            sub-operation's chain
    """
    if not isinstance(operation, Operation):
        raise TypeError(f"each() expects an operation to run per item, got {type(operation).__name__}")
    if not isinstance(source, (list, tuple)):
        raise TypeError(f"each() expects a list to iterate over, got {type(source).__name__}")

    logger.debug(f"each: {len(source)} items through '{operation.name}'")

    if isolate:
        results = []
        for index, value in enumerate(source):
            scoped = {**copy.deepcopy(state), "data": value, "index": index}
            final = await _iterate(operation, scoped, value, index)
            results.append(final.get("data"))
        return {**state, "data": results}

    running = state
    for index, value in enumerate(source):
        running = await _iterate(operation, {**running, "data": value, "index": index}, value, index)

    result = {k: v for k, v in running.items() if k not in ITERATION_KEYS}
    for key in ITERATION_KEYS:
        if key in state:
            result[key] = state[key]
    return result
