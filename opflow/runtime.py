"""
Runtime context for a pipeline run.

Tracks which step is currently executing and the options of the current run.
Both live in context variables so they follow the asyncio task that runs the
pipeline.
"""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opflow.errors import NestedOperationError


@dataclass(frozen=True)
class RunOptions:
    """
    Options that apply to every step of a run.

    Attributes:
        strict_state: Raise StateContractError when an operation or handler
            returns something that is not a mapping. When false, log a
            warning and keep the previous State.
    """
    strict_state: bool = True


_ACTIVE_STEPS: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "opflow_active_steps", default=()
)
_OPTIONS: contextvars.ContextVar[RunOptions] = contextvars.ContextVar(
    "opflow_run_options", default=RunOptions()
)


def current_step() -> Optional[str]:
    """Return the innermost executing step, or None outside execution."""
    steps = _ACTIVE_STEPS.get()
    return steps[-1] if steps else None


def step_path() -> str:
    """Return the executing steps joined outermost first (e.g. "each > post")."""
    return " > ".join(_ACTIVE_STEPS.get())


def current_options() -> RunOptions:
    """Return the options of the current run."""
    return _OPTIONS.get()


@contextmanager
def executing(step: str) -> Iterator[None]:
    """Mark ``step`` as executing for the duration of the block."""
    token = _ACTIVE_STEPS.set(_ACTIVE_STEPS.get() + (step,))
    try:
        yield
    finally:
        _ACTIVE_STEPS.reset(token)


@contextmanager
def run_options(options: RunOptions) -> Iterator[None]:
    """Install ``options`` for the duration of the block."""
    token = _OPTIONS.set(options)
    try:
        yield
    finally:
        _OPTIONS.reset(token)


def guard_declaration(name: str) -> None:
    """
    Reject declaring an operation while another one is executing.

    Args:
        name: Name of the operation being declared

    Raises:
        NestedOperationError: If called while a step is executing
    """
    active = current_step()
    if active is not None:
        raise NestedOperationError(
            f"Operation '{name}' was declared while step '{step_path()}' was executing. "
            f"Operations may only be declared at the top level of a job.",
            step=active,
        )
