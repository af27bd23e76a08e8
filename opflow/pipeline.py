"""
Pipeline - the ordered, top-level steps of a job, and their validation.

Operations may only be declared at the top level of a job. Two checks
enforce this before and during a run:
- validate_pipeline() scans every callback reachable from the steps
  (arguments, nested operations, then/catch handlers, and helper functions
  they call) for references to operation factories
- a sealed Pipeline rejects new steps while the engine is running it
  (together with opflow.runtime.guard_declaration)
"""

import dis
import functools
import inspect
import logging
import types
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional, Union

from opflow.errors import NestedOperationError
from opflow.operation import Operation, is_operation_factory
from opflow.runtime import current_step

logger = logging.getLogger(__name__)

_GLOBAL_LOADS = {"LOAD_GLOBAL", "LOAD_NAME"}
_CLOSURE_LOADS = {"LOAD_DEREF", "LOAD_CLASSDEREF"}
_ATTRIBUTE_LOADS = {"LOAD_ATTR", "LOAD_METHOD"}


class Pipeline:
    """
    An ordered list of top-level operations.

    Usage:
        pipeline = Pipeline(name="sync_patients")
        pipeline.add(cursor("yesterday"))
        pipeline.add(fetch_patients(since=S.cursor))

        # Or in one go
        pipeline = Pipeline([cursor("yesterday"), fetch_patients(since=S.cursor)])
    """

    def __init__(self, steps: Iterable[Operation] = (), name: Optional[str] = None):
        self.name = name or "pipeline"
        self._steps: list[Operation] = []
        self._sealed = False
        self.extend(steps)

    def add(self, op: Operation) -> "Pipeline":
        """
        Append a step.

        Raises:
            TypeError: If ``op`` is not an Operation
            NestedOperationError: If the pipeline is running
        """
        if self._sealed:
            active = current_step()
            raise NestedOperationError(
                f"Cannot add step '{getattr(op, 'name', op)!r}' to pipeline '{self.name}' "
                f"while it is running. Operations may only be declared at the top level of a job.",
                step=active,
            )
        if not isinstance(op, Operation):
            raise TypeError(
                f"Pipeline steps must be operations, got {type(op).__name__}. "
                f"Call an operation factory to declare a step."
            )
        self._steps.append(op)
        return self

    def extend(self, ops: Iterable[Operation]) -> "Pipeline":
        for op in ops:
            self.add(op)
        return self

    @property
    def steps(self) -> tuple[Operation, ...]:
        return tuple(self._steps)

    @property
    def is_sealed(self) -> bool:
        return self._sealed

    @contextmanager
    def sealed(self) -> Iterator["Pipeline"]:
        """Reject additions for the duration of the block."""
        previous = self._sealed
        self._sealed = True
        try:
            yield self
        finally:
            self._sealed = previous

    def describe(self) -> list[dict[str, Any]]:
        """List step summaries, 1-based."""
        return [
            {"index": i, **op.describe()}
            for i, op in enumerate(self._steps, start=1)
        ]

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Operation]:
        return iter(self._steps)

    def __getitem__(self, index: int) -> Operation:
        return self._steps[index]

    def __repr__(self) -> str:
        return f"Pipeline(name={self.name!r}, steps={len(self._steps)})"


# =============================================================================
# Validation
# =============================================================================


def _closure_vars(fn: types.FunctionType) -> dict[str, Any]:
    cells = fn.__closure__ or ()
    result = {}
    for name, cell in zip(fn.__code__.co_freevars, cells):
        try:
            result[name] = cell.cell_contents
        except ValueError:
            # Cell not filled yet
            continue
    return result


def _code_objects(code: types.CodeType) -> Iterator[types.CodeType]:
    yield code
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            yield from _code_objects(const)


def _lookup(name: str, fn: types.FunctionType, closure: dict[str, Any]) -> Any:
    if name in closure:
        return closure[name]
    if name in fn.__globals__:
        return fn.__globals__[name]
    builtins = fn.__globals__.get("__builtins__")
    if isinstance(builtins, dict):
        return builtins.get(name)
    return getattr(builtins, name, None)


def _is_namespace(value: Any) -> bool:
    from opflow.adaptors import Adaptor

    return isinstance(value, (types.ModuleType, Adaptor))


def _find_factory(fn: Any, seen: set[int]) -> Optional[tuple[str, str]]:
    """
    Look for an operation factory referenced by ``fn`` or its helpers.

    Returns:
        (factory name, qualified name of the function that references it),
        or None
    """
    if isinstance(fn, functools.partial):
        found = _find_factory(fn.func, seen)
        return found or _scan_values(list(fn.args) + list(fn.keywords.values()), seen)
    if inspect.ismethod(fn):
        fn = fn.__func__
    if not inspect.isfunction(fn) or id(fn.__code__) in seen:
        return None
    seen.add(id(fn.__code__))

    closure = _closure_vars(fn)
    namespaces: list[Any] = []
    attributes: set[str] = set()
    helpers: list[Any] = []

    for code in _code_objects(fn.__code__):
        for instr in dis.get_instructions(code):
            if instr.opname in _GLOBAL_LOADS or instr.opname in _CLOSURE_LOADS:
                if not isinstance(instr.argval, str):
                    continue
                value = _lookup(instr.argval, fn, closure)
                if is_operation_factory(value):
                    return value.operation_name, fn.__qualname__
                if _is_namespace(value):
                    namespaces.append(value)
                elif inspect.isfunction(value) and not (value.__module__ or "").startswith("opflow."):
                    helpers.append(value)
            elif instr.opname in _ATTRIBUTE_LOADS and isinstance(instr.argval, str):
                attributes.add(instr.argval)

    for namespace in namespaces:
        for attr in attributes:
            value = getattr(namespace, attr, None)
            if is_operation_factory(value):
                return value.operation_name, fn.__qualname__

    for helper in helpers:
        found = _find_factory(helper, seen)
        if found:
            return found
    return None


def _scan_values(values: Iterable[Any], seen: set[int]) -> Optional[tuple[str, str]]:
    for value in values:
        found = _scan_value(value, seen)
        if found:
            return found
    return None


def _scan_value(value: Any, seen: set[int]) -> Optional[tuple[str, str]]:
    if isinstance(value, Operation):
        found = _scan_values(value.iter_values(), seen)
        return found or _scan_values((h.fn for h in value.chain), seen)
    if isinstance(value, dict):
        return _scan_values(value.values(), seen)
    if isinstance(value, (list, tuple)):
        return _scan_values(value, seen)
    if inspect.isfunction(value) or inspect.ismethod(value) or isinstance(value, functools.partial):
        return _find_factory(value, seen)
    return None


def validate_pipeline(pipeline: Union[Pipeline, Iterable[Operation]]) -> None:
    """
    Check that no callback in the pipeline declares operations.

    Every step's arguments (recursively, including nested operations such as
    the sub-operation of each()) and every then/catch handler are scanned.

    Raises:
        NestedOperationError: Naming the first offending step
    """
    steps = pipeline.steps if isinstance(pipeline, Pipeline) else tuple(pipeline)
    for index, op in enumerate(steps, start=1):
        found = _scan_value(op, set())
        if found:
            factory, where = found
            raise NestedOperationError(
                f"Step {index} ('{op.name}') declares operation '{factory}' inside "
                f"callback '{where}'. Operations may only be declared at the top level "
                f"of a job; use a callback that returns a new State instead.",
                step=op.name,
            )
    logger.debug(f"Validated {len(steps)} steps")
