"""
Operations - deferred units of work over State.

An operation is declared by calling an operation factory:

    @operation
    def assign(state, key, value):
        return {**state, key: value}

    step = assign("total", S.data.count)     # nothing runs yet

Calling the factory only records its arguments and returns an Operation
descriptor. The engine later resolves the arguments against the State the
operation receives (see opflow.lazy.resolve) and calls the implementation
with that State first.

Factory options:
- name: step name (defaults to the implementation's __name__)
- raw: parameters passed through unresolved (e.g. callbacks run by the
  operation itself)
- paths: parameters whose "$..." / "item..." string values are parsed into
  lazy expressions at declaration time

Declaring an operation while another one is executing raises
NestedOperationError.
"""

import functools
import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, Optional

from opflow.chain import Chain, Handler, HandlerKind
from opflow.lazy import NO_ITEM, LazyExpr, binding_item, parse_path, resolve
from opflow.runtime import executing, guard_declaration

logger = logging.getLogger(__name__)

OPERATION_MARKER = "__opflow_operation__"


def is_operation_factory(obj: Any) -> bool:
    """True if ``obj`` is a function produced by @operation."""
    return getattr(obj, OPERATION_MARKER, False) is True


def _as_path(value: Any) -> Any:
    if isinstance(value, str) and (
        value.startswith("$") or value == "item" or value.startswith(("item.", "item["))
    ):
        return parse_path(value)
    return value


def _describe_value(value: Any) -> str:
    if isinstance(value, Operation):
        return value.summary()
    if inspect.isfunction(value) or inspect.ismethod(value):
        return f"<fn {value.__qualname__}>"
    if isinstance(value, functools.partial):
        return f"<partial {getattr(value.func, '__qualname__', value.func)!r}>"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{k!r}: {_describe_value(v)}" for k, v in value.items()) + "}"
    if isinstance(value, list):
        return "[" + ", ".join(_describe_value(v) for v in value) + "]"
    return repr(value)


def _check_handler(fn: Any, method: str) -> None:
    if isinstance(fn, Operation):
        raise TypeError(
            f"{method}() expects a function, got operation '{fn.name}'. "
            f"Declare operations as top-level steps instead."
        )
    if not callable(fn) or isinstance(fn, LazyExpr):
        raise TypeError(f"{method}() expects a function, got {type(fn).__name__}")


@dataclass(frozen=True, eq=False)
class Operation:
    """
    A declared, not yet executed, operation.

    Attributes:
        name: Step name used in logs and errors
        impl: The implementation, called as impl(state, *args, **kwargs)
        signature: Signature of impl
        arguments: Declared arguments as (parameter, value) pairs, excluding
            the State parameter
        raw: Parameters that are passed to impl without resolution
        chain: then/catch handlers attached to this operation
    """
    name: str
    impl: Callable[..., Any] = field(repr=False)
    signature: inspect.Signature = field(repr=False)
    arguments: tuple[tuple[str, Any], ...] = ()
    raw: frozenset[str] = frozenset()
    chain: Chain = field(default_factory=Chain)

    def then(self, fn: Callable[[Any], Any]) -> "Operation":
        """Return a copy with an on-success handler fn(state) -> state appended."""
        _check_handler(fn, "then")
        return replace(self, chain=self.chain.append(Handler(HandlerKind.ON_SUCCESS, fn)))

    def catch(self, fn: Callable[[BaseException, Any], Any]) -> "Operation":
        """Return a copy with an on-failure handler fn(error, state) -> state appended."""
        _check_handler(fn, "catch")
        return replace(self, chain=self.chain.append(Handler(HandlerKind.ON_FAILURE, fn)))

    @property
    def args(self) -> dict[str, Any]:
        """Declared arguments by parameter name."""
        return dict(self.arguments)

    def iter_values(self) -> Iterator[Any]:
        """Yield every declared argument value."""
        for _, value in self.arguments:
            yield value

    def resolve_arguments(self, state: Any, item: Any = NO_ITEM) -> inspect.BoundArguments:
        """
        Resolve the declared arguments against ``state``.

        Returns:
            BoundArguments ready to call impl with, State first
        """
        params = list(self.signature.parameters)
        values: dict[str, Any] = {params[0]: state}
        for key, value in self.arguments:
            values[key] = value if key in self.raw else resolve(value, state, item=item)
        return inspect.BoundArguments(self.signature, values)

    async def invoke(self, state: Any, item: Any = NO_ITEM) -> Any:
        """
        Resolve arguments and run the implementation.

        Sync and async implementations are both supported. ``item`` stays
        bound while the implementation runs (see opflow.lazy.current_item).
        No chain handlers run here; see opflow.chain.settle.
        """
        with executing(self.name), binding_item(item):
            bound = self.resolve_arguments(state, item=item)
            result = self.impl(*bound.args, **bound.kwargs)
            if inspect.isawaitable(result):
                result = await result
        return result

    def summary(self) -> str:
        """One-line description, e.g. "assign('total', <LazyExpr $.data.count>).then(<fn f>)"."""
        args = ", ".join(
            f"{key}={_describe_value(value)}" for key, value in self.arguments
        )
        text = f"{self.name}({args})"
        for handler in self.chain:
            text += f".{handler.kind.value}({_describe_value(handler.fn)})"
        return text

    def describe(self) -> dict[str, Any]:
        """Describe the operation for listings."""
        return {
            "name": self.name,
            "arguments": {key: _describe_value(value) for key, value in self.arguments},
            "handlers": [
                {"kind": handler.kind.value, "fn": _describe_value(handler.fn)}
                for handler in self.chain
            ],
        }


def operation(
    func: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    raw: Iterable[str] = (),
    paths: Iterable[str] = (),
) -> Any:
    """
    Turn ``impl(state, ...)`` into an operation factory.

    Usable bare (@operation) or with options (@operation(name=..., raw=...)).

    Args:
        func: The implementation (when used bare)
        name: Step name, defaults to func.__name__
        raw: Parameters never resolved before impl is called
        paths: Parameters whose string values are parsed as lazy paths

    Returns:
        The factory, or a decorator producing it

    Raises:
        TypeError: If impl does not take the State as first positional
            parameter, or raw/paths name unknown parameters
    """
    raw = frozenset(raw)
    paths = frozenset(paths)

    def decorate(impl: Callable[..., Any]) -> Callable[..., Operation]:
        op_name = name or impl.__name__
        sig = inspect.signature(impl)
        params = list(sig.parameters.values())
        if not params or params[0].kind not in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            raise TypeError(
                f"Operation '{op_name}' must take the State as its first positional parameter"
            )
        unknown = (raw | paths) - set(sig.parameters)
        if unknown:
            raise TypeError(f"Operation '{op_name}' has no parameters {sorted(unknown)}")
        state_param = params[0].name

        @functools.wraps(impl)
        def factory(*args: Any, **kwargs: Any) -> Operation:
            guard_declaration(op_name)
            try:
                bound = sig.bind(None, *args, **kwargs)
            except TypeError as e:
                raise TypeError(f"{op_name}(): {e}") from None
            arguments = tuple(
                (key, _as_path(value) if key in paths else value)
                for key, value in bound.arguments.items()
                if key != state_param
            )
            return Operation(
                name=op_name,
                impl=impl,
                signature=sig,
                arguments=arguments,
                raw=raw,
            )

        setattr(factory, OPERATION_MARKER, True)
        factory.impl = impl
        factory.operation_name = op_name
        return factory

    if func is not None:
        return decorate(func)
    return decorate
