"""
Lazy expressions - deferred, read-only references into State.

A lazy expression is written against one of two roots:
- S     the State handed to the operation that receives the expression
        (printed as ``$``)
- item  the current item inside each()

    get_patients(since=S.cursor)
    assign("total", S.data.count * 2)
    post(template("{}/patients/{}", S.configuration.base_url, item.id))

Building an expression records a path; nothing is read. The expression is
only evaluated by resolve(), which the engine calls immediately before the
receiving operation runs, against the State that operation receives.

Rules:
- Arithmetic and comparisons (including == and !=) build new expressions
- Reading an expression any other way (truth test, str(), f-string, int(),
  iteration, len, calling it) raises LazyEvaluationError
- Evaluating an expression outside resolve() raises LazyEvaluationError
- Any assignment or deletion through an expression raises LazyWriteError
- A missing key, index or attribute resolves to None, and so does any path
  continuing from None
"""

import contextvars
import functools
import inspect
import operator
import re
from collections.abc import Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from opflow.errors import LazyEvaluationError, LazyWriteError


class _NoItem:
    """Marker for "no each() item in scope"."""
    __slots__ = ()

    def __repr__(self) -> str:
        return "NO_ITEM"


NO_ITEM = _NoItem()


class ResolutionScope:
    """The State (and optional item) that lazy expressions resolve against."""
    __slots__ = ("state", "item")

    def __init__(self, state: Any, item: Any = NO_ITEM):
        self.state = state
        self.item = item


_SCOPE: contextvars.ContextVar[Optional[ResolutionScope]] = contextvars.ContextVar(
    "opflow_resolution_scope", default=None
)


@contextmanager
def resolution_scope(state: Any, item: Any = NO_ITEM) -> Iterator[ResolutionScope]:
    """Open the window in which lazy expressions may be evaluated."""
    scope = ResolutionScope(state, item)
    token = _SCOPE.set(scope)
    try:
        yield scope
    finally:
        _SCOPE.reset(token)


_ITEM: contextvars.ContextVar[Any] = contextvars.ContextVar("opflow_current_item", default=NO_ITEM)


def current_item() -> Any:
    """Return the each() item bound to the executing operation, or NO_ITEM."""
    return _ITEM.get()


@contextmanager
def binding_item(value: Any) -> Iterator[None]:
    """Bind ``value`` as the current item while an operation runs."""
    token = _ITEM.set(value)
    try:
        yield
    finally:
        _ITEM.reset(token)


def _walk(value: Any, key: Any) -> Any:
    """Take one step along a path. Missing segments yield None."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get(key)
    if isinstance(key, int) and isinstance(value, Sequence):
        try:
            return value[key]
        except IndexError:
            return None
    if isinstance(key, str):
        return getattr(value, key, None)
    return None


def _operand(value: Any, scope: ResolutionScope) -> Any:
    if isinstance(value, LazyExpr):
        return value._evaluate_fn(scope)
    return value


def _label_of(value: Any) -> str:
    if isinstance(value, LazyExpr):
        return value._label
    return repr(value)


def _misuse(action: str) -> Callable[..., Any]:
    def method(self: "LazyExpr", *args: Any, **kwargs: Any) -> Any:
        raise LazyEvaluationError(
            f"Cannot {action} lazy expression {self._label}. Lazy expressions are "
            f"only resolved when the operation that receives them runs: pass it as "
            f"an operation argument, or use a callback that reads from the state "
            f"it receives."
        )
    return method


def _binary(op: Callable[[Any, Any], Any], symbol: str, reflected: bool = False) -> Callable[..., "LazyExpr"]:
    def method(self: "LazyExpr", other: Any) -> "LazyExpr":
        if reflected:
            label = f"({_label_of(other)} {symbol} {self._label})"

            def evaluate(scope: ResolutionScope) -> Any:
                return op(_operand(other, scope), self._evaluate_fn(scope))
        else:
            label = f"({self._label} {symbol} {_label_of(other)})"

            def evaluate(scope: ResolutionScope) -> Any:
                return op(self._evaluate_fn(scope), _operand(other, scope))
        return LazyExpr(evaluate, label)
    return method


class LazyExpr:
    """
    A deferred, read-only path into the current State.

    Instances are built from the S and item roots (or parse_path) and are
    immutable. Evaluation only happens through resolve().

    The names _evaluate_fn, _label and _child belong to the expression
    itself, so S._label is not a path. Reach State keys with those names as
    S["_label"] or parse_path("$._label").
    """
    __slots__ = ("_evaluate_fn", "_label")

    def __init__(self, evaluate: Callable[[ResolutionScope], Any], label: str):
        object.__setattr__(self, "_evaluate_fn", evaluate)
        object.__setattr__(self, "_label", label)

    def _child(self, key: Any, label: str) -> "LazyExpr":
        parent = self._evaluate_fn

        def evaluate(scope: ResolutionScope) -> Any:
            return _walk(parent(scope), _operand(key, scope))
        return LazyExpr(evaluate, label)

    def __getattr__(self, name: str) -> "LazyExpr":
        if name.startswith("__") and name.endswith("__"):
            raise AttributeError(name)
        return self._child(name, f"{self._label}.{name}")

    def __getitem__(self, key: Any) -> "LazyExpr":
        return self._child(key, f"{self._label}[{_label_of(key)}]")

    def __setattr__(self, name: str, value: Any) -> None:
        raise LazyWriteError(
            f"Cannot assign to {self._label}.{name}: lazy expressions are read-only. "
            f"Return a new State from an operation instead."
        )

    def __delattr__(self, name: str) -> None:
        raise LazyWriteError(f"Cannot delete {self._label}.{name}: lazy expressions are read-only.")

    def __setitem__(self, key: Any, value: Any) -> None:
        raise LazyWriteError(
            f"Cannot assign to {self._label}[{key!r}]: lazy expressions are read-only. "
            f"Return a new State from an operation instead."
        )

    def __delitem__(self, key: Any) -> None:
        raise LazyWriteError(f"Cannot delete {self._label}[{key!r}]: lazy expressions are read-only.")

    def __repr__(self) -> str:
        return f"<LazyExpr {self._label}>"

    # Expressions are immutable; copies share the instance.
    def __copy__(self) -> "LazyExpr":
        return self

    def __deepcopy__(self, memo: dict) -> "LazyExpr":
        return self

    __bool__ = _misuse("test the truth of")
    __str__ = _misuse("convert to str")
    __format__ = _misuse("format")
    __int__ = _misuse("convert to int")
    __float__ = _misuse("convert to float")
    __index__ = _misuse("use as an index")
    __len__ = _misuse("take the length of")
    __iter__ = _misuse("iterate over")
    __contains__ = _misuse("test membership in")
    __call__ = _misuse("call")

    __add__ = _binary(operator.add, "+")
    __radd__ = _binary(operator.add, "+", reflected=True)
    __sub__ = _binary(operator.sub, "-")
    __rsub__ = _binary(operator.sub, "-", reflected=True)
    __mul__ = _binary(operator.mul, "*")
    __rmul__ = _binary(operator.mul, "*", reflected=True)
    __truediv__ = _binary(operator.truediv, "/")
    __rtruediv__ = _binary(operator.truediv, "/", reflected=True)
    __floordiv__ = _binary(operator.floordiv, "//")
    __rfloordiv__ = _binary(operator.floordiv, "//", reflected=True)
    __mod__ = _binary(operator.mod, "%")
    __rmod__ = _binary(operator.mod, "%", reflected=True)
    __pow__ = _binary(operator.pow, "**")
    __rpow__ = _binary(operator.pow, "**", reflected=True)
    __lt__ = _binary(operator.lt, "<")
    __le__ = _binary(operator.le, "<=")
    __gt__ = _binary(operator.gt, ">")
    __ge__ = _binary(operator.ge, ">=")
    __eq__ = _binary(operator.eq, "==")
    __ne__ = _binary(operator.ne, "!=")
    __hash__ = object.__hash__

    def __neg__(self) -> "LazyExpr":
        parent = self._evaluate_fn
        return LazyExpr(lambda scope: -parent(scope), f"-{self._label}")


def _state_root(scope: ResolutionScope) -> Any:
    return scope.state


def _item_root(scope: ResolutionScope) -> Any:
    if scope.item is NO_ITEM:
        raise LazyEvaluationError("item is only available inside each()")
    return scope.item


S = LazyExpr(_state_root, "$")
item = LazyExpr(_item_root, "item")


def template(fmt: str, *args: Any, **kwargs: Any) -> LazyExpr:
    """
    Build a lazy string from a str.format() template.

    Any positional or keyword argument may be a lazy expression.

    Example:
        template("{}/patients?since={}", S.configuration.base_url, S.cursor)
    """
    def evaluate(scope: ResolutionScope) -> str:
        values = [_operand(a, scope) for a in args]
        named = {k: _operand(v, scope) for k, v in kwargs.items()}
        return fmt.format(*values, **named)
    return LazyExpr(evaluate, f"template({fmt!r})")


# .name | [0] | ['key'] | ["key"] | [*]
_PATH_TOKEN = re.compile(
    r"""
    \.(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    | \[\s*(?P<index>-?\d+)\s*\]
    | \[\s*(?P<quote>['"])(?P<key>.*?)(?P=quote)\s*\]
    | (?P<all>\[\*\])
    """,
    re.VERBOSE,
)


def parse_path(path: str) -> LazyExpr:
    """
    Parse a string path such as "$.data.items[0].id" into a LazyExpr.

    Paths start with "$" (the State) or "item" (the current each() item).
    A trailing "[*]" selects the whole sequence and is accepted for
    compatibility with JSONPath-style selectors.

    Raises:
        ValueError: If the path is malformed
    """
    text = path.strip()
    if text.startswith("$"):
        expr, rest = S, text[1:]
    elif text.startswith("item"):
        expr, rest = item, text[4:]
    else:
        raise ValueError(f"Invalid path expression {path!r}: must start with '$' or 'item'")

    pos = 0
    while pos < len(rest):
        match = _PATH_TOKEN.match(rest, pos)
        if match is None:
            raise ValueError(f"Invalid path expression {path!r}: unexpected {rest[pos:]!r}")
        if match.group("name") is not None:
            name = match.group("name")
            expr = expr._child(name, f"{expr._label}.{name}")
        elif match.group("index") is not None:
            index = int(match.group("index"))
            expr = expr._child(index, f"{expr._label}[{index}]")
        elif match.group("key") is not None:
            key = match.group("key")
            expr = expr._child(key, f"{expr._label}[{key!r}]")
        pos = match.end()
    return expr


def is_callback(value: Any) -> bool:
    """True for plain functions, bound methods and partials (callback-style arguments)."""
    return (
        inspect.isfunction(value)
        or inspect.ismethod(value)
        or isinstance(value, functools.partial)
    )


def evaluate(expr: LazyExpr) -> Any:
    """
    Evaluate a lazy expression against the open resolution scope.

    Raises:
        LazyEvaluationError: If no resolution is in progress
    """
    scope = _SCOPE.get()
    if scope is None:
        raise LazyEvaluationError(
            f"Lazy expression {expr._label} was read outside of operation argument "
            f"resolution. Pass it as an operation argument instead."
        )
    return expr._evaluate_fn(scope)


def _resolve(value: Any, state: Any) -> Any:
    if isinstance(value, LazyExpr):
        return evaluate(value)
    if is_callback(value):
        result = value(state)
        if isinstance(result, LazyExpr):
            raise LazyEvaluationError(
                f"Callback {getattr(value, '__name__', value)!r} returned lazy expression "
                f"{result._label}. Callbacks must read from the state they receive."
            )
        if inspect.iscoroutine(result):
            result.close()
            raise TypeError("Callback arguments must be synchronous functions")
        return result
    if isinstance(value, dict):
        return {k: _resolve(v, state) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(v, state) for v in value]
    if isinstance(value, tuple):
        return tuple(_resolve(v, state) for v in value)
    return value


def resolve(value: Any, state: Any, *, item: Any = NO_ITEM) -> Any:
    """
    Resolve lazy expressions and callback arguments in ``value``.

    Dicts, lists and tuples are resolved recursively. Lazy expressions are
    evaluated against ``state`` (and ``item``); callbacks are called with
    ``state``. Anything else, including nested operations, is returned as is.

    This is the only window in which lazy expressions can be evaluated.

    Args:
        value: An argument value
        state: The State the receiving operation is about to run with
        item: The current each() item, if any

    Returns:
        The resolved value
    """
    with resolution_scope(state, item):
        return _resolve(value, state)
