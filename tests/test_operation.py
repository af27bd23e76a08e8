"""Tests for @operation factories and Operation descriptors.

Tests cover:
- Declaring records arguments and runs nothing
- Arity and option checks at declaration time
- then/catch return new descriptors
- invoke() resolves arguments against the State it receives
- Declaring an operation while one is executing is rejected
"""

import asyncio

import pytest

from opflow.chain import HandlerKind
from opflow.errors import NestedOperationError
from opflow.lazy import LazyExpr, S
from opflow.operation import Operation, is_operation_factory, operation


@operation
def set_value(state, key, value):
    return {**state, key: value}


@operation(name="tagged", raw=("callback",))
def tag_with(state, callback):
    return {**state, "tag": callback}


@operation(paths=("source",))
def pick(state, source):
    return {**state, "picked": source}


@operation
async def set_later(state, key, value):
    await asyncio.sleep(0)
    return {**state, key: value}


# =============================================================================
# Declaration
# =============================================================================


class TestDeclaration:
    """Tests for calling operation factories."""

    def test_factory_returns_descriptor(self):
        """Calling a factory returns an Operation."""
        op = set_value("a", 1)
        assert isinstance(op, Operation)
        assert op.name == "set_value"
        assert op.args == {"key": "a", "value": 1}

    def test_declaring_runs_nothing(self):
        """The implementation is not called at declaration."""
        calls = []

        @operation
        def record(state):
            calls.append(state)
            return state

        record()
        assert calls == []

    def test_custom_name(self):
        """name= overrides the step name."""
        assert tag_with(print).name == "tagged"
        assert tag_with.operation_name == "tagged"

    def test_arity_checked_at_declaration(self):
        """Missing arguments fail when declaring."""
        with pytest.raises(TypeError, match="set_value"):
            set_value("a")

    def test_unknown_keyword_rejected(self):
        """Unknown keyword arguments fail when declaring."""
        with pytest.raises(TypeError):
            set_value("a", 1, extra=2)

    def test_factory_is_marked(self):
        """Factories are recognisable, other callables are not."""
        assert is_operation_factory(set_value)
        assert not is_operation_factory(set_value.impl)
        assert not is_operation_factory(lambda state: state)
        assert not is_operation_factory(S)

    def test_state_parameter_required(self):
        """The implementation must take the State first."""
        with pytest.raises(TypeError, match="first positional parameter"):
            operation(lambda: None)

    def test_unknown_raw_parameter(self):
        """raw= must name real parameters."""
        with pytest.raises(TypeError, match="nope"):
            operation(raw=("nope",))(lambda state: state)

    def test_path_strings_parsed(self):
        """String values of path parameters become lazy expressions."""
        op = pick("$.data.x")
        assert isinstance(op.args["source"], LazyExpr)
        assert pick("plain").args["source"] == "plain"


class TestChaining:
    """Tests for then/catch on descriptors."""

    def test_then_returns_new_descriptor(self):
        """then() leaves the original untouched."""
        op = set_value("a", 1)
        chained = op.then(lambda state: state)
        assert chained is not op
        assert len(op.chain) == 0
        assert len(chained.chain) == 1
        assert chained.chain.handlers[0].kind is HandlerKind.ON_SUCCESS

    def test_handlers_kept_in_order(self):
        """Handlers are appended in attachment order."""
        op = set_value("a", 1).then(lambda s: s).catch(lambda e, s: s).then(lambda s: s)
        kinds = [h.kind for h in op.chain]
        assert kinds == [HandlerKind.ON_SUCCESS, HandlerKind.ON_FAILURE, HandlerKind.ON_SUCCESS]

    def test_then_rejects_operation(self):
        """Handlers must be functions, not operations."""
        with pytest.raises(TypeError, match="top-level"):
            set_value("a", 1).then(set_value("b", 2))

    def test_catch_rejects_non_callable(self):
        """catch() needs a callable."""
        with pytest.raises(TypeError):
            set_value("a", 1).catch("nope")

    def test_summary(self):
        """summary() shows arguments and handlers."""
        def handle(error, state):
            return state

        text = set_value("a", 1).catch(handle).summary()
        assert text.startswith("set_value(key='a', value=1).catch(<fn ")
        assert "handle" in text


# =============================================================================
# Invocation
# =============================================================================


class TestInvoke:
    """Tests for Operation.invoke()."""

    def test_resolves_against_received_state(self):
        """Lazy arguments read the State passed to invoke()."""
        op = set_value("copy", S.name)
        assert asyncio.run(op.invoke({"name": "n"})) == {"name": "n", "copy": "n"}

    def test_raw_arguments_passed_through(self):
        """raw parameters are not resolved."""
        def callback(state):
            return "called"

        result = asyncio.run(tag_with(callback).invoke({}))
        assert result["tag"] is callback

    def test_async_implementation_awaited(self):
        """Async implementations are awaited."""
        assert asyncio.run(set_later("a", 1).invoke({})) == {"a": 1}

    def test_path_argument_resolved(self):
        """Parsed path arguments resolve like any lazy expression."""
        result = asyncio.run(pick("$.data.x").invoke({"data": {"x": 5}}))
        assert result["picked"] == 5

    def test_declaring_while_executing_rejected(self):
        """An operation declared inside a running operation fails."""
        @operation
        def sneaky(state):
            set_value("a", 1)
            return state

        with pytest.raises(NestedOperationError) as exc_info:
            asyncio.run(sneaky().invoke({}))
        assert exc_info.value.step == "sneaky"
        assert "set_value" in str(exc_info.value)
