"""Tests for Pipeline and validate_pipeline().

Tests cover:
- Building pipelines from operations
- Sealed pipelines reject new steps
- Operations declared inside callbacks are found at every depth:
  fn callbacks, then/catch handlers, each() sub-operations, closures,
  module attributes and helper functions
"""

import math

import pytest

from opflow.adaptors import common
from opflow.adaptors.common import append, assign, each, fn, log
from opflow.errors import NestedOperationError
from opflow.lazy import S
from opflow.pipeline import Pipeline, validate_pipeline


def declares_in_helper(state):
    return assign("x", 1)


def calls_helper(state):
    return declares_in_helper(state)


def plain_helper(state):
    return {**state, "plain": True}


def build_callback(factory):
    return lambda state: factory("x", 1)


# =============================================================================
# Pipeline
# =============================================================================


class TestPipeline:
    """Tests for the Pipeline container."""

    def test_steps_kept_in_order(self):
        """Steps are kept in declaration order."""
        pipeline = Pipeline([assign("a", 1), assign("b", 2)], name="two")
        assert len(pipeline) == 2
        assert [op.args["key"] for op in pipeline] == ["a", "b"]
        assert pipeline.name == "two"

    def test_default_name(self):
        """Pipelines are named "pipeline" by default."""
        assert Pipeline().name == "pipeline"

    def test_rejects_non_operations(self):
        """Only operations can be steps."""
        with pytest.raises(TypeError, match="operation factory"):
            Pipeline([lambda state: state])

    def test_sealed_rejects_add(self):
        """A sealed pipeline refuses new steps."""
        pipeline = Pipeline()
        with pipeline.sealed():
            assert pipeline.is_sealed
            with pytest.raises(NestedOperationError):
                pipeline.add(assign("a", 1))
        assert not pipeline.is_sealed
        pipeline.add(assign("a", 1))
        assert len(pipeline) == 1

    def test_describe(self):
        """describe() lists steps from 1."""
        described = Pipeline([assign("a", 1), log("hi")]).describe()
        assert described[0]["index"] == 1
        assert described[1]["name"] == "log"
        assert described[0]["arguments"] == {"key": "'a'", "value": "1"}


# =============================================================================
# Validation
# =============================================================================


class TestValidatePipeline:
    """Tests for the top-level-only check."""

    def test_accepts_plain_callbacks(self):
        """Callbacks that only read State are fine."""
        pipeline = Pipeline([
            fn(lambda state: {**state, "a": 1}),
            assign("b", S.a),
            fn(plain_helper),
            each("$.items", append("seen", lambda state: state["data"])),
        ])
        validate_pipeline(pipeline)

    def test_empty_pipeline(self):
        """An empty pipeline is valid."""
        validate_pipeline(Pipeline())

    def test_rejects_operation_in_fn_callback(self):
        """An operation declared in an fn callback names the step."""
        pipeline = Pipeline([assign("a", 1), fn(lambda state: assign("b", 2))])
        with pytest.raises(NestedOperationError) as exc_info:
            validate_pipeline(pipeline)
        assert exc_info.value.step == "fn"
        assert "Step 2" in str(exc_info.value)
        assert "'assign'" in str(exc_info.value)

    def test_rejects_operation_in_then_handler(self):
        """then handlers are scanned."""
        pipeline = Pipeline([assign("a", 1).then(lambda state: log("x"))])
        with pytest.raises(NestedOperationError) as exc_info:
            validate_pipeline(pipeline)
        assert exc_info.value.step == "assign"

    def test_rejects_operation_in_catch_handler(self):
        """catch handlers are scanned."""
        pipeline = Pipeline([assign("a", 1).catch(lambda error, state: assign("b", 2))])
        with pytest.raises(NestedOperationError):
            validate_pipeline(pipeline)

    def test_rejects_operation_in_each_sub_operation(self):
        """Sub-operations of each() are scanned."""
        pipeline = Pipeline([each("$.items", fn(lambda state: assign("x", 1)))])
        with pytest.raises(NestedOperationError) as exc_info:
            validate_pipeline(pipeline)
        assert exc_info.value.step == "each"

    def test_rejects_nested_each_depth(self):
        """Callbacks two each() levels down are scanned."""
        inner = each("item.children", fn(lambda state: log("deep")))
        pipeline = Pipeline([each("$.items", inner)])
        with pytest.raises(NestedOperationError):
            validate_pipeline(pipeline)

    def test_rejects_module_attribute(self):
        """Factories reached through an adaptor module are found."""
        pipeline = Pipeline([fn(lambda state: common.merge({}))])
        with pytest.raises(NestedOperationError, match="merge"):
            validate_pipeline(pipeline)

    def test_rejects_through_helpers(self):
        """Helper functions called by a callback are scanned."""
        pipeline = Pipeline([fn(calls_helper)])
        with pytest.raises(NestedOperationError, match="declares_in_helper"):
            validate_pipeline(pipeline)

    def test_rejects_closure_reference(self):
        """Factories captured in closures are found."""
        pipeline = Pipeline([fn(build_callback(assign))])
        with pytest.raises(NestedOperationError):
            validate_pipeline(pipeline)

    def test_rejects_callback_in_dict_argument(self):
        """Callbacks nested in argument containers are scanned."""
        pipeline = Pipeline([assign("a", {"compute": lambda state: log("x")})])
        with pytest.raises(NestedOperationError):
            validate_pipeline(pipeline)

    def test_same_name_attribute_not_flagged(self):
        """math.log is not the log operation."""
        pipeline = Pipeline([fn(lambda state: {**state, "n": math.log(state["x"])})])
        validate_pipeline(pipeline)

    def test_accepts_list_of_operations(self):
        """A plain list of operations can be validated."""
        validate_pipeline([assign("a", 1)])
        with pytest.raises(NestedOperationError):
            validate_pipeline([fn(lambda state: assign("b", 2))])
