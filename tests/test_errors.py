"""Tests for opflow error classes.

Tests cover:
- Error hierarchy
- NestedOperationError attributes
- OperationFailure messages and chaining
- The runtime declaration guard
"""

import pytest

from opflow.config import ConfigError
from opflow.errors import (
    CompileError,
    LazyEvaluationError,
    LazyWriteError,
    NestedOperationError,
    OperationFailure,
    OpflowError,
    StateContractError,
    UnrecoverableFailure,
)
from opflow.registry import JobNotFoundError, JobValidationError
from opflow.runtime import current_step, executing, guard_declaration, step_path


class TestHierarchy:
    """Tests for the error hierarchy."""

    @pytest.mark.parametrize("error_class", [
        CompileError,
        NestedOperationError,
        LazyEvaluationError,
        LazyWriteError,
        StateContractError,
        OperationFailure,
        UnrecoverableFailure,
        ConfigError,
        JobNotFoundError,
        JobValidationError,
    ])
    def test_is_opflow_error(self, error_class):
        """Every opflow error derives from OpflowError."""
        assert issubclass(error_class, OpflowError)

    def test_nested_is_compile_error(self):
        """NestedOperationError is a structural CompileError."""
        assert issubclass(NestedOperationError, CompileError)

    def test_unrecoverable_is_operation_failure(self):
        """UnrecoverableFailure is an OperationFailure."""
        assert issubclass(UnrecoverableFailure, OperationFailure)


class TestNestedOperationError:
    """Tests for NestedOperationError."""

    def test_attributes(self):
        error = NestedOperationError("nested", step="fn", lineno=3)
        assert str(error) == "nested"
        assert error.step == "fn"
        assert error.lineno == 3

    def test_defaults(self):
        error = NestedOperationError("nested")
        assert error.step is None
        assert error.lineno is None


class TestOperationFailure:
    """Tests for OperationFailure."""

    def test_message_and_cause(self):
        cause = ValueError("bad input")
        failure = OperationFailure("fetch", cause, {"a": 1})
        assert str(failure) == "Step 'fetch' failed: bad input"
        assert failure.cause is cause
        assert failure.__cause__ is cause
        assert failure.state == {"a": 1}
        assert failure.index is None

    def test_index_in_message(self):
        failure = UnrecoverableFailure("post", RuntimeError("503"), {}, index=4)
        assert str(failure) == "Step 'post[4]' failed: 503"
        assert failure.index == 4


class TestRuntimeGuard:
    """Tests for the declaration guard."""

    def test_no_step_outside_execution(self):
        assert current_step() is None
        guard_declaration("assign")

    def test_step_path(self):
        with executing("each"):
            with executing("post"):
                assert current_step() == "post"
                assert step_path() == "each > post"
        assert current_step() is None

    def test_guard_raises_while_executing(self):
        with executing("fn"):
            with pytest.raises(NestedOperationError, match="step 'fn' was executing") as exc_info:
                guard_declaration("assign")
        assert exc_info.value.step == "fn"
