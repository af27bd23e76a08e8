"""Tests for the Engine.

Tests cover:
- Steps run once each, in declaration order, each awaited before the next
- Lazy expressions read the State produced by the previous step
- Validation happens before any step runs
- catch handlers decide between continuing and halting
- Failure results, step outcomes and RunResult serialization
- The State contract in strict and lenient mode
- Idempotence
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from opflow.adaptors import common
from opflow.adaptors.common import append, assign, cursor, fn
from opflow.config import OpflowConfig
from opflow.errors import LazyEvaluationError, NestedOperationError, StateContractError, UnrecoverableFailure
from opflow.executor import Engine, RunResult, run
from opflow.lazy import S
from opflow.operation import operation
from opflow.pipeline import Pipeline
from opflow.schemas import StepStatus


# =============================================================================
# Fixtures
# =============================================================================


@operation
def record(state, label):
    return {**state, "order": [*state.get("order", []), label]}


@operation
def boom(state, message="boom"):
    raise RuntimeError(message)


@operation
def returns_none(state):
    return None


def rethrow(error, state):
    raise error


@pytest.fixture
def fetch_patients():
    """An adaptor-style operation backed by a mocked external call."""
    client = AsyncMock(return_value=[{"id": 1}, {"id": 2}])

    @operation
    async def fetch(state, since):
        patients = await client(since=since)
        return {**state, "data": {"patients": patients, "since": since}}

    fetch.client = client
    return fetch


# =============================================================================
# Sequential execution
# =============================================================================


class TestSequentialExecution:
    """Tests for ordering and State threading."""

    def test_steps_run_in_declaration_order(self, engine):
        """Each step runs once, in order."""
        result = engine.execute(Pipeline([record("a"), record("b"), record("c")]), {})
        assert result.success
        assert result.state == {"order": ["a", "b", "c"]}

    def test_output_is_left_to_right_composition(self, engine):
        """The final State equals composing the steps' functions."""
        initial = {"x": 1}
        expected = record.impl(record.impl(assign.impl(initial, "y", 2), "first"), "second")
        result = engine.execute([assign("y", 2), record("first"), record("second")], initial)
        assert result.state == expected

    def test_lazy_reads_previous_step_state(self, engine):
        """A lazy expression sees the State of the previous step, not the initial one."""
        pipeline = Pipeline([
            assign("cursor", "2024-04-08"),
            assign("seen", S.cursor),
        ])
        result = engine.execute(pipeline, {"cursor": "yesterday"})
        assert result.state["seen"] == "2024-04-08"

    def test_first_step_reads_initial_state(self, engine):
        """The first step resolves against the initial State."""
        result = engine.execute([assign("seen", S.cursor)], {"cursor": "yesterday"})
        assert result.state == {"cursor": "yesterday", "seen": "yesterday"}

    def test_cursor_feeds_next_step(self, engine, frozen_clock, fetch_patients):
        """A cursor keyword resolved in one step is read by the next."""
        pipeline = Pipeline([cursor("yesterday"), fetch_patients(since=S.cursor)])
        result = engine.execute(pipeline, {})
        assert result.state["cursor"] == "2024-04-08T00:00:00.000Z"
        fetch_patients.client.assert_awaited_once_with(since="2024-04-08T00:00:00.000Z")

    def test_async_steps_settle_before_next_starts(self, engine):
        """A suspended step finishes before the next one begins."""
        events = []

        @operation
        async def slow(state, label, delay):
            events.append(f"start:{label}")
            await asyncio.sleep(delay)
            events.append(f"end:{label}")
            return state

        engine.execute([slow("a", 0.02), slow("b", 0)], {})
        assert events == ["start:a", "end:a", "start:b", "end:b"]

    def test_append_scenario(self, engine):
        """results=[] then append 1 then append 2 gives [1, 2]."""
        pipeline = Pipeline([assign("results", []), append("results", 1), append("results", 2)])
        assert engine.run(pipeline, {}) == {"results": [1, 2]}

    def test_empty_pipeline_returns_initial_state(self, engine):
        """No steps, no change."""
        initial = {"a": {"b": 1}}
        result = engine.execute(Pipeline(), initial)
        assert result.success
        assert result.state == initial
        assert result.outcomes == ()

    def test_initial_state_not_mutated(self, engine):
        """The caller's State object is never changed."""
        initial = {"nested": {"items": [1]}}

        def mutate(state):
            state["nested"]["items"].append(2)
            return state

        engine.execute([fn(mutate)], initial)
        assert initial == {"nested": {"items": [1]}}

    def test_default_state_is_empty(self, engine):
        """State defaults to an empty dict."""
        assert engine.run([assign("a", 1)]) == {"a": 1}

    def test_rejects_non_mapping_state(self, engine):
        """The initial State must be a mapping."""
        with pytest.raises(TypeError, match="mapping"):
            engine.execute([assign("a", 1)], ["not", "a", "mapping"])

    def test_execute_async(self, engine):
        """execute_async() can be awaited from a running loop."""
        result = asyncio.run(engine.execute_async([assign("a", 1)], {}))
        assert result.state == {"a": 1}


# =============================================================================
# Top-level-only rule
# =============================================================================


class TestTopLevelRule:
    """Tests for nested declarations."""

    def test_validation_before_any_step(self, engine):
        """A nested declaration fails before the first step runs."""
        calls = []

        @operation
        def first(state):
            calls.append("first")
            return state

        pipeline = Pipeline([first(), fn(lambda state: assign("x", 1))])
        with pytest.raises(NestedOperationError) as exc_info:
            engine.execute(pipeline, {})
        assert calls == []
        assert exc_info.value.step == "fn"

    def test_runtime_guard(self, engine):
        """A declaration the scan cannot see is still rejected while running."""
        pipeline = Pipeline([fn(lambda state: getattr(common, "assign")("x", 1))])
        with pytest.raises(NestedOperationError) as exc_info:
            engine.execute(pipeline, {})
        assert exc_info.value.step == "fn"

    def test_sealed_during_run(self, engine):
        """Steps cannot be added to a running pipeline."""
        extra = assign("z", 1)
        pipeline = Pipeline(name="sealed")
        pipeline.add(fn(lambda state: pipeline.add(extra) and state))
        with pytest.raises(NestedOperationError, match="while it is running"):
            engine.execute(pipeline, {})
        assert not pipeline.is_sealed


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Tests for catch handlers and halting."""

    def test_recovering_catch_continues(self, engine):
        """A catch that returns a State lets later steps run with it."""
        pipeline = Pipeline([
            record("a"),
            boom().catch(lambda error, state: {**state, "recovered": str(error)}),
            record("c"),
        ])
        result = engine.execute(pipeline, {})
        assert result.success
        assert result.state == {"order": ["a", "c"], "recovered": "boom"}
        assert result.outcomes[1].recovered is True

    def test_raising_catch_halts(self, engine):
        """A catch that re-raises stops the pipeline."""
        pipeline = Pipeline([record("a"), boom().catch(rethrow), record("c")])
        result = engine.execute(pipeline, {})
        assert not result.success
        assert result.state == {"order": ["a"]}
        assert [o.status for o in result.outcomes] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        ]

    def test_uncaught_failure_halts(self, engine):
        """An uncaught failure reports the step, cause and last State."""
        pipeline = Pipeline([record("a"), boom("adaptor down"), record("c")])
        result = engine.execute(pipeline, {"configuration": {"token": "t"}})
        assert not result.success
        assert result.failed_step == "boom"
        assert isinstance(result.error, UnrecoverableFailure)
        assert isinstance(result.error.cause, RuntimeError)
        assert result.state == {"configuration": {"token": "t"}, "order": ["a"]}
        assert result.outcomes[1].error == {"type": "RuntimeError", "message": "adaptor down"}
        assert result.outcomes[2].started_at is None

    def test_run_raises_failure(self, engine):
        """run() raises the UnrecoverableFailure."""
        with pytest.raises(UnrecoverableFailure, match="Step 'boom' failed: nope"):
            engine.run([boom("nope")], {})

    def test_module_level_run(self):
        """opflow.executor.run uses a default engine."""
        assert run([assign("a", 1)], {"b": 2}) == {"a": 1, "b": 2}

    def test_no_implicit_continue(self, engine):
        """Without a catch, later steps never run."""
        calls = []

        @operation
        def later(state):
            calls.append("later")
            return state

        engine.execute([boom(), later()], {})
        assert calls == []


# =============================================================================
# State contract
# =============================================================================


class TestStateContract:
    """Tests for steps that return non-mappings."""

    def test_strict_mode_fails_step(self, engine):
        """In strict mode the step fails with StateContractError."""
        result = engine.execute([returns_none(), record("b")], {})
        assert not result.success
        assert isinstance(result.error.cause, StateContractError)

    def test_strict_violation_is_catchable(self, engine):
        """A catch handler can repair a contract violation."""
        result = engine.execute([returns_none().catch(lambda e, s: s), record("b")], {"a": 1})
        assert result.success
        assert result.state == {"a": 1, "order": ["b"]}

    def test_lenient_mode_keeps_state(self, lenient_engine):
        """In lenient mode the previous State is kept."""
        result = lenient_engine.execute([record("a"), returns_none(), record("c")], {})
        assert result.success
        assert result.state == {"order": ["a", "c"]}

    def test_lazy_expression_returned_by_callback(self, engine):
        """A callback cannot smuggle an unresolved expression into State."""
        with pytest.raises(LazyEvaluationError, match="fn"):
            engine.run([assign("x", 1), fn(lambda s: {**s, "y": S.x})], {})

    def test_lazy_expression_escape_not_catchable(self, engine):
        """catch handlers never see the escape."""
        handled = []
        step = fn(lambda s: {**s, "y": S.x}).catch(lambda e, s: handled.append(e) or s)
        with pytest.raises(LazyEvaluationError):
            engine.execute([step], {"x": 1})
        assert handled == []

    def test_from_config(self):
        """Engine.from_config reads strict_state."""
        assert Engine.from_config(OpflowConfig(strict_state=False)).strict_state is False


# =============================================================================
# Results
# =============================================================================


class TestRunResult:
    """Tests for RunResult and outcomes."""

    def test_outcomes_per_step(self, engine):
        """One outcome per step with timestamps."""
        result = engine.execute([record("a"), record("b")], {})
        assert [o.step_id for o in result.outcomes] == ["1:record", "2:record"]
        assert all(o.status == StepStatus.COMPLETED for o in result.outcomes)
        assert all(o.completed_at >= o.started_at for o in result.outcomes)
        assert len(result.run_id) == 26
        assert result.duration_ms >= 0

    def test_to_dict_redacts_configuration(self, engine):
        """to_dict() drops the configuration key."""
        result = engine.execute([boom("bad")], {"configuration": {"password": "x"}, "a": 1})
        data = result.to_dict()
        assert data["state"] == {"a": 1}
        assert data["success"] is False
        assert data["error"] == {"step": "boom", "type": "RuntimeError", "message": "bad"}
        assert data["outcomes"][0]["status"] == "failed"

    def test_result_is_frozen(self, engine):
        """RunResult cannot be modified."""
        result = engine.execute([], {})
        assert isinstance(result, RunResult)
        with pytest.raises(AttributeError):
            result.success = False

    def test_logs_steps(self, engine, caplog):
        """Step completion is logged."""
        caplog.set_level(logging.INFO, logger="opflow")
        engine.execute([assign("a", 1)], {})
        assert "Step 1/1 'assign' completed" in caplog.text


# =============================================================================
# Idempotence
# =============================================================================


class TestIdempotence:
    """Tests for repeated runs."""

    def test_same_input_same_output(self, engine, frozen_clock, fetch_patients):
        """Identical inputs and mocked results give identical States."""
        pipeline = Pipeline([
            cursor("yesterday"),
            fetch_patients(since=S.cursor),
            append("ids", S.data.patients[0].id),
        ])
        initial = {"configuration": {"base_url": "https://ehr.example"}}
        first = engine.execute(pipeline, initial)
        second = engine.execute(pipeline, initial)
        assert first.state == second.state
        assert first.to_dict()["state"] == second.to_dict()["state"]
        assert first.run_id != second.run_id
