"""
Executor - runs a Pipeline of operations over State.

The Engine implements:
- Validation of the pipeline before any State flows (top-level-only rule)
- Sequential execution: each step receives the State the previous step
  produced, and is awaited before the next one starts
- then/catch chain resolution per step (see opflow.chain.settle)
- Halting at the first unrecovered failure
- Step outcome tracking

Execution flow:
1. validate_pipeline() rejects callbacks that declare operations
2. The initial State is deep-copied so the caller's object is never mutated
3. The pipeline is sealed for the duration of the run
4. For each step:
   a. Resolve its lazy arguments against the current State
   b. Run the operation, then its then/catch handlers
   c. Record a StepOutcome
5. On an unrecovered failure, the remaining steps are marked SKIPPED and the
   run result carries the failure and the last State produced

The engine never writes run metadata into State; identical inputs give
identical final States.
"""

import asyncio
import copy
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

from opflow.chain import settle
from opflow.errors import UnrecoverableFailure
from opflow.operation import Operation
from opflow.pipeline import Pipeline, validate_pipeline
from opflow.runtime import RunOptions, run_options
from opflow.schemas import StepOutcome, StepStatus
from opflow.state import DEFAULT_REDACT_KEYS, to_output
from opflow.utils import format_duration, generate_run_id, sanitize_error_message

if TYPE_CHECKING:
    from opflow.config import OpflowConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RunResult:
    """
    Result of running a pipeline.

    Attributes:
        run_id: ULID of the run
        state: The last State successfully produced. The final State on
            success; the input State of the failing step otherwise.
        success: Whether every step completed (possibly after recovery)
        error: The failure that halted the run, if any
        outcomes: One StepOutcome per step, in pipeline order
        started_at: When the run started
        completed_at: When the run finished
    """
    run_id: str
    state: Any
    success: bool
    error: Optional[UnrecoverableFailure] = None
    outcomes: tuple[StepOutcome, ...] = field(default_factory=tuple)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def failed_step(self) -> Optional[str]:
        return self.error.step if self.error is not None else None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self, redact: Iterable[str] = DEFAULT_REDACT_KEYS) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "success": self.success,
            "state": to_output(self.state, redact),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        if self.error is not None:
            result["error"] = {
                "step": self.error.step,
                "type": type(self.error.cause).__name__,
                "message": sanitize_error_message(self.error.cause),
            }
            if self.error.index is not None:
                result["error"]["index"] = self.error.index
        return result


class Engine:
    """
    Execution engine for pipelines.

    Usage:
        engine = Engine()
        result = engine.execute(pipeline, {"configuration": {...}})
        if result.success:
            print(result.state)

        # Or raise on failure
        state = engine.run(pipeline, initial_state)

    Inside a running event loop, await execute_async()/run_async() instead.
    """

    def __init__(self, strict_state: bool = True):
        """
        Initialize the engine.

        Args:
            strict_state: Treat a step that returns a non-mapping as failed
                (default). When false, the previous State is kept and a
                warning is logged.
        """
        self.strict_state = strict_state

    @classmethod
    def from_config(cls, config: "OpflowConfig") -> "Engine":
        return cls(strict_state=config.strict_state)

    def execute(
        self,
        pipeline: Union[Pipeline, Iterable[Operation]],
        state: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        """Synchronous wrapper around execute_async()."""
        return asyncio.run(self.execute_async(pipeline, state))

    async def execute_async(
        self,
        pipeline: Union[Pipeline, Iterable[Operation]],
        state: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        """
        Run every step of ``pipeline`` in order.

        Args:
            pipeline: The steps to run
            state: Initial State (defaults to an empty dict)

        Returns:
            RunResult with the final State and step outcomes

        Raises:
            TypeError: If the initial State is not a mapping
            NestedOperationError: If a callback declares operations
            LazyEvaluationError, LazyWriteError: On misuse of lazy expressions
        """
        if not isinstance(pipeline, Pipeline):
            pipeline = Pipeline(pipeline)
        if state is None:
            state = {}
        if not isinstance(state, Mapping):
            raise TypeError(f"Initial state must be a mapping, got {type(state).__name__}")

        validate_pipeline(pipeline)

        run_id = generate_run_id()
        started_at = _utcnow()
        current: Any = copy.deepcopy(state)
        outcomes: list[StepOutcome] = []
        error: Optional[UnrecoverableFailure] = None
        total = len(pipeline)

        logger.info(f"Run {run_id} started: '{pipeline.name}' ({total} steps)")

        with pipeline.sealed(), run_options(RunOptions(strict_state=self.strict_state)):
            for index, op in enumerate(pipeline.steps, start=1):
                if error is not None:
                    outcomes.append(StepOutcome(index=index, name=op.name, status=StepStatus.SKIPPED))
                    continue

                step_started = _utcnow()
                clock = time.monotonic()
                logger.debug(f"Step {index}/{total} '{op.name}' started", extra={"step": op.name})
                try:
                    settled = await settle(op, current)
                except UnrecoverableFailure as e:
                    error = e
                    outcomes.append(StepOutcome(
                        index=index,
                        name=op.name,
                        status=StepStatus.FAILED,
                        started_at=step_started,
                        completed_at=_utcnow(),
                        error={
                            "type": type(e.cause).__name__,
                            "message": sanitize_error_message(e.cause),
                        },
                    ))
                    logger.error(
                        f"Step {index}/{total} '{op.name}' failed: "
                        f"{type(e.cause).__name__}: {sanitize_error_message(e.cause)}",
                        extra={"step": op.name},
                    )
                    continue

                current = settled.state
                outcomes.append(StepOutcome(
                    index=index,
                    name=op.name,
                    status=StepStatus.COMPLETED,
                    started_at=step_started,
                    completed_at=_utcnow(),
                    recovered=settled.recovered,
                ))
                logger.info(
                    f"Step {index}/{total} '{op.name}' completed "
                    f"in {format_duration(time.monotonic() - clock)}",
                    extra={"step": op.name},
                )

        completed_at = _utcnow()
        if error is None:
            logger.info(f"Run {run_id} completed")
        else:
            logger.error(f"Run {run_id} halted at step '{error.step}'")

        return RunResult(
            run_id=run_id,
            state=current,
            success=error is None,
            error=error,
            outcomes=tuple(outcomes),
            started_at=started_at,
            completed_at=completed_at,
        )

    def run(
        self,
        pipeline: Union[Pipeline, Iterable[Operation]],
        state: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """
        Run ``pipeline`` and return the final State.

        Raises:
            UnrecoverableFailure: If a step failed and was not recovered
        """
        return asyncio.run(self.run_async(pipeline, state))

    async def run_async(
        self,
        pipeline: Union[Pipeline, Iterable[Operation]],
        state: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        result = await self.execute_async(pipeline, state)
        if result.error is not None:
            raise result.error
        return result.state


def run(
    pipeline: Union[Pipeline, Iterable[Operation]],
    state: Optional[Mapping[str, Any]] = None,
    strict_state: bool = True,
) -> Any:
    """Run ``pipeline`` with a default Engine and return the final State."""
    return Engine(strict_state=strict_state).run(pipeline, state)
