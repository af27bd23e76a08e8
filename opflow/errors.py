"""
Error classes for opflow.

Two families of errors exist:
- Structural errors (CompileError, NestedOperationError, LazyEvaluationError,
  LazyWriteError): the job itself is malformed. They are always fatal and are
  never routed to catch handlers.
- Runtime failures (OperationFailure, UnrecoverableFailure): an operation's
  underlying work failed while the pipeline was running.

Error handling contract:
- Operations signal failure by raising; there are no error values
- A catch handler that returns a State recovers; one that raises does not
- An UnrecoverableFailure halts the pipeline
"""

from typing import Any, Optional


class OpflowError(Exception):
    """Base exception for opflow."""
    pass


class CompileError(OpflowError):
    """Raised when a job script or pipeline declaration is invalid."""
    pass


class NestedOperationError(CompileError):
    """
    An operation was declared outside the top level of a job.

    Raised when an operation-producing call appears inside the body of a
    callback, or when a step is registered while another step is executing.

    Attributes:
        step: Name of the top-level step the violation belongs to
        lineno: Source line of the offending call (job scripts only)
    """

    def __init__(self, message: str, step: Optional[str] = None, lineno: Optional[int] = None):
        self.step = step
        self.lineno = lineno
        super().__init__(message)


class LazyEvaluationError(OpflowError):
    """A lazy expression was read outside of operation argument resolution."""
    pass


class LazyWriteError(OpflowError):
    """An assignment or deletion was attempted through a lazy expression."""
    pass


class StateContractError(OpflowError):
    """An operation or handler produced something that is not a State mapping."""
    pass


class OperationFailure(OpflowError):
    """
    An operation's underlying work failed.

    Attributes:
        step: Name of the failed step
        cause: The exception raised by the operation or handler
        state: The State at the point of failure
        index: Item index when the failure happened inside each()
    """

    def __init__(
        self,
        step: str,
        cause: BaseException,
        state: Any,
        index: Optional[int] = None,
    ):
        self.step = step
        self.cause = cause
        self.state = state
        self.index = index
        location = f"{step}[{index}]" if index is not None else step
        super().__init__(f"Step '{location}' failed: {cause}")
        self.__cause__ = cause


class UnrecoverableFailure(OperationFailure):
    """
    An OperationFailure that no catch handler recovered.

    Halts the pipeline. The engine reports it together with the last
    successfully produced State.
    """
    pass
