"""
opflow - Sequential stateful operation execution engine.

Jobs are pipelines of operations. Each operation receives the State produced
by the previous one and returns the next State:

    from opflow import Engine, Pipeline, S, item
    from opflow.adaptors.common import assign, cursor, each
    from my_project.adaptors.ehr import fetch_patients

    pipeline = Pipeline([
        cursor("yesterday"),
        fetch_patients(since=S.cursor),
        each("$.data.patients", assign("last_id", item.id)),
    ])
    state = Engine().run(pipeline, {"configuration": {...}})
"""

__version__ = "0.1.0"

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
from opflow.lazy import LazyExpr, S, item, parse_path, resolve, template
from opflow.operation import Operation, operation
from opflow.pipeline import Pipeline, validate_pipeline
from opflow.executor import Engine, RunResult, run

__all__ = [
    "__version__",
    # Errors
    "CompileError",
    "LazyEvaluationError",
    "LazyWriteError",
    "NestedOperationError",
    "OperationFailure",
    "OpflowError",
    "StateContractError",
    "UnrecoverableFailure",
    # Lazy expressions
    "LazyExpr",
    "S",
    "item",
    "parse_path",
    "resolve",
    "template",
    # Operations
    "Operation",
    "operation",
    # Execution
    "Pipeline",
    "validate_pipeline",
    "Engine",
    "RunResult",
    "run",
]
