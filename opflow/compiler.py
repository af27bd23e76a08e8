"""
Compiler - Turn a job script into a validated Pipeline.

A job script is Python source whose top-level expression statements are the
steps, in order:

    cursor("yesterday")
    http.get("/patients", params={"since": S.cursor}).catch(lambda err, s: s)
    each("$.data.patients", assign("last_id", item.id))

Allowed at the top level:
- import / from ... import
- def / async def (including @operation implementations)
- assignments that declare no operations
- docstrings and pass
- step statements: an operation call, optionally chained with
  .then(...) / .catch(...)

Compilation:
1. Parse the source (syntax errors become CompileError)
2. Run the imports, so imported adaptors and factories are known
3. Check every statement. An operation call inside a lambda or def body
   raises NestedOperationError; one anywhere else outside a step statement
   raises CompileError
4. Run the statements in order, collecting each step's Operation
5. validate_pipeline() scans the collected callbacks
"""

import ast
import builtins
import logging
from pathlib import Path
from types import ModuleType
from typing import Any, Optional, Union

from opflow.adaptors import Adaptor, AdaptorRegistry
from opflow.adaptors.common import data_value
from opflow.errors import CompileError, NestedOperationError, OpflowError
from opflow.lazy import S, item, parse_path, template
from opflow.operation import Operation, is_operation_factory
from opflow.pipeline import Pipeline, validate_pipeline
from opflow.registry import JobRegistry

logger = logging.getLogger(__name__)

CHAIN_METHODS = ("then", "catch")
JOB_MODULE_NAME = "__opflow_job__"


def _is_namespace(value: Any) -> bool:
    return isinstance(value, (ModuleType, Adaptor))


def _dotted(node: ast.expr) -> Optional[list[str]]:
    """Return ["a", "b", "c"] for the expression a.b.c, else None."""
    parts = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return list(reversed(parts))


def _is_operation_decorator(node: ast.expr) -> bool:
    if isinstance(node, ast.Call):
        node = node.func
    parts = _dotted(node)
    return bool(parts) and parts[-1] == "operation"


class _OperationCalls(ast.NodeVisitor):
    """Collect operation calls in a statement, noting which sit inside a function body."""

    def __init__(self, compiler_scope: "_Scope"):
        self.scope = compiler_scope
        self.depth = 0
        self.calls: list[tuple[str, ast.Call, bool]] = []

    def visit_Call(self, node: ast.Call) -> None:
        name = self.scope.operation_name(node)
        if name is not None:
            self.calls.append((name, node, self.depth > 0))
        self.generic_visit(node)

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self.visit(node.args)
        self.depth += 1
        self.visit(node.body)
        self.depth -= 1

    def _visit_function(self, node: Union[ast.FunctionDef, ast.AsyncFunctionDef]) -> None:
        for decorator in node.decorator_list:
            self.visit(decorator)
        self.visit(node.args)
        self.depth += 1
        for stmt in node.body:
            self.visit(stmt)
        self.depth -= 1

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function


class _Scope:
    """Names visible to a job script, as far as they can be known before it runs."""

    def __init__(self, namespace: dict[str, Any]):
        self.namespace = namespace
        self.local_factories: set[str] = set()

    def lookup(self, parts: list[str]) -> Any:
        if parts[0] not in self.namespace:
            return None
        value = self.namespace[parts[0]]
        for part in parts[1:]:
            if not _is_namespace(value):
                return None
            value = getattr(value, part, None)
        return value

    def operation_name(self, call: ast.Call) -> Optional[str]:
        parts = _dotted(call.func)
        if not parts:
            return None
        if len(parts) == 1 and parts[0] in self.local_factories:
            return parts[0]
        value = self.lookup(parts)
        if is_operation_factory(value):
            return value.operation_name
        return None

    def learn(self, stmt: ast.stmt) -> None:
        """Record script-level names that will hold operation factories."""
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
            if any(_is_operation_decorator(d) for d in stmt.decorator_list):
                self.local_factories.add(stmt.name)
        elif isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
            target = stmt.targets[0]
            parts = _dotted(stmt.value)
            if isinstance(target, ast.Name) and parts:
                if (len(parts) == 1 and parts[0] in self.local_factories) or is_operation_factory(
                    self.lookup(parts)
                ):
                    self.local_factories.add(target.id)


def _chain_base(node: ast.expr) -> Optional[ast.Call]:
    """For x(...).then(f).catch(g) return the x(...) call."""
    while (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and node.func.attr in CHAIN_METHODS
    ):
        node = node.func.value
    return node if isinstance(node, ast.Call) else None


class Compiler:
    """
    Compiler for job scripts.

    Usage:
        compiler = Compiler(AdaptorRegistry.create_default())
        pipeline = compiler.compile(source, filename="sync.py")
        pipeline = compiler.compile_file("jobs/sync.py")

        # Or through a JobRegistry
        compiler = Compiler(adaptors, registry=JobRegistry("jobs"))
        pipeline = compiler.compile_job("sync")
    """

    def __init__(
        self,
        adaptors: Optional[AdaptorRegistry] = None,
        registry: Optional[JobRegistry] = None,
    ):
        """
        Initialize the compiler.

        Args:
            adaptors: Adaptors available to scripts (defaults to common only)
            registry: JobRegistry used by compile_job
        """
        self.adaptors = adaptors or AdaptorRegistry.create_default()
        self._registry = registry

    def namespace(self, filename: str = "<job>") -> dict[str, Any]:
        """Build the globals a job script runs with."""
        namespace: dict[str, Any] = {
            "__name__": JOB_MODULE_NAME,
            "__file__": filename,
            "__builtins__": builtins,
        }
        if self.adaptors.has("common"):
            namespace.update(self.adaptors.get("common").operations)
        namespace.update(self.adaptors.namespace())
        namespace.update(
            S=S,
            item=item,
            template=template,
            parse_path=parse_path,
            data_value=data_value,
        )
        return namespace

    def compile(self, source: str, filename: str = "<job>", name: Optional[str] = None) -> Pipeline:
        """
        Compile job script source into a validated Pipeline.

        Args:
            source: The script's Python source
            filename: Name used in error messages
            name: Pipeline name (defaults to the filename stem)

        Returns:
            The Pipeline of top-level steps

        Raises:
            CompileError: If the script is invalid
            NestedOperationError: If an operation is declared inside a callback
        """
        try:
            tree = ast.parse(source, filename=filename)
        except SyntaxError as e:
            raise CompileError(f"{filename}:{e.lineno}: invalid syntax: {e.msg}") from e

        namespace = self.namespace(filename)

        for stmt in tree.body:
            if isinstance(stmt, (ast.Import, ast.ImportFrom)):
                self._exec(stmt, namespace, filename)

        scope = _Scope(namespace)
        for stmt in tree.body:
            scope.learn(stmt)
        steps = [self._check(stmt, scope, filename) for stmt in tree.body]

        pipeline = Pipeline(name=name or Path(filename).stem)
        for stmt, step in zip(tree.body, steps):
            if isinstance(stmt, (ast.Import, ast.ImportFrom)):
                continue
            if step is None:
                self._exec(stmt, namespace, filename)
                continue
            value = self._eval(stmt.value, namespace, filename)
            if not isinstance(value, Operation):
                raise CompileError(
                    f"{filename}:{stmt.lineno}: step '{step}' did not produce an operation "
                    f"(got {type(value).__name__})"
                )
            pipeline.add(value)

        validate_pipeline(pipeline)
        logger.debug(f"Compiled {filename}: {len(pipeline)} steps")
        return pipeline

    def compile_file(self, path: Union[str, Path]) -> Pipeline:
        """Compile the job script at ``path``."""
        path = Path(path)
        return self.compile(path.read_text(encoding="utf-8"), filename=str(path), name=path.stem)

    def compile_job(self, job_id: str) -> Pipeline:
        """
        Compile a job from the registry.

        Raises:
            ValueError: If the compiler has no registry
            JobNotFoundError: If the job doesn't exist
        """
        if self._registry is None:
            raise ValueError("Compiler has no JobRegistry")
        return self._registry.compile(job_id, self)

    def _check(self, stmt: ast.stmt, scope: _Scope, filename: str) -> Optional[str]:
        """
        Check one top-level statement.

        Returns:
            The step's operation name for step statements, else None
        """
        if isinstance(stmt, (ast.Import, ast.ImportFrom)):
            return None

        finder = _OperationCalls(scope)
        finder.visit(stmt)

        step = None
        if isinstance(stmt, ast.Expr):
            base = _chain_base(stmt.value)
            if base is not None:
                step = scope.operation_name(base)
        owner = step or getattr(stmt, "name", None)

        for op_name, call, in_function in finder.calls:
            if in_function:
                where = f"step '{owner}'" if owner else f"line {stmt.lineno}"
                raise NestedOperationError(
                    f"{filename}:{call.lineno}: operation '{op_name}' is declared inside a "
                    f"callback ({where}). Operations may only be declared at the top level "
                    f"of a job.",
                    step=owner,
                    lineno=call.lineno,
                )
            if step is None:
                raise CompileError(
                    f"{filename}:{call.lineno}: operation '{op_name}' must be declared as a "
                    f"top-level step statement"
                )

        if step is not None:
            return step
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Assign, ast.AnnAssign, ast.Pass)):
            return None
        if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant) and isinstance(stmt.value.value, str):
            return None
        raise CompileError(
            f"{filename}:{stmt.lineno}: unsupported top-level statement "
            f"({type(stmt).__name__}); only imports, definitions, assignments and "
            f"operation steps are allowed"
        )

    def _exec(self, stmt: ast.stmt, namespace: dict[str, Any], filename: str) -> None:
        module = ast.Module(body=[stmt], type_ignores=[])
        try:
            exec(compile(module, filename, "exec"), namespace)
        except OpflowError:
            raise
        except Exception as e:
            raise CompileError(f"{filename}:{stmt.lineno}: {type(e).__name__}: {e}") from e

    def _eval(self, node: ast.expr, namespace: dict[str, Any], filename: str) -> Any:
        expression = ast.Expression(body=node)
        try:
            return eval(compile(expression, filename, "eval"), namespace)
        except OpflowError:
            raise
        except Exception as e:
            raise CompileError(f"{filename}:{node.lineno}: {type(e).__name__}: {e}") from e
