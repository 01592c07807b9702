"""Static analysis and evaluation of module bodies.

Module bodies are Python source. The two execution models differ in how
they declare dependencies and exports:

async-static
    Imports are top-level ``name = static_import("spec")`` statements (or a
    bare ``static_import("spec")`` for side effects). Exports are the literal
    top-level ``__all__``; without one, every public top-level binding is
    exported. The body may ``await`` at top level.

eager-sync
    The body receives ``module``, ``exports`` and ``require``. Dependencies
    are literal ``require("spec")`` calls anywhere in the body; the single
    export is ``module.exports``, published as ``default``.
"""

from __future__ import annotations

import ast
import builtins
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from types import SimpleNamespace
from typing import Any

from .errors import EvaluationError
from .errors import ModuleLinkError
from .manifests.schema import ModuleFormat
from .registry.records import DEFAULT_EXPORT
from .registry.records import ModuleRecord

logger = logging.getLogger(__name__)

STATIC_IMPORT = "static_import"
REQUIRE = "require"


@dataclass(frozen=True)
class StaticImport:
    """One declared import.

    Attributes:
        specifier: Specifier as written
        binding: Local name bound to the namespace (None for side-effect imports)
        lineno: Source line
    """

    specifier: str
    binding: str | None
    lineno: int


@dataclass
class ModuleAnalysis:
    format: ModuleFormat
    imports: list[StaticImport] = field(default_factory=list)
    exports: tuple[str, ...] = ()
    dynamic_requires: bool = False

    @property
    def specifiers(self) -> list[str]:
        """Unique specifiers in declaration order."""
        return list(dict.fromkeys(imp.specifier for imp in self.imports))


def _call_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        return node.func.id
    return None


def _literal_argument(call: ast.Call) -> str | None:
    if len(call.args) == 1 and not call.keywords:
        arg = call.args[0]
        if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
            return arg.value
    return None


def _analysis_error(message: str, filename: str, lineno: int | None = None) -> EvaluationError:
    where = f"{filename}:{lineno}" if lineno else filename
    return EvaluationError(f"{message} ({where})", kind="BodyFailed", stage="load", specifier=filename)


def analyze(source: str, format: ModuleFormat, *, filename: str = "<module>") -> ModuleAnalysis:
    """Statically analyze a module body.

    Args:
        source: Evaluable Python source
        format: Execution model the body is written for
        filename: Used in diagnostics

    Returns:
        ModuleAnalysis with declared imports and exports

    Raises:
        EvaluationError: Source does not parse, or declarations are not static
    """
    try:
        tree = ast.parse(source, filename=filename)
    except SyntaxError as e:
        raise _analysis_error(f"Syntax error: {e.msg}", filename, e.lineno) from e

    if format is ModuleFormat.EAGER_SYNC:
        return _analyze_eager(tree)
    return _analyze_static(tree, filename)


def _analyze_eager(tree: ast.Module) -> ModuleAnalysis:
    analysis = ModuleAnalysis(format=ModuleFormat.EAGER_SYNC, exports=(DEFAULT_EXPORT,))
    for node in ast.walk(tree):
        if _call_name(node) != REQUIRE:
            continue
        specifier = _literal_argument(node)
        if specifier is None:
            analysis.dynamic_requires = True
        else:
            analysis.imports.append(StaticImport(specifier, None, node.lineno))
    analysis.imports.sort(key=lambda imp: imp.lineno)
    return analysis


def _analyze_static(tree: ast.Module, filename: str) -> ModuleAnalysis:
    analysis = ModuleAnalysis(format=ModuleFormat.ASYNC_STATIC)
    declared: set[int] = set()
    explicit_exports: tuple[str, ...] | None = None
    public: list[str] = []

    for stmt in tree.body:
        call = None
        target = None
        if isinstance(stmt, ast.Assign) and _call_name(stmt.value) == STATIC_IMPORT:
            if len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                raise _analysis_error("static_import must be bound to a single name", filename, stmt.lineno)
            call, target = stmt.value, stmt.targets[0].id
        elif isinstance(stmt, ast.Expr) and _call_name(stmt.value) == STATIC_IMPORT:
            call = stmt.value

        if call is not None:
            specifier = _literal_argument(call)
            if specifier is None:
                raise _analysis_error("static_import needs a single string literal", filename, stmt.lineno)
            analysis.imports.append(StaticImport(specifier, target, stmt.lineno))
            declared.add(id(call))
            continue

        if _assigns_all(stmt):
            explicit_exports = _literal_exports(stmt, filename)
            continue

        public.extend(name for name in _bound_names(stmt) if not name.startswith("_"))

    for node in ast.walk(tree):
        if _call_name(node) == STATIC_IMPORT and id(node) not in declared:
            raise _analysis_error("static_import is only allowed as a top-level statement", filename, node.lineno)

    if explicit_exports is not None:
        analysis.exports = explicit_exports
    else:
        bindings = {imp.binding for imp in analysis.imports}
        analysis.exports = tuple(dict.fromkeys(name for name in public if name not in bindings))
    return analysis


def _assigns_all(stmt: ast.stmt) -> bool:
    if isinstance(stmt, ast.Assign):
        return any(isinstance(t, ast.Name) and t.id == "__all__" for t in stmt.targets)
    if isinstance(stmt, ast.AnnAssign):
        return isinstance(stmt.target, ast.Name) and stmt.target.id == "__all__"
    return False


def _literal_exports(stmt: ast.Assign | ast.AnnAssign, filename: str) -> tuple[str, ...]:
    value = stmt.value
    if isinstance(value, ast.List | ast.Tuple) and all(
        isinstance(elt, ast.Constant) and isinstance(elt.value, str) for elt in value.elts
    ):
        return tuple(dict.fromkeys(elt.value for elt in value.elts))
    raise _analysis_error("__all__ must be a literal list of strings", filename, stmt.lineno)


def _bound_names(stmt: ast.stmt) -> list[str]:
    if isinstance(stmt, ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef):
        return [stmt.name]
    if isinstance(stmt, ast.Import | ast.ImportFrom):
        return [(alias.asname or alias.name).split(".")[0] for alias in stmt.names if alias.name != "*"]
    targets: list[ast.expr] = []
    if isinstance(stmt, ast.Assign):
        targets = stmt.targets
    elif isinstance(stmt, ast.AnnAssign | ast.AugAssign):
        targets = [stmt.target]
    names = []
    for target in targets:
        for node in ast.walk(target):
            if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
                names.append(node.id)
    return names


def _module_globals(record: ModuleRecord) -> dict[str, Any]:
    return {
        "__name__": record.id.name.rsplit(".", 1)[0] or record.id.name,
        "__file__": record.id.path,
        "__builtins__": builtins,
    }


async def evaluate_async_static(record: ModuleRecord, linked: dict[str, Any]) -> dict[str, Any]:
    """Run an async-static body and assign its exported cells.

    Args:
        record: Record in Evaluating state with instantiated cells
        linked: Specifier -> namespace of each declared import

    Returns:
        The module's globals after execution
    """

    def static_import(specifier: str) -> Any:
        try:
            return linked[specifier]
        except KeyError:
            raise EvaluationError(
                f"'{specifier}' was not declared as a static import of {record.id.href}",
                kind="BodyFailed",
                specifier=specifier,
            ) from None

    namespace = _module_globals(record)
    namespace[STATIC_IMPORT] = static_import

    try:
        code = compile(record.source, record.id.path, "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)
        result = eval(code, namespace)
        if inspect.iscoroutine(result):
            await result
    except ModuleLinkError:
        raise
    except Exception as e:
        raise _body_failed(record, e) from e

    for name, cell in record.bindings.items():
        if name not in namespace:
            raise EvaluationError(
                f"Module {record.id.href} declares export '{name}' but never defines it",
                kind="BodyFailed",
                specifier=record.id.href,
            )
        cell.set(namespace[name])
    return namespace


def evaluate_eager_sync(record: ModuleRecord, require: Callable[[str], Any]) -> Any:
    """Run an eager-sync body and publish ``module.exports`` as ``default``.

    The ``default`` cell holds the initial exports object before the body
    runs, so cyclic importers observe the partially populated object.
    """
    cell = record.bindings[DEFAULT_EXPORT]
    if not cell.is_set:
        cell.set(SimpleNamespace())
    exports = cell.value
    module = SimpleNamespace(exports=exports, id=record.id.href, filename=record.id.path)

    namespace = _module_globals(record)
    namespace.update(module=module, exports=exports, require=require)

    try:
        code = compile(record.source, record.id.path, "exec")
        exec(code, namespace)
    except ModuleLinkError:
        raise
    except Exception as e:
        raise _body_failed(record, e) from e

    cell.set(module.exports)
    return module.exports


def _body_failed(record: ModuleRecord, error: Exception) -> EvaluationError:
    return EvaluationError(
        f"Module {record.id.href} failed: {type(error).__name__}: {error}",
        kind="BodyFailed",
        specifier=record.id.href,
    )


def json_module_source(text: str, *, filename: str = "<json>") -> str:
    """Eager-sync source whose export is the parsed JSON document."""
    try:
        json.loads(text)
    except ValueError as e:
        raise EvaluationError(
            f"Invalid JSON in {filename}: {e}", kind="BodyFailed", stage="transform", specifier=filename
        ) from e
    return f"import json as _json\nmodule.exports = _json.loads({text!r})\n"
