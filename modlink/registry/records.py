"""Module records, binding cells and namespaces.

A ModuleRecord is the registry's single source of truth for one canonical
resource. Its exported bindings are BindingCells shared by reference with
every importer, so an importer holding a Namespace observes assignments made
after it linked (live bindings). Cells read as UNINITIALIZED until assigned.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from types import SimpleNamespace
from typing import Any

from ..errors import ModuleLinkError
from ..identifiers import ResourceIdentifier
from ..manifests.schema import ModuleFormat

DEFAULT_EXPORT = "default"


class ModuleStatus(str, Enum):
    """Record lifecycle: Pending -> Loading -> Evaluating -> Evaluated | Failed."""

    PENDING = "pending"
    LOADING = "loading"
    EVALUATING = "evaluating"
    EVALUATED = "evaluated"
    FAILED = "failed"


class _Uninitialized:
    _instance: _Uninitialized | None = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<uninitialized>"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return "UNINITIALIZED"


UNINITIALIZED: Any = _Uninitialized()


class BindingCell:
    """Mutable slot holding one exported value."""

    __slots__ = ("name", "value")

    def __init__(self, name: str, value: Any = UNINITIALIZED):
        self.name = name
        self.value = value

    @property
    def is_set(self) -> bool:
        return self.value is not UNINITIALIZED

    def set(self, value: Any) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"BindingCell({self.name!r}, {self.value!r})"


class Namespace:
    """Read-only live view over a record's binding cells.

    Attribute and item access read the current cell value. Async-static
    modules expose one name per export; eager-sync modules expose only
    ``default`` (aggregate namespace).
    """

    __slots__ = ("_identifier", "_cells", "_aggregate")

    def __init__(self, identifier: ResourceIdentifier, cells: Mapping[str, BindingCell], *, aggregate: bool = False):
        object.__setattr__(self, "_identifier", identifier)
        object.__setattr__(self, "_cells", dict(cells))
        object.__setattr__(self, "_aggregate", aggregate)

    @property
    def identifier(self) -> ResourceIdentifier:
        return self._identifier

    @property
    def is_aggregate(self) -> bool:
        return self._aggregate

    def __getattr__(self, name: str) -> Any:
        cells = object.__getattribute__(self, "_cells")
        if name in cells:
            return cells[name].value
        raise AttributeError(f"Module {self._identifier.href} has no export '{name}'")

    def __getitem__(self, name: str) -> Any:
        try:
            return self._cells[name].value
        except KeyError:
            raise KeyError(f"Module {self._identifier.href} has no export '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"Namespace of {self._identifier.href} is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"Namespace of {self._identifier.href} is read-only")

    def __contains__(self, name: object) -> bool:
        return name in self._cells

    def __iter__(self) -> Iterator[str]:
        return iter(self._cells)

    def __len__(self) -> int:
        return len(self._cells)

    def __dir__(self) -> list[str]:
        return sorted(self._cells)

    def keys(self) -> list[str]:
        return list(self._cells)

    def get(self, name: str, default: Any = None) -> Any:
        cell = self._cells.get(name)
        return cell.value if cell is not None else default

    def to_dict(self) -> dict[str, Any]:
        """Snapshot of the current values."""
        return {name: cell.value for name, cell in self._cells.items()}

    def __repr__(self) -> str:
        kind = "aggregate" if self._aggregate else "static"
        return f"<Namespace {self._identifier.href} ({kind}): {', '.join(self._cells)}>"


@dataclass(eq=False)
class ModuleRecord:
    """Registry entry for one canonical resource.

    Attributes:
        id: Canonical identifier
        format: Execution model (may be overridden by a transform hook)
        status: Lifecycle status
        raw_source: Source as returned by the load stage
        source: Evaluable source as returned by the transform stage
        exported_names: Statically declared export names
        bindings: Export name -> shared cell
        dependencies: Statically declared dependencies, in declared order
        deferred: Dependencies not linked before evaluation
        dependents: Records that declared this one as a dependency
        import_map: Specifier as written -> resolved identifier
        error: Cached failure (status FAILED)
        interest: Number of callers waiting on the in-flight load
        evaluations: How many times the body ran
        synthetic: Defined by the host (built-ins); never loaded from source
    """

    id: ResourceIdentifier
    format: ModuleFormat
    status: ModuleStatus = ModuleStatus.PENDING
    raw_source: str | None = None
    source: str | None = None
    exported_names: tuple[str, ...] = ()
    bindings: dict[str, BindingCell] = field(default_factory=dict)
    dependencies: list[ResourceIdentifier] = field(default_factory=list)
    deferred: set[ResourceIdentifier] = field(default_factory=set)
    dependents: set[ResourceIdentifier] = field(default_factory=set)
    import_map: dict[str, ResourceIdentifier] = field(default_factory=dict)
    error: ModuleLinkError | None = None
    interest: int = 0
    evaluations: int = 0
    synthetic: bool = False
    analysis: Any = field(default=None, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)
    cancel_requested: bool = field(default=False, repr=False)
    declared_format: ModuleFormat | None = field(default=None, repr=False)

    def __post_init__(self):
        if self.declared_format is None:
            self.declared_format = self.format

    @property
    def in_flight(self) -> bool:
        return self.task is not None

    @property
    def is_linked(self) -> bool:
        """Bindings exist (possibly partially initialized)."""
        return self.status in (ModuleStatus.EVALUATING, ModuleStatus.EVALUATED)

    def instantiate(self) -> None:
        """Create fresh binding cells for the current format and exports.

        Eager-sync records get their exports object up front so cyclic
        partners linked before the body runs share it.
        """
        if self.format is ModuleFormat.EAGER_SYNC:
            self.bindings = {DEFAULT_EXPORT: BindingCell(DEFAULT_EXPORT, SimpleNamespace())}
            return
        self.bindings = {name: BindingCell(name) for name in self.exported_names}

    def reset(self) -> None:
        """Return to Pending with fresh cells; keeps identity and dependents."""
        self.status = ModuleStatus.PENDING
        self.format = self.declared_format
        self.raw_source = None
        self.source = None
        self.exported_names = ()
        self.bindings = {}
        self.dependencies = []
        self.deferred = set()
        self.import_map = {}
        self.error = None
        self.analysis = None
        self.cancel_requested = False

    def to_dict(self) -> dict[str, Any]:
        """Diagnostic summary."""
        return {
            "id": self.id.href,
            "format": self.format.value,
            "status": self.status.value,
            "exports": list(self.bindings),
            "dependencies": [dep.href for dep in self.dependencies],
            "dependents": sorted(dep.href for dep in self.dependents),
            "evaluations": self.evaluations,
            "error": self.error.to_dict() if self.error else None,
        }
