"""Pydantic schemas for package manifests and workspace declarations."""

from __future__ import annotations

import posixpath
import re
from collections.abc import Sequence
from enum import Enum
from pathlib import Path

import semantic_version
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator
from pydantic_core import PydanticCustomError

from .constraints import DependencySpec
from .constraints import WorkspaceRef
from .constraints import parse_dependency_spec

IMPORT_CONDITION = "import"
REQUIRE_CONDITION = "require"
DEFAULT_CONDITION = "default"

_PACKAGE_NAME = re.compile(r"^(?:@[a-z0-9][a-z0-9._-]*/)?[a-z0-9][a-z0-9._-]*$", re.IGNORECASE)


class ModuleFormat(str, Enum):
    """Module execution model.

    Models:
    - EAGER_SYNC: whole body runs synchronously, single aggregate export
    - ASYNC_STATIC: static imports/exports, per-name live bindings, may suspend
    """

    EAGER_SYNC = "eager-sync"
    ASYNC_STATIC = "async-static"

    @property
    def condition(self) -> str:
        """Entry-point condition a requester of this format matches first."""
        return IMPORT_CONDITION if self is ModuleFormat.ASYNC_STATIC else REQUIRE_CONDITION


def is_valid_package_name(name: str) -> bool:
    return bool(_PACKAGE_NAME.match(name))


class PackageManifest(BaseModel):
    """Parsed package manifest.

    Immutable once loaded. ``root`` is attached by the ManifestStore and is
    not part of the document.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(..., description="Package name, optionally scoped (@scope/name)")
    version: str = Field(..., description="Semantic version (e.g., '1.0.0')")
    declared_format: ModuleFormat = Field(
        ModuleFormat.EAGER_SYNC, alias="declaredFormat", description="Execution model of the package's modules"
    )
    entry_points: dict[str, str] = Field(
        default_factory=dict, alias="entryPoints", description="Ordered condition -> relative entry path"
    )
    main: str | None = Field(None, description="Fallback entry used by directory resolution")
    dependencies: dict[str, str] = Field(default_factory=dict)
    root: Path | None = Field(None, exclude=True)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not is_valid_package_name(value):
            raise ValueError(f"invalid package name '{value}'")
        return value

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        try:
            semantic_version.Version(value)
        except ValueError as e:
            raise ValueError(f"invalid semantic version '{value}'") from e
        return value

    @field_validator("dependencies")
    @classmethod
    def _check_dependencies(cls, value: dict[str, str]) -> dict[str, str]:
        for dep_name, raw in value.items():
            if not is_valid_package_name(dep_name):
                raise ValueError(f"invalid dependency name '{dep_name}'")
            try:
                parse_dependency_spec(raw)
            except ValueError as e:
                raise PydanticCustomError(
                    "invalid_constraint",
                    "dependency '{dep}': {reason}",
                    {"dep": dep_name, "reason": str(e)},
                ) from e
        return value

    @model_validator(mode="after")
    def _check_format_conditions(self) -> PackageManifest:
        # A single file cannot be both an async-static and an eager-sync entry
        import_entry = self.entry_points.get(IMPORT_CONDITION)
        require_entry = self.entry_points.get(REQUIRE_CONDITION)
        if import_entry and require_entry and _same_entry(import_entry, require_entry):
            raise PydanticCustomError(
                "conflicting_format",
                "entry '{entry}' is declared for both '{a}' and '{b}' conditions",
                {"entry": import_entry, "a": IMPORT_CONDITION, "b": REQUIRE_CONDITION},
            )
        return self

    def dependency_specs(self) -> dict[str, DependencySpec]:
        return {name: parse_dependency_spec(raw) for name, raw in self.dependencies.items()}

    def workspace_dependencies(self) -> dict[str, WorkspaceRef]:
        """Dependencies declared with a workspace marker, in declared order."""
        return {name: spec for name, spec in self.dependency_specs().items() if isinstance(spec, WorkspaceRef)}

    def entry_for(self, conditions: Sequence[str]) -> str | None:
        """Pick the entry path for the first matching condition.

        Conditions are tried in the caller's order; ``default`` is always the
        last resort.
        """
        for condition in [*conditions, DEFAULT_CONDITION]:
            if entry := self.entry_points.get(condition):
                return entry
        return None


class WorkspaceDeclaration(BaseModel):
    """Root-level workspace membership document."""

    packages: list[str] = Field(default_factory=list, description="Glob patterns of package roots (!pattern excludes)")


def _same_entry(a: str, b: str) -> bool:
    return posixpath.normpath(a) == posixpath.normpath(b)
