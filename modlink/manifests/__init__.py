"""Package manifests: schema, dependency values and the manifest store."""

from .constraints import DependencySpec
from .constraints import VersionConstraint
from .constraints import WorkspaceRef
from .constraints import parse_dependency_spec
from .schema import ModuleFormat
from .schema import PackageManifest
from .schema import WorkspaceDeclaration
from .store import ManifestStore

__all__ = [
    "DependencySpec",
    "ManifestStore",
    "ModuleFormat",
    "PackageManifest",
    "VersionConstraint",
    "WorkspaceDeclaration",
    "WorkspaceRef",
    "parse_dependency_spec",
]
