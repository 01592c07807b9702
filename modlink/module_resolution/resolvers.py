"""Specifier resolution.

Turns an import specifier plus the importing context into a canonical
ResourceIdentifier.

Resolution order (first match wins):
1. Built-in namespace (``builtin:name``) - identity, no filesystem access
2. Relative / absolute / file:// specifiers - against the importer directory
3. Bare package specifiers - workspace link, then installed copy, then the
   package manifest's conditional entry points

Candidates are always tried in the fixed order of the configured lists
(extensions, index names, conditions). Directory listing order never decides
the outcome.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Container
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

from ..errors import ResolutionError
from ..identifiers import ResourceIdentifier
from ..manifests.schema import ModuleFormat
from ..manifests.schema import PackageManifest
from ..manifests.schema import is_valid_package_name
from ..manifests.store import ManifestStore
from ..workspace.graph import WorkspaceGraph
from .sources import InstalledPackageLocator
from .sources import PackageLocator

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".py", ".json")
DEFAULT_INDEX_NAMES = ("index",)
DEFAULT_BUILTIN_PREFIX = "builtin:"

_URL_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")


@dataclass(frozen=True)
class ResolveContext:
    """Where a specifier is being resolved from.

    Attributes:
        importer: Identifier of the importing module (None for top-level requests)
        format: Execution model of the requester
        conditions: Extra entry-point conditions, tried after the format condition
        base_dir: Directory for top-level requests without an importer
        package: Owning package name for top-level requests without an importer
    """

    importer: ResourceIdentifier | None
    format: ModuleFormat
    conditions: tuple[str, ...] = ()
    base_dir: Path | None = None
    package: str | None = None

    @property
    def directory(self) -> Path:
        if self.importer is not None and not self.importer.is_builtin:
            return self.importer.as_path().parent
        return self.base_dir or Path.cwd()

    @property
    def trail(self) -> tuple[str, ...]:
        return (self.importer.href,) if self.importer is not None else ()


def split_package_specifier(specifier: str) -> tuple[str, str]:
    """Split ``[@scope/]name[/subpath]`` into (name, subpath).

    Raises:
        ResolutionError: InvalidSpecifier for malformed names or subpaths
            escaping the package root
    """
    if specifier.startswith("@"):
        parts = specifier.split("/", 2)
        if len(parts) < 2 or not parts[1]:
            raise ResolutionError(
                f"Scoped package specifier '{specifier}' needs a name after the scope",
                kind="InvalidSpecifier",
                specifier=specifier,
            )
        name = "/".join(parts[:2])
        subpath = parts[2] if len(parts) > 2 else ""
    else:
        name, _, subpath = specifier.partition("/")

    if not is_valid_package_name(name):
        raise ResolutionError(f"Invalid package name '{name}'", kind="InvalidSpecifier", specifier=specifier)
    if subpath and ".." in subpath.split("/"):
        raise ResolutionError(
            f"Package subpath may not leave the package root: '{specifier}'",
            kind="InvalidSpecifier",
            specifier=specifier,
        )
    return name, subpath


class SpecifierResolver:
    """Default (builtin) resolver used at the end of the resolve hook chain."""

    def __init__(
        self,
        store: ManifestStore,
        graph: WorkspaceGraph | None = None,
        locator: PackageLocator | None = None,
        *,
        extensions: tuple[str, ...] | list[str] = DEFAULT_EXTENSIONS,
        index_names: tuple[str, ...] | list[str] = DEFAULT_INDEX_NAMES,
        builtin_prefix: str = DEFAULT_BUILTIN_PREFIX,
        builtins: Container[str] = (),
        default_format: ModuleFormat = ModuleFormat.EAGER_SYNC,
    ):
        self.store = store
        self.graph = graph
        self.locator = locator or InstalledPackageLocator()
        self.extensions = tuple(extensions)
        self.index_names = tuple(index_names)
        self.builtin_prefix = builtin_prefix
        self.builtins = builtins
        self.default_format = default_format

    def resolve(self, specifier: str, context: ResolveContext) -> ResourceIdentifier:
        """Resolve a specifier.

        Args:
            specifier: Import specifier as written by the importer
            context: Importing context

        Returns:
            Canonical ResourceIdentifier

        Raises:
            ResolutionError: NotFound, AmbiguousExtension or InvalidSpecifier
        """
        self._validate(specifier, context)

        if specifier.startswith(self.builtin_prefix):
            identifier = self._resolve_builtin(specifier, context)
            origin = "builtin"
        elif self._is_path_like(specifier):
            identifier = self._resolve_path(specifier, context)
            origin = "path"
        elif _URL_SCHEME.match(specifier):
            raise ResolutionError(
                f"Unsupported URL scheme in specifier '{specifier}'",
                kind="InvalidSpecifier",
                specifier=specifier,
                trail=context.trail,
            )
        else:
            identifier, origin = self._resolve_package(specifier, context)

        logger.debug(f"[resolve] {specifier} -> {identifier.href} ({origin})")
        return identifier

    def format_for(self, identifier: ResourceIdentifier) -> ModuleFormat:
        """Execution model of a resolved resource.

        Built-ins are async-static; files follow their owning package's
        declared format, falling back to the engine default.
        """
        if identifier.is_builtin:
            return ModuleFormat.ASYNC_STATIC
        owner = self.store.find_owner(identifier.as_path())
        return owner.declared_format if owner else self.default_format

    # ----- Specifier kinds -----

    def _resolve_builtin(self, specifier: str, context: ResolveContext) -> ResourceIdentifier:
        name = specifier[len(self.builtin_prefix) :]
        if not name or name not in self.builtins:
            raise ResolutionError(
                f"Unknown built-in module '{specifier}'",
                kind="NotFound",
                specifier=specifier,
                trail=context.trail,
            )
        return ResourceIdentifier.builtin(name)

    def _resolve_path(self, specifier: str, context: ResolveContext) -> ResourceIdentifier:
        if specifier.startswith("file://"):
            target = Path(specifier[len("file://") :])
        elif specifier.startswith("/"):
            target = Path(specifier)
        else:
            target = context.directory / specifier
        return self._resolve_target(target, specifier, context)

    def _resolve_package(self, specifier: str, context: ResolveContext) -> tuple[ResourceIdentifier, str]:
        name, subpath = split_package_specifier(specifier)
        root, origin = self._locate_package(name, context)
        if root is None:
            raise ResolutionError(
                f"Package '{name}' is neither linked in the workspace nor installed",
                kind="NotFound",
                specifier=specifier,
                trail=context.trail,
            )

        if subpath:
            return self._resolve_target(root / subpath, specifier, context), origin

        manifest = self._manifest_at(root)
        return self._resolve_entry(root, manifest, specifier, context), origin

    def _locate_package(self, name: str, context: ResolveContext) -> tuple[Path | None, str]:
        if context.package is not None:
            owner = self.store.lookup(context.package)
        else:
            owner = self.store.find_owner(context.directory)

        if owner is not None and owner.name == name and owner.root is not None:
            return owner.root, "self"

        if self.graph is not None and owner is not None:
            linked = self.graph.resolve_local(owner.name, name)
            if linked is not None:
                return linked, "workspace"

        # Top-level requests from outside any package may name any member
        if self.graph is not None and owner is None and context.importer is None:
            node = self.graph.node(name)
            if node is not None:
                return node.root, "workspace"

        return self.locator.locate(name, context.directory), "registry"

    def _manifest_at(self, root: Path) -> PackageManifest | None:
        manifest = self.store.for_root(root)
        if manifest is None and self.store.manifest_path(root) is not None:
            manifest = self.store.load(root)
        return manifest

    # ----- Filesystem candidates -----

    def _resolve_target(self, target: Path, specifier: str, context: ResolveContext) -> ResourceIdentifier:
        if target.is_file():
            return ResourceIdentifier.from_path(target)

        if context.format is ModuleFormat.EAGER_SYNC:
            if found := self._probe_file(target):
                return ResourceIdentifier.from_path(found)
            if target.is_dir():
                if found := self._probe_directory(target):
                    return ResourceIdentifier.from_path(found)

        self._raise_not_found(target, specifier, context)

    def _resolve_entry(
        self,
        root: Path,
        manifest: PackageManifest | None,
        specifier: str,
        context: ResolveContext,
    ) -> ResourceIdentifier:
        conditions = [context.format.condition, *context.conditions]
        entry = manifest.entry_for(conditions) if manifest else None
        if entry is not None:
            target = root / entry
            if target.is_file():
                return ResourceIdentifier.from_path(target)
            if context.format is ModuleFormat.EAGER_SYNC and (found := self._probe_file(target)):
                return ResourceIdentifier.from_path(found)
            raise ResolutionError(
                f"Entry point '{entry}' of package '{manifest.name}' does not exist",
                kind="NotFound",
                specifier=specifier,
                trail=context.trail,
            )

        if context.format is ModuleFormat.ASYNC_STATIC:
            if manifest is not None and manifest.main and (root / manifest.main).is_file():
                return ResourceIdentifier.from_path(root / manifest.main)
            raise ResolutionError(
                f"Package at {root} has no entry point for conditions {', '.join(conditions)}",
                kind="NotFound",
                specifier=specifier,
                trail=context.trail,
            )

        if found := self._probe_directory(root):
            return ResourceIdentifier.from_path(found)
        raise ResolutionError(
            f"Package at {root} has no entry point, main or index file",
            kind="NotFound",
            specifier=specifier,
            trail=context.trail,
        )

    def _probe_file(self, target: Path) -> Path | None:
        if target.is_file():
            return target
        for ext in self.extensions:
            candidate = target.with_name(target.name + ext)
            if candidate.is_file():
                return candidate
        return None

    def _probe_directory(self, directory: Path) -> Path | None:
        """Directory fallback: manifest ``main`` first, then index files."""
        manifest = self._manifest_at(directory)
        if manifest is not None and manifest.main:
            if found := self._probe_file(directory / manifest.main):
                return found
        for index_name in self.index_names:
            for ext in self.extensions:
                candidate = directory / f"{index_name}{ext}"
                if candidate.is_file():
                    return candidate
        return None

    def _raise_not_found(self, target: Path, specifier: str, context: ResolveContext) -> NoReturn:
        siblings = []
        if target.parent.is_dir():
            siblings = sorted(p.name for p in target.parent.glob(f"{target.name}.*") if p.is_file())

        if len(siblings) > 1:
            raise ResolutionError(
                f"'{specifier}' is ambiguous: {', '.join(siblings)} all match; add an explicit extension",
                kind="AmbiguousExtension",
                specifier=specifier,
                trail=context.trail,
            )

        message = f"Cannot find module '{specifier}' (looked for {target})"
        if siblings:
            message += f"; did you mean '{siblings[0]}'?"
        if context.format is ModuleFormat.ASYNC_STATIC:
            message += " (async-static imports need an explicit file extension)"
        raise ResolutionError(message, kind="NotFound", specifier=specifier, trail=context.trail)

    # ----- Validation -----

    @staticmethod
    def _is_path_like(specifier: str) -> bool:
        return specifier.startswith(("./", "../", "/", "file://")) or specifier in (".", "..")

    @staticmethod
    def _validate(specifier: str, context: ResolveContext) -> None:
        if not isinstance(specifier, str) or not specifier:
            raise ResolutionError("Empty module specifier", kind="InvalidSpecifier", specifier=str(specifier))
        if any(ch.isspace() for ch in specifier) or "\x00" in specifier or "\\" in specifier:
            raise ResolutionError(
                f"Module specifier contains whitespace, NUL or backslash: {specifier!r}",
                kind="InvalidSpecifier",
                specifier=specifier,
                trail=context.trail,
            )
