"""Module engine: the composition root.

A ModuleEngine owns one manifest store, one workspace graph, one hook chain
and one module registry. There is no global engine; hosts create as many
independent instances as they need.

Usage:
    engine = ModuleEngine(workspace_root)
    engine.start()
    api = await engine.import_module("api")
    engine.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .errors import EvaluationError
from .errors import ResolutionError
from .evaluation import analyze
from .evaluation import evaluate_async_static
from .evaluation import evaluate_eager_sync
from .evaluation import json_module_source
from .hooks.chain import HookChain
from .hooks.config import HooksConfig
from .hooks.models import HookDescriptor
from .hooks.models import LoadedSource
from .hooks.models import LoadRequest
from .hooks.models import ResolveRequest
from .hooks.models import TransformRequest
from .identifiers import ResourceIdentifier
from .interop import InteropBridge
from .manifests.schema import ModuleFormat
from .manifests.schema import PackageManifest
from .manifests.store import ManifestStore
from .module_resolution.resolvers import ResolveContext
from .module_resolution.resolvers import SpecifierResolver
from .module_resolution.sources import InstalledPackageLocator
from .module_resolution.sources import PackageLocator
from .registry.records import ModuleRecord
from .registry.records import ModuleStatus
from .registry.records import Namespace
from .registry.registry import ModuleRegistry
from .settings import EngineSettings
from .settings import load_engine_settings
from .workspace.discovery import discover_members
from .workspace.discovery import read_workspace_declaration
from .workspace.graph import WorkspaceGraph
from .workspace.graph import build_graph

logger = logging.getLogger(__name__)


class ModuleEngine:
    """Resolves, loads, links and evaluates modules of one workspace.

    Args:
        root: Workspace root directory
        settings: Engine settings (merged settings files when omitted)
        hooks: Hook descriptors, registered before those from settings
        locator: External registry collaborator for non-workspace packages
        builtins: Built-in modules, name -> exports
    """

    def __init__(
        self,
        root: str | Path,
        settings: EngineSettings | None = None,
        hooks: Iterable[HookDescriptor] = (),
        locator: PackageLocator | None = None,
        builtins: Mapping[str, Mapping[str, Any]] | None = None,
    ):
        self.root = Path(root).resolve()
        self.settings = settings or load_engine_settings(self.root)

        configured = HooksConfig.from_settings({"hooks": self.settings.hooks}).to_descriptors()
        self.hooks = HookChain([*hooks, *configured])

        self.store = ManifestStore(self.settings.manifest_names)
        self.locator = locator or InstalledPackageLocator(self.settings.installed_dirname, self.settings.search_paths)
        self._builtin_names: set[str] = set()
        self.resolver = SpecifierResolver(
            self.store,
            None,
            self.locator,
            extensions=self.settings.extensions,
            index_names=self.settings.index_names,
            builtin_prefix=self.settings.builtin_prefix,
            builtins=self._builtin_names,
            default_format=self.settings.default_format,
        )
        self.registry = ModuleRegistry(self)
        self.interop = InteropBridge(self.registry)
        self.graph: WorkspaceGraph | None = None
        self._resolve_cache: dict[tuple[str, ResolveContext], ResourceIdentifier] = {}
        self._started = False

        for name, exports in (builtins or {}).items():
            self.define_builtin(name, exports)

    # ----- Lifecycle -----

    def start(self) -> WorkspaceGraph:
        """Discover workspace members, load their manifests and build the graph.

        Raises:
            ManifestError: Invalid manifest, workspace conflict or bad marker
            CycleError: Local-link cycle between workspace packages
        """
        declaration = read_workspace_declaration(self.root, self.settings.workspace_file)
        patterns = declaration.packages if declaration is not None else []
        roots = discover_members(
            self.root,
            patterns,
            lambda path: self.store.manifest_path(path) is not None,
            ignore_dirs=(self.settings.installed_dirname,),
        )
        for package_root in roots:
            self.store.load(package_root, member=True)

        self._set_graph(build_graph(self.store.members()))
        self._started = True
        logger.info(
            f"[workspace] {len(self.graph)} package(s) under {self.root}; "
            f"build order: {', '.join(self.graph.build_order) or '(none)'}"
        )
        return self.graph

    def close(self) -> None:
        """Drop all records, manifests and caches."""
        self.registry.clear()
        self.store.clear()
        self._resolve_cache.clear()
        self.graph = None
        self.resolver.graph = None
        self._started = False
        logger.debug(f"[engine] closed {self.root}")

    def __enter__(self) -> ModuleEngine:
        if not self._started:
            self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    async def __aenter__(self) -> ModuleEngine:
        return self.__enter__()

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def _ensure_started(self) -> None:
        if not self._started:
            self.start()

    def _set_graph(self, graph: WorkspaceGraph) -> None:
        self.graph = graph
        self.resolver.graph = graph
        self._resolve_cache.clear()

    # ----- Resolution -----

    def resolve(
        self,
        specifier: str,
        importer: ResourceIdentifier | None = None,
        format: ModuleFormat | None = None,
        *,
        base_dir: str | Path | None = None,
        package: str | None = None,
    ) -> ResourceIdentifier:
        """Resolve a specifier through the resolve hook chain.

        Results are memoized per specifier and context, so repeated
        resolution always yields the same identifier.

        Args:
            specifier: Import specifier
            importer: Importing module (None for top-level requests)
            format: Requesting execution model (defaults to the importer's)
            base_dir: Directory for top-level relative specifiers (workspace root)
            package: Package to resolve bare specifiers from (top-level only)
        """
        self._ensure_started()
        if format is None:
            format = self.format_for(importer) if importer is not None else self.settings.default_format
        context = ResolveContext(
            importer=importer,
            format=format,
            conditions=tuple(self.settings.conditions),
            base_dir=Path(base_dir).resolve() if base_dir is not None else self.root,
            package=package,
        )

        key = (specifier, context)
        cached = self._resolve_cache.get(key)
        if cached is not None:
            return cached

        identifier = self.hooks.run_resolve(ResolveRequest(specifier, context), self._builtin_resolve)
        self._resolve_cache[key] = identifier
        return identifier

    def format_for(self, identifier: ResourceIdentifier) -> ModuleFormat:
        """Execution model of a resource (the record's, once it exists)."""
        record = self.registry.get(identifier)
        if record is not None:
            return record.format
        if identifier.suffix == ".json":
            return ModuleFormat.EAGER_SYNC
        return self.resolver.format_for(identifier)

    def _builtin_resolve(self, request: ResolveRequest) -> ResourceIdentifier:
        return self.resolver.resolve(request.specifier, request.context)

    # ----- Loading -----

    async def ensure_loaded(self, identifier: ResourceIdentifier) -> ModuleRecord:
        """Load, link and evaluate ``identifier`` (single-flight)."""
        self._ensure_started()
        return await self.registry.ensure_loaded(identifier)

    async def import_module(
        self,
        specifier: str,
        importer: ResourceIdentifier | None = None,
        *,
        base_dir: str | Path | None = None,
        package: str | None = None,
    ) -> Namespace:
        """Deferred import: resolve, load if needed, return the namespace."""
        identifier = self.resolve(
            specifier, importer, ModuleFormat.ASYNC_STATIC, base_dir=base_dir, package=package
        )
        return await self.interop.access_from_async(identifier)

    def require(
        self,
        specifier: str,
        importer: ResourceIdentifier | None = None,
        *,
        base_dir: str | Path | None = None,
        package: str | None = None,
    ) -> Any:
        """Synchronous import.

        Eager-sync targets that are not linked yet are loaded on a private
        event loop when the calling thread has none running. Async-static
        targets must already have been evaluated through a deferred import.

        Returns:
            ``module.exports`` of an eager-sync target, or the namespace of an
            async-static target

        Raises:
            InteropError: AsyncOnly or NotLoaded
        """
        identifier = self.resolve(specifier, importer, ModuleFormat.EAGER_SYNC, base_dir=base_dir, package=package)
        record = self.registry.get(identifier)
        if self.format_for(identifier) is ModuleFormat.EAGER_SYNC and (record is None or not record.is_linked):
            if not _loop_running():
                asyncio.run(self.registry.ensure_loaded(identifier))
        return _sync_value(self.interop.access_from_sync(identifier))

    def define_builtin(self, name: str, exports: Mapping[str, Any]) -> ResourceIdentifier:
        """Register (or replace) a built-in async-static module."""
        identifier = ResourceIdentifier.builtin(name)
        previous = self.registry.get(identifier)
        dependents = sorted(previous.dependents) if previous is not None else []

        self._builtin_names.add(identifier.path)
        self.registry.define_synthetic(identifier, dict(exports))
        for dependent in dependents:
            self.registry.invalidate(dependent)
        return identifier

    # ----- Invalidation -----

    def invalidate(self, identifier: ResourceIdentifier) -> list[ResourceIdentifier]:
        """Reset a module and its transitive dependents to Pending."""
        reset = self.registry.invalidate(identifier)
        self._resolve_cache.clear()
        return reset

    def reload_manifest(self, root: str | Path) -> PackageManifest:
        """Re-read one package manifest, rebuild the graph, invalidate its modules."""
        root = Path(root).resolve()
        manifest = self.store.reload(root)
        self._set_graph(build_graph(self.store.members()))

        for record in self.registry.records():
            if record.id.is_builtin or not Path(record.id.path).is_relative_to(root):
                continue
            current = self.registry.get(record.id)
            if current is not None and current.status is not ModuleStatus.PENDING:
                self.registry.invalidate(record.id)
        logger.info(f"[workspace] reloaded manifest of {manifest.name} at {root}")
        return manifest

    # ----- ModuleLoader protocol -----

    async def fetch(self, record: ModuleRecord) -> None:
        """Run load and transform hooks, analyze, resolve declared imports."""
        loaded = await self.hooks.run_load(LoadRequest(record.id, record.format), self._builtin_load)
        raw = loaded.decoded()
        record.raw_source = raw
        format = loaded.format or record.format

        transformed = await self.hooks.run_transform(
            TransformRequest(record.id, LoadedSource(raw, format), format),
            self._builtin_transform,
        )
        record.format = transformed.format or format
        record.source = transformed.decoded()

        analysis = analyze(record.source, record.format, filename=record.id.path)
        record.analysis = analysis
        record.exported_names = analysis.exports

        for specifier in analysis.specifiers:
            target = self.resolve(specifier, record.id, record.format)
            record.import_map[specifier] = target
            if target not in record.dependencies:
                record.dependencies.append(target)
            if record.format is ModuleFormat.EAGER_SYNC and self.format_for(target) is ModuleFormat.ASYNC_STATIC:
                record.deferred.add(target)

        logger.debug(
            f"[engine] fetched {record.id.href} ({record.format.value}): "
            f"{len(record.dependencies)} dependenc(ies), exports {list(record.exported_names)}"
        )

    async def evaluate(self, record: ModuleRecord) -> None:
        """Run the body of a linked record."""
        if record.format is ModuleFormat.ASYNC_STATIC:
            linked = {
                specifier: self.interop.view(self.registry.get(target))
                for specifier, target in record.import_map.items()
            }
            await evaluate_async_static(record, linked)
        else:
            evaluate_eager_sync(record, self._make_require(record))

    async def _builtin_load(self, request: LoadRequest) -> LoadedSource:
        identifier = request.identifier
        if identifier.is_builtin:
            raise ResolutionError(
                f"Built-in module {identifier.href} is not defined",
                kind="NotFound",
                stage="load",
                specifier=identifier.href,
            )
        try:
            data = await asyncio.to_thread(identifier.as_path().read_bytes)
        except OSError as e:
            raise ResolutionError(
                f"Cannot read {identifier.href}: {e.strerror or e}",
                kind="NotFound",
                stage="load",
                specifier=identifier.href,
            ) from e
        return LoadedSource(data)

    async def _builtin_transform(self, request: TransformRequest) -> LoadedSource:
        if request.identifier.suffix == ".json":
            source = json_module_source(request.source.decoded(), filename=request.identifier.path)
            return LoadedSource(source, ModuleFormat.EAGER_SYNC)
        return request.source

    def _make_require(self, record: ModuleRecord):
        def require(specifier: str) -> Any:
            if not isinstance(specifier, str):
                raise EvaluationError(
                    f"require() needs a string specifier, got {type(specifier).__name__}",
                    kind="DynamicRequire",
                    specifier=repr(specifier),
                    trail=(record.id.href,),
                )
            target = record.import_map.get(specifier)
            if target is None:
                target = self.resolve(specifier, record.id, ModuleFormat.EAGER_SYNC)
                dependency = self.registry.get(target)
                if dependency is None or not dependency.is_linked:
                    raise EvaluationError(
                        f"require({specifier!r}) in {record.id.href} is not a literal and "
                        f"{target.href} has not been loaded",
                        kind="DynamicRequire",
                        specifier=specifier,
                        trail=(record.id.href,),
                    )
                dependency.dependents.add(record.id)
            return _sync_value(self.interop.access_from_sync(target))

        return require


def _sync_value(namespace: Namespace) -> Any:
    return namespace.default if namespace.is_aggregate else namespace


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
