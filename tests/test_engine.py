"""End-to-end tests for ModuleEngine."""

import asyncio

import pytest

from modlink.engine import ModuleEngine
from modlink.errors import CycleError
from modlink.errors import EvaluationError
from modlink.errors import ManifestError
from modlink.errors import ResolutionError
from modlink.identifiers import ResourceIdentifier
from modlink.manifests.schema import ModuleFormat
from modlink.registry import ModuleStatus
from modlink.settings import EngineSettings


def file_id(path):
    return ResourceIdentifier.from_path(path)


@pytest.mark.asyncio
class TestWorkspaceImports:
    """Tests for linked workspace packages."""

    async def test_api_uses_linked_shared(self, shared_api_workspace, make_engine):
        """Test that api links its workspace sibling and evaluates it once."""
        engine = make_engine()

        api = await engine.import_module("api")

        assert api.message == "hello api"
        assert api.shared_calls == 1
        shared_index = file_id(shared_api_workspace / "packages" / "shared" / "index.py")
        assert engine.registry.get(shared_index).evaluations == 1

    async def test_concurrent_imports_share_evaluation(self, shared_api_workspace, make_engine):
        """Test that concurrent requests for overlapping graphs evaluate each module once."""
        engine = make_engine()

        api, shared, api_again = await asyncio.gather(
            engine.import_module("api"),
            engine.import_module("shared"),
            engine.import_module("api"),
        )

        assert api.message == api_again.message == "hello api"
        assert shared.greet("x") == "hello x"
        assert all(record.evaluations == 1 for record in engine.registry.records())

    async def test_repeated_import_uses_cache(self, shared_api_workspace, make_engine):
        """Test that a second import does not re-run bodies."""
        engine = make_engine()
        await engine.import_module("api")
        api = await engine.import_module("api")
        assert api.shared_calls == 1

    async def test_resolution_failure_names_importer(self, workspace, make_manifest, write_file, make_engine):
        """Test that a missing dependency fails with the importing module on the trail."""
        make_manifest(workspace / "packages" / "bad", "bad", declared_format="async-static", main="index.py")
        index = write_file(workspace / "packages" / "bad" / "index.py", "x = static_import('./missing.py')\n")
        engine = make_engine()

        with pytest.raises(ResolutionError) as exc_info:
            await engine.import_module("bad")

        assert exc_info.value.kind == "NotFound"
        assert exc_info.value.trail == (file_id(index).href,)
        assert engine.registry.get(file_id(index)).status is ModuleStatus.FAILED

    async def test_module_cycle_live_bindings(self, workspace, make_manifest, write_file, make_engine):
        """Test that a module cycle links, sees uninitialized values, then live ones."""
        package = workspace / "packages" / "cyc"
        make_manifest(package, "cyc", declared_format="async-static", main="a.py")
        write_file(
            package / "a.py",
            """
            b = static_import("./b.py")

            __all__ = ["a_value", "seen_from_b"]

            a_value = "A"
            seen_from_b = b.b_value
            """,
        )
        write_file(
            package / "b.py",
            """
            a = static_import("./a.py")

            __all__ = ["a", "b_value", "a_at_link"]

            b_value = "B"
            a_at_link = repr(a.a_value)
            """,
        )
        engine = make_engine()

        a = await engine.import_module("cyc")
        b = await engine.import_module("./packages/cyc/b.py")

        assert a.seen_from_b == "B"
        assert b.a_at_link == "<uninitialized>"
        assert b.a.a_value == "A"


class TestEagerModules:
    """Tests for eager-sync modules, JSON and synchronous require."""

    def test_require_eager_package(self, workspace, make_manifest, write_file, make_engine):
        """Test require of an eager package with JSON and extensionless requires."""
        package = workspace / "packages" / "legacy"
        make_manifest(package, "legacy")
        write_file(package / "config.json", '{"name": "legacy", "retries": 3}')
        write_file(
            package / "helper.py",
            """
            def double(x):
                return x * 2

            exports.double = double
            """,
        )
        write_file(
            package / "index.py",
            """
            config = require("./config.json")
            helper = require("./helper")
            module.exports = {"name": config["name"], "value": helper.double(config["retries"])}
            """,
        )
        engine = make_engine()

        assert engine.require("legacy") == {"name": "legacy", "value": 6}
        config = engine.registry.get(file_id(package / "config.json"))
        assert config.format is ModuleFormat.EAGER_SYNC
        assert config.status is ModuleStatus.EVALUATED

    def test_eager_cycle_sees_final_exports(self, workspace, make_manifest, write_file, make_engine):
        """Test that two eager modules requiring each other share their exports objects."""
        package = workspace / "packages" / "cyc"
        make_manifest(package, "cyc", main="a.py")
        write_file(
            package / "a.py",
            """
            b = require("./b.py")
            exports.x = 1
            exports.from_b = b.get
            """,
        )
        write_file(
            package / "b.py",
            """
            a = require("./a.py")
            exports.get = lambda: a.x
            """,
        )
        engine = make_engine()

        cyc = engine.require("cyc")

        assert cyc.x == 1
        assert cyc.from_b() == 1
        assert engine.registry.get(file_id(package / "b.py")).status is ModuleStatus.EVALUATED

    def test_dynamic_require_of_unloaded_module(self, workspace, make_manifest, write_file, make_engine):
        """Test that a computed require of an unlinked module fails."""
        package = workspace / "packages" / "dyn"
        make_manifest(package, "dyn")
        write_file(package / "other.py", "module.exports = 1\n")
        write_file(package / "index.py", "name = './other.py'\nmodule.exports = require(name)\n")
        engine = make_engine()

        with pytest.raises(EvaluationError) as exc_info:
            engine.require("dyn")
        assert exc_info.value.kind == "DynamicRequire"

    def test_require_non_string(self, workspace, make_manifest, write_file, make_engine):
        """Test that require rejects non-string specifiers."""
        package = workspace / "packages" / "dyn"
        make_manifest(package, "dyn")
        write_file(package / "index.py", "value = 42\nmodule.exports = require(value)\n")
        engine = make_engine()

        with pytest.raises(EvaluationError) as exc_info:
            engine.require("dyn")
        assert exc_info.value.kind == "DynamicRequire"

    def test_body_failure(self, workspace, make_manifest, write_file, make_engine):
        """Test that a raising body is reported as BodyFailed and cached."""
        package = workspace / "packages" / "boom"
        make_manifest(package, "boom")
        write_file(package / "index.py", "raise RuntimeError('kaboom')\n")
        engine = make_engine()

        with pytest.raises(EvaluationError) as first:
            engine.require("boom")
        with pytest.raises(EvaluationError) as second:
            engine.require("boom")
        assert first.value.kind == "BodyFailed"
        assert second.value is first.value


@pytest.mark.asyncio
class TestHooksAndBuiltins:
    """Tests for hook-provided formats and built-in modules."""

    async def test_yaml_hook(self, workspace, make_manifest, write_file, make_engine, yaml_hook):
        """Test a hook that resolves, loads and transforms YAML documents."""
        package = workspace / "packages" / "conf"
        make_manifest(package, "conf", declared_format="async-static", main="index.py")
        write_file(package / "settings.yaml", "name: demo\nlimits:\n  max: 5\n")
        write_file(
            package / "index.py",
            """
            settings = static_import("./settings.yaml")

            __all__ = ["name", "limit"]

            name = settings.default["name"]
            limit = settings.default["limits"]["max"]
            """,
        )
        engine = make_engine(hooks=[yaml_hook])

        conf = await engine.import_module("conf")

        assert conf.name == "demo"
        assert conf.limit == 5
        assert engine.hooks.list_hooks()["load"] == ["yaml-modules"]

    async def test_builtin_module(self, workspace, make_manifest, write_file, make_engine):
        """Test host-defined modules in the builtin namespace."""
        package = workspace / "packages" / "timer"
        make_manifest(package, "timer", declared_format="async-static", main="index.py")
        write_file(
            package / "index.py",
            """
            clock = static_import("builtin:clock")

            __all__ = ["started"]

            started = clock.now()
            """,
        )
        engine = make_engine(builtins={"clock": {"now": lambda: 123}})

        timer = await engine.import_module("timer")
        assert timer.started == 123

        engine.define_builtin("clock", {"now": lambda: 456})
        timer = await engine.import_module("timer")
        assert timer.started == 456

    async def test_unknown_builtin(self, make_engine):
        """Test that undefined built-ins fail to resolve."""
        engine = make_engine()
        with pytest.raises(ResolutionError):
            await engine.import_module("builtin:nope")


class TestWorkspaceLifecycle:
    """Tests for start, reload and invalidation."""

    def test_package_cycle_rejected_at_start(self, workspace, make_manifest, make_engine):
        """Test that a local-link cycle is reported before anything loads."""
        make_manifest(workspace / "packages" / "a", "a", dependencies={"b": "workspace:*"})
        make_manifest(workspace / "packages" / "b", "b", dependencies={"a": "workspace:*"})

        with pytest.raises(CycleError) as exc_info:
            make_engine()
        assert exc_info.value.cycle == ["a", "b", "a"]

    def test_start_reports_build_order(self, shared_api_workspace, make_engine):
        """Test the graph returned by start."""
        engine = make_engine()
        assert engine.graph.build_order == ["shared", "api"]

    def test_resolve_is_deterministic(self, shared_api_workspace, make_engine):
        """Test that repeated resolution yields the same identifier."""
        engine = make_engine()
        importer = file_id(shared_api_workspace / "packages" / "api" / "main.py")

        first = engine.resolve("shared", importer)
        assert all(engine.resolve("shared", importer) == first for _ in range(3))
        assert first == file_id(shared_api_workspace / "packages" / "shared" / "index.py")

    def test_reload_manifest_invalidates_package_modules(self, shared_api_workspace, make_engine, write_file):
        """Test that a manifest reload resets the package's modules and their dependents."""
        engine = make_engine()
        asyncio.run(engine.import_module("api"))

        shared_root = shared_api_workspace / "packages" / "shared"
        write_file(
            shared_root / "index.py",
            """
            import itertools

            __all__ = ["greet", "calls"]

            calls = itertools.count(10)

            def greet(name):
                return f"hi {name}"
            """,
        )
        manifest = engine.reload_manifest(shared_root)

        api_main = file_id(shared_api_workspace / "packages" / "api" / "main.py")
        assert manifest.name == "shared"
        assert engine.registry.get(api_main).status is ModuleStatus.PENDING

        api = asyncio.run(engine.import_module("api"))
        assert api.message == "hi api"
        assert api.shared_calls == 10

    def test_failed_reload_keeps_manifest(self, shared_api_workspace, make_engine, make_manifest):
        """Test that an invalid manifest on reload leaves the package linked."""
        engine = make_engine()
        shared_root = shared_api_workspace / "packages" / "shared"
        (shared_root / "package.yaml").write_text("name: shared\n")

        with pytest.raises(ManifestError):
            engine.reload_manifest(shared_root)
        assert [m.name for m in engine.store.members()] == ["api", "shared"]

        make_manifest(shared_root, "shared", "1.3.0", declared_format="async-static", main="index.py")
        assert engine.reload_manifest(shared_root).version == "1.3.0"
        api = asyncio.run(engine.import_module("api"))
        assert api.message == "hello api"

    def test_invalidate_cascades(self, shared_api_workspace, make_engine):
        """Test engine.invalidate resets dependents."""
        engine = make_engine()
        asyncio.run(engine.import_module("api"))

        shared_index = file_id(shared_api_workspace / "packages" / "shared" / "index.py")
        api_main = file_id(shared_api_workspace / "packages" / "api" / "main.py")
        assert engine.invalidate(shared_index) == [shared_index, api_main]

    def test_context_manager(self, shared_api_workspace):
        """Test that the engine starts on enter and drops state on exit."""
        with ModuleEngine(shared_api_workspace, settings=EngineSettings()) as engine:
            assert engine.graph is not None
            asyncio.run(engine.import_module("api"))
            assert len(engine.registry) > 0
        assert len(engine.registry) == 0
        assert engine.graph is None
