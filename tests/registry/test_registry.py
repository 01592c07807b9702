"""Tests for the module registry."""

import asyncio
from dataclasses import dataclass
from dataclasses import field

import pytest

from modlink.errors import EvaluationError
from modlink.errors import ResolutionError
from modlink.identifiers import ResourceIdentifier
from modlink.manifests.schema import ModuleFormat
from modlink.registry import UNINITIALIZED
from modlink.registry import ModuleRegistry
from modlink.registry import ModuleStatus


def ident(name):
    return ResourceIdentifier.builtin(f"test/{name}")


@dataclass
class FakeModule:
    deps: list = field(default_factory=list)
    exports: dict = field(default_factory=dict)
    fail_with: Exception | None = None
    fetch_error: Exception | None = None
    gate: asyncio.Event | None = None
    body: object = None


class FakeLoader:
    """Loader serving modules from a dictionary and counting calls."""

    def __init__(self, modules):
        self.modules = {ident(name): module for name, module in modules.items()}
        self.fetches = []
        self.evaluated = []
        self.registry = None

    def format_for(self, identifier):
        return ModuleFormat.ASYNC_STATIC

    async def fetch(self, record):
        module = self.modules[record.id]
        self.fetches.append(record.id.path)
        if module.gate is not None:
            await module.gate.wait()
        if module.fetch_error is not None:
            raise module.fetch_error
        record.exported_names = tuple(module.exports)
        record.dependencies = [ident(dep) for dep in module.deps]

    async def evaluate(self, record):
        module = self.modules[record.id]
        self.evaluated.append(record.id.path)
        if module.body is not None:
            module.body(self.registry)
        if module.fail_with is not None:
            raise module.fail_with
        for name, value in module.exports.items():
            record.bindings[name].set(value)


def make_registry(**modules):
    loader = FakeLoader(modules)
    registry = ModuleRegistry(loader)
    loader.registry = registry
    return registry, loader


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
class TestEnsureLoaded:
    """Tests for loading, single-flight and failure caching."""

    async def test_loads_dependencies_first(self):
        """Test that dependencies are evaluated before their importer."""
        registry, loader = make_registry(
            app=FakeModule(deps=["lib"], exports={"x": 1}),
            lib=FakeModule(exports={"y": 2}),
        )

        record = await registry.ensure_loaded(ident("app"))

        assert record.status is ModuleStatus.EVALUATED
        assert loader.evaluated == ["test/lib", "test/app"]
        assert registry.get(ident("lib")).dependents == {ident("app")}

    async def test_single_flight(self):
        """Test that concurrent requests share one load and one evaluation."""
        gate = asyncio.Event()
        registry, loader = make_registry(
            a=FakeModule(deps=["shared"]),
            b=FakeModule(deps=["shared"]),
            shared=FakeModule(exports={"value": 42}, gate=gate),
        )

        pending = asyncio.gather(
            registry.ensure_loaded(ident("a")),
            registry.ensure_loaded(ident("b")),
            registry.ensure_loaded(ident("shared")),
        )
        await settle()
        gate.set()
        await pending

        shared = registry.get(ident("shared"))
        assert loader.fetches.count("test/shared") == 1
        assert shared.evaluations == 1
        assert shared.interest == 0

    async def test_evaluated_record_not_reloaded(self):
        """Test that a second request returns the cached record."""
        registry, loader = make_registry(a=FakeModule(exports={"v": 1}))
        first = await registry.ensure_loaded(ident("a"))
        second = await registry.ensure_loaded(ident("a"))
        assert first is second
        assert loader.fetches == ["test/a"]

    async def test_failure_is_cached_with_trail(self):
        """Test that a failing body is cached and reported with the importer chain."""
        registry, loader = make_registry(
            app=FakeModule(deps=["mid"]),
            mid=FakeModule(deps=["broken"]),
            broken=FakeModule(fail_with=ValueError("bad body")),
        )

        with pytest.raises(EvaluationError) as exc_info:
            await registry.ensure_loaded(ident("app"))

        err = exc_info.value
        assert err.kind == "BodyFailed"
        assert err.trail == (ident("app").href, ident("mid").href)
        assert isinstance(err.__cause__, ValueError)

        broken = registry.get(ident("broken"))
        assert broken.status is ModuleStatus.FAILED
        assert broken.error.trail == ()

        with pytest.raises(EvaluationError):
            await registry.ensure_loaded(ident("broken"))
        assert loader.fetches.count("test/broken") == 1

    async def test_engine_error_keeps_type(self):
        """Test that engine errors from fetch are cached unchanged."""
        registry, _ = make_registry(
            a=FakeModule(fetch_error=ResolutionError("missing", kind="NotFound", specifier="./x.py")),
        )
        with pytest.raises(ResolutionError) as exc_info:
            await registry.ensure_loaded(ident("a"))
        assert exc_info.value.kind == "NotFound"
        assert registry.get(ident("a")).status is ModuleStatus.FAILED

    async def test_cycle_sees_partial_record(self):
        """Test that a two-module cycle links and observes uninitialized cells."""
        observed = {}

        def read_a(registry):
            observed["a.x"] = registry.get(ident("a")).bindings["x"].value
            observed["a.status"] = registry.get(ident("a")).status

        registry, loader = make_registry(
            a=FakeModule(deps=["b"], exports={"x": "from a"}),
            b=FakeModule(deps=["a"], exports={"y": "from b"}, body=read_a),
        )

        record = await registry.ensure_loaded(ident("a"))

        assert observed["a.x"] is UNINITIALIZED
        assert observed["a.status"] is ModuleStatus.EVALUATING
        assert record.bindings["x"].value == "from a"
        assert registry.get(ident("b")).bindings["y"].value == "from b"
        assert loader.evaluated == ["test/b", "test/a"]

    async def test_three_module_cycle(self):
        """Test a longer cycle terminates with every record evaluated once."""
        registry, loader = make_registry(
            a=FakeModule(deps=["b"]),
            b=FakeModule(deps=["c"]),
            c=FakeModule(deps=["a"]),
        )
        await registry.ensure_loaded(ident("a"))
        assert sorted(loader.evaluated) == ["test/a", "test/b", "test/c"]
        assert all(r.status is ModuleStatus.EVALUATED for r in registry.records())


@pytest.mark.asyncio
class TestCancellation:
    """Tests for interest-counted cancellation."""

    async def test_sole_waiter_cancels_load(self):
        """Test that cancelling the only waiter resets the record to pending."""
        gate = asyncio.Event()
        registry, loader = make_registry(slow=FakeModule(exports={"v": 1}, gate=gate))

        waiter = asyncio.create_task(registry.ensure_loaded(ident("slow")))
        await settle()
        record = registry.get(ident("slow"))
        load_task = record.task
        assert record.status is ModuleStatus.LOADING

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.wait({load_task})

        assert record.status is ModuleStatus.PENDING
        assert record.task is None
        assert record.interest == 0

        gate.set()
        reloaded = await registry.ensure_loaded(ident("slow"))
        assert reloaded.status is ModuleStatus.EVALUATED
        assert loader.fetches == ["test/slow", "test/slow"]

    async def test_remaining_waiter_keeps_load_alive(self):
        """Test that the load survives while another caller still waits."""
        gate = asyncio.Event()
        registry, _ = make_registry(slow=FakeModule(exports={"v": 1}, gate=gate))

        first = asyncio.create_task(registry.ensure_loaded(ident("slow")))
        second = asyncio.create_task(registry.ensure_loaded(ident("slow")))
        await settle()

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert registry.get(ident("slow")).in_flight

        gate.set()
        record = await second
        assert record.status is ModuleStatus.EVALUATED
        assert record.evaluations == 1


@pytest.mark.asyncio
class TestInvalidation:
    """Tests for invalidate and synthetic records."""

    async def test_invalidate_cascades_to_dependents(self):
        """Test that dependents are reset and re-evaluated on next load."""
        registry, loader = make_registry(
            app=FakeModule(deps=["lib"]),
            lib=FakeModule(exports={"v": 1}),
            other=FakeModule(),
        )
        await registry.ensure_loaded(ident("app"))
        await registry.ensure_loaded(ident("other"))

        reset = registry.invalidate(ident("lib"))

        assert reset == [ident("lib"), ident("app")]
        assert registry.get(ident("app")).status is ModuleStatus.PENDING
        assert registry.get(ident("other")).status is ModuleStatus.EVALUATED

        await registry.ensure_loaded(ident("app"))
        assert loader.evaluated.count("test/lib") == 2
        assert registry.get(ident("lib")).evaluations == 2

    async def test_invalidate_clears_cached_failure(self):
        """Test that a failed record can be retried after invalidation."""
        registry, loader = make_registry(flaky=FakeModule(exports={"v": 1}, fail_with=ValueError("first try")))
        with pytest.raises(EvaluationError):
            await registry.ensure_loaded(ident("flaky"))

        loader.modules[ident("flaky")].fail_with = None
        assert registry.invalidate(ident("flaky")) == [ident("flaky")]
        assert registry.get(ident("flaky")).error is None

        record = await registry.ensure_loaded(ident("flaky"))
        assert record.bindings["v"].value == 1

    async def test_invalidate_unknown(self):
        """Test invalidating an identifier that was never requested."""
        registry, _ = make_registry()
        assert registry.invalidate(ident("ghost")) == []

    async def test_invalidate_in_flight_rejected(self):
        """Test that a loading record cannot be invalidated."""
        gate = asyncio.Event()
        registry, _ = make_registry(slow=FakeModule(gate=gate))
        waiter = asyncio.create_task(registry.ensure_loaded(ident("slow")))
        await settle()

        with pytest.raises(RuntimeError):
            registry.invalidate(ident("slow"))

        gate.set()
        await waiter

    async def test_synthetic_records(self):
        """Test that host-defined modules are evaluated and survive invalidation."""
        registry, loader = make_registry(app=FakeModule(deps=["host"]))
        host = registry.define_synthetic(ident("host"), {"answer": 42})

        await registry.ensure_loaded(ident("app"))

        assert host.status is ModuleStatus.EVALUATED
        assert host.bindings["answer"].value == 42
        assert "test/host" not in loader.fetches
        assert registry.invalidate(ident("host")) == [ident("app")]
        assert host.status is ModuleStatus.EVALUATED

    async def test_clear(self):
        """Test that clear drops every record."""
        registry, _ = make_registry(a=FakeModule())
        await registry.ensure_loaded(ident("a"))
        registry.clear()
        assert len(registry) == 0
        assert ident("a") not in registry
