"""Pytest configuration and workspace fixtures for modlink tests."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path
from typing import Any

import pytest
import yaml

from modlink.engine import ModuleEngine
from modlink.hooks.models import Delegate
from modlink.hooks.models import HookDescriptor
from modlink.hooks.models import HookMatcher
from modlink.hooks.models import LoadedSource
from modlink.hooks.models import ShortCircuit
from modlink.identifiers import ResourceIdentifier
from modlink.manifests.schema import ModuleFormat
from modlink.settings import EngineSettings


def write(path: Path, text: str = "") -> Path:
    """Write dedented text, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text).lstrip("\n"), encoding="utf-8")
    return path


def write_manifest(
    root: Path,
    name: str,
    version: str = "1.0.0",
    *,
    declared_format: str | None = None,
    dependencies: dict[str, str] | None = None,
    entry_points: dict[str, str] | None = None,
    main: str | None = None,
    as_json: bool = False,
) -> Path:
    data: dict[str, Any] = {"name": name, "version": version}
    if declared_format:
        data["declaredFormat"] = declared_format
    if dependencies:
        data["dependencies"] = dependencies
    if entry_points:
        data["entryPoints"] = entry_points
    if main:
        data["main"] = main
    root.mkdir(parents=True, exist_ok=True)
    if as_json:
        return write(root / "package.json", json.dumps(data))
    return write(root / "package.yaml", yaml.safe_dump(data, sort_keys=False))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep ~/.modlink/settings.yaml of the developer out of tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def workspace(tmp_path) -> Path:
    """Empty workspace root declaring packages/* as members."""
    root = tmp_path / "ws"
    write(root / "workspace.yaml", "packages:\n  - packages/*\n")
    return root


@pytest.fixture
def make_engine(workspace):
    """Factory for started engines over the ``workspace`` root."""
    engines: list[ModuleEngine] = []

    def _make(root: Path | None = None, *, hooks=(), builtins=None, **settings: Any) -> ModuleEngine:
        engine = ModuleEngine(
            root or workspace,
            settings=EngineSettings(**settings),
            hooks=hooks,
            builtins=builtins,
        )
        engine.start()
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def shared_api_workspace(workspace) -> Path:
    """Workspace with ``api`` linking ``shared`` through a workspace marker."""
    shared = workspace / "packages" / "shared"
    write_manifest(shared, "shared", "1.2.0", declared_format="async-static", main="index.py")
    write(
        shared / "index.py",
        """
        import itertools

        __all__ = ["greet", "calls"]

        calls = itertools.count(1)

        def greet(name):
            return f"hello {name}"
        """,
    )

    api = workspace / "packages" / "api"
    write_manifest(
        api,
        "api",
        "0.1.0",
        declared_format="async-static",
        dependencies={"shared": "workspace:^1.0.0"},
        entry_points={"import": "./main.py"},
    )
    write(
        api / "main.py",
        """
        shared = static_import("shared")

        __all__ = ["message", "shared_calls"]

        message = shared.greet("api")
        shared_calls = next(shared.calls)
        """,
    )
    return workspace


# ----- YAML hook used by the hook scenario tests -----


def _yaml_resolve(request, next_resolve):
    if not request.specifier.endswith((".yaml", ".yml")):
        return Delegate()
    return ShortCircuit(ResourceIdentifier.from_path(request.context.directory / request.specifier))


async def _yaml_load(request, next_load):
    text = request.identifier.as_path().read_text(encoding="utf-8")
    return ShortCircuit(LoadedSource(text, ModuleFormat.ASYNC_STATIC))


async def _yaml_transform(request, next_transform):
    document = yaml.safe_load(request.source.decoded())
    source = f"__all__ = ['default']\ndefault = {document!r}\n"
    return ShortCircuit(LoadedSource(source, ModuleFormat.ASYNC_STATIC))


@pytest.fixture
def yaml_hook() -> HookDescriptor:
    return HookDescriptor.for_stages(
        "yaml-modules",
        resolve=_yaml_resolve,
        load=_yaml_load,
        transform=_yaml_transform,
        priority=10,
        matcher=HookMatcher(patterns=["*.yaml", "*.yml"]),
    )


@pytest.fixture
def write_file():
    return write


@pytest.fixture
def make_manifest():
    return write_manifest
