"""Hook system data models.

Defines the core types of the resolve/load/transform hook chain:
- HookStage: pipeline stage a handler participates in
- ResolveRequest / LoadRequest / TransformRequest: what a handler receives
- LoadedSource: raw or transformed module source
- Delegate / ShortCircuit: what a handler returns
- HookMatcher: declarative conditions for when a hook participates
- HookDescriptor: a named, prioritized set of stage handlers
"""

from __future__ import annotations

import dataclasses
import fnmatch
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any

from ..identifiers import ResourceIdentifier
from ..manifests.schema import ModuleFormat
from ..module_resolution.resolvers import ResolveContext


class HookStage(str, Enum):
    """Pipeline stage.

    Stages:
    - RESOLVE: specifier + context -> identifier (synchronous)
    - LOAD: identifier -> raw source (may suspend)
    - TRANSFORM: raw source -> evaluable source (may suspend)
    """

    RESOLVE = "resolve"
    LOAD = "load"
    TRANSFORM = "transform"


@dataclass(frozen=True)
class ResolveRequest:
    specifier: str
    context: ResolveContext

    def replace(self, **changes: Any) -> ResolveRequest:
        return dataclasses.replace(self, **changes)

    @property
    def subject(self) -> str:
        return self.specifier


@dataclass(frozen=True)
class LoadedSource:
    """Module source as produced by the load or transform stage.

    Attributes:
        text: Source text (bytes are decoded as UTF-8 before evaluation)
        format: Execution model override; None keeps the resolved format
    """

    text: str | bytes
    format: ModuleFormat | None = None

    def decoded(self) -> str:
        if isinstance(self.text, bytes):
            return self.text.decode("utf-8")
        return self.text


@dataclass(frozen=True)
class LoadRequest:
    identifier: ResourceIdentifier
    format: ModuleFormat

    @property
    def subject(self) -> str:
        return self.identifier.href


@dataclass(frozen=True)
class TransformRequest:
    identifier: ResourceIdentifier
    source: LoadedSource
    format: ModuleFormat

    def replace(self, **changes: Any) -> TransformRequest:
        return dataclasses.replace(self, **changes)

    @property
    def subject(self) -> str:
        return self.identifier.href


@dataclass(frozen=True)
class Delegate:
    """Continue with the next hook, optionally with a rewritten request."""

    request: Any = None


@dataclass(frozen=True)
class ShortCircuit:
    """Final result; the rest of the chain (and the builtin) is skipped."""

    result: Any


HookOutcome = Delegate | ShortCircuit

ResolveHandler = Callable[[ResolveRequest, Callable[..., ResourceIdentifier]], HookOutcome]
LoadHandler = Callable[[LoadRequest, Callable[..., Awaitable[LoadedSource]]], Awaitable[HookOutcome] | HookOutcome]
TransformHandler = Callable[
    [TransformRequest, Callable[..., Awaitable[LoadedSource]]], Awaitable[HookOutcome] | HookOutcome
]


@dataclass
class HookMatcher:
    """Conditions for when a hook participates.

    All specified conditions must match (AND logic).
    Empty matcher matches everything.

    Attributes:
        patterns: Glob patterns matched against the specifier (resolve stage)
            or the resource path and file name (load/transform stages)
        schemes: Identifier schemes to match (file, builtin); ignored for resolve
        formats: Execution models to match
    """

    patterns: list[str] = field(default_factory=list)
    schemes: list[str] = field(default_factory=list)
    formats: list[str] = field(default_factory=list)

    def matches(self, stage: HookStage, request: Any) -> bool:
        """Check if this matcher matches a request.

        Args:
            stage: Pipeline stage
            request: ResolveRequest, LoadRequest or TransformRequest

        Returns:
            True if all conditions match
        """
        if self.formats:
            fmt = request.context.format if stage is HookStage.RESOLVE else request.format
            if fmt.value not in self.formats:
                return False

        if stage is HookStage.RESOLVE:
            if self.patterns:
                return any(fnmatch.fnmatch(request.specifier, p) for p in self.patterns)
            return True

        identifier = request.identifier
        if self.schemes and identifier.scheme not in self.schemes:
            return False

        if self.patterns:
            candidates = (identifier.path, identifier.name)
            if not any(fnmatch.fnmatch(c, p) for c in candidates for p in self.patterns):
                return False

        return True

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        result = {}
        if self.patterns:
            result["patterns"] = self.patterns
        if self.schemes:
            result["schemes"] = self.schemes
        if self.formats:
            result["formats"] = self.formats
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookMatcher:
        """Create from dictionary."""
        return cls(
            patterns=list(data.get("patterns", [])),
            schemes=list(data.get("schemes", [])),
            formats=list(data.get("formats", [])),
        )


@dataclass
class HookDescriptor:
    """A hook: stage handlers plus ordering and participation rules.

    The capability set of a hook is the set of stages it has handlers for.
    Chains order hooks by priority (lower = earlier), then registration order.

    Attributes:
        name: Unique name, used in diagnostics
        handlers: Stage -> handler function
        priority: Execution priority (lower = earlier)
        matcher: Declarative participation conditions
        predicate: Optional extra participation check, called with the request
        description: Human-readable description
    """

    name: str
    handlers: Mapping[HookStage, Callable[..., Any]]
    priority: int = 100
    matcher: HookMatcher = field(default_factory=HookMatcher)
    predicate: Callable[[Any], bool] | None = None
    description: str | None = None

    def __post_init__(self):
        """Validate handlers."""
        if not self.handlers:
            raise ValueError(f"Hook '{self.name}' has no stage handlers")
        handlers = {}
        for stage, handler in self.handlers.items():
            if not callable(handler):
                raise ValueError(f"Hook '{self.name}' handler for '{stage}' is not callable")
            handlers[HookStage(stage)] = handler
        self.handlers = handlers

    @classmethod
    def for_stages(
        cls,
        name: str,
        *,
        resolve: ResolveHandler | None = None,
        load: LoadHandler | None = None,
        transform: TransformHandler | None = None,
        priority: int = 100,
        matcher: HookMatcher | None = None,
        predicate: Callable[[Any], bool] | None = None,
        description: str | None = None,
    ) -> HookDescriptor:
        """Build a descriptor from keyword stage handlers."""
        handlers = {
            stage: handler
            for stage, handler in (
                (HookStage.RESOLVE, resolve),
                (HookStage.LOAD, load),
                (HookStage.TRANSFORM, transform),
            )
            if handler is not None
        }
        return cls(
            name=name,
            handlers=handlers,
            priority=priority,
            matcher=matcher or HookMatcher(),
            predicate=predicate,
            description=description,
        )

    @property
    def capabilities(self) -> frozenset[HookStage]:
        return frozenset(self.handlers)

    def handles(self, stage: HookStage) -> bool:
        return stage in self.handlers
