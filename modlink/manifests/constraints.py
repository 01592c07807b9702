"""Dependency value parsing.

A manifest dependency value is either a workspace marker (resolve to the
local linked package) or an npm-style version range that is handed to the
external registry collaborator untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from dataclasses import field

import semantic_version

WORKSPACE_PREFIX = "workspace:"

# Bare workspace shorthands that always link to the member's current version
WORKSPACE_SHORTHANDS = frozenset({"*", "^", "~"})

_DIST_TAG = re.compile(r"^[a-z][a-z0-9-]*$")


@dataclass(frozen=True)
class VersionConstraint:
    """Registry version range (or dist-tag such as ``latest``)."""

    raw: str
    spec: semantic_version.NpmSpec | None = field(default=None, compare=False, repr=False)

    @property
    def is_dist_tag(self) -> bool:
        return self.spec is None

    def allows(self, version: str) -> bool:
        if self.spec is None:
            return True
        return self.spec.match(semantic_version.Version(version))


@dataclass(frozen=True)
class WorkspaceRef:
    """Workspace marker (``workspace:*``, ``workspace:^1.2.0`` ...)."""

    raw: str
    range: str
    spec: semantic_version.NpmSpec | None = field(default=None, compare=False, repr=False)

    def allows(self, version: str) -> bool:
        """Check the linked member's version against the marker range."""
        if self.spec is None:
            return True
        return self.spec.match(semantic_version.Version(version))


DependencySpec = VersionConstraint | WorkspaceRef


def is_workspace_marker(value: str) -> bool:
    return value.strip().startswith(WORKSPACE_PREFIX)


def parse_dependency_spec(value: str) -> DependencySpec:
    """Parse a manifest dependency value.

    Args:
        value: Raw dependency value from the manifest

    Returns:
        WorkspaceRef or VersionConstraint

    Raises:
        ValueError: Value is neither a workspace marker nor a valid range
    """
    if not isinstance(value, str):
        raise ValueError(f"dependency value must be a string, got {type(value).__name__}")

    raw = value.strip()
    if raw.startswith(WORKSPACE_PREFIX):
        range_part = raw[len(WORKSPACE_PREFIX) :].strip()
        if not range_part:
            raise ValueError(f"empty workspace marker '{raw}'")
        if range_part in WORKSPACE_SHORTHANDS:
            return WorkspaceRef(raw=raw, range=range_part)
        return WorkspaceRef(raw=raw, range=range_part, spec=_parse_range(range_part, raw))

    if raw == "":
        raw = "*"
    if _DIST_TAG.match(raw) and raw != "x":
        return VersionConstraint(raw=raw)
    return VersionConstraint(raw=raw, spec=_parse_range(raw, raw))


def _parse_range(range_part: str, raw: str) -> semantic_version.NpmSpec:
    try:
        return semantic_version.NpmSpec(range_part)
    except ValueError as e:
        raise ValueError(f"unparseable version constraint '{raw}': {e}") from e
