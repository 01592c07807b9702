"""Workspace dependency graph.

Edges exist only for dependencies declared with a workspace marker; ordinary
version constraints are left for the external registry collaborator. The
local-link graph must be acyclic so that a build order exists. Circular
imports between *modules* of different packages are a registry concern and
are unaffected by this restriction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from ..errors import CycleError
from ..errors import ManifestError
from ..manifests.schema import PackageManifest

logger = logging.getLogger(__name__)

# Three-color marks for the depth-first sort
_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class WorkspaceNode:
    """A workspace member and its local links.

    Attributes:
        manifest: The member's manifest
        root: Resolved package root on disk
        links: Names of linked members, in declared dependency order
    """

    manifest: PackageManifest
    root: Path
    links: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.manifest.name


class WorkspaceGraph:
    """Acyclic graph of workspace members with a deterministic build order."""

    def __init__(self, nodes: dict[str, WorkspaceNode], build_order: list[str]):
        self.nodes = nodes
        self.build_order = build_order

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, name: str) -> WorkspaceNode | None:
        return self.nodes.get(name)

    def resolve_local(self, from_package: str, dependency: str) -> Path | None:
        """Linked root of ``dependency`` as seen from ``from_package``.

        Returns None unless ``from_package`` declares a workspace edge to
        ``dependency``; the caller then falls through to the registry
        collaborator.
        """
        node = self.nodes.get(from_package)
        if node is None or dependency not in node.links:
            return None
        return self.nodes[dependency].root

    def dependencies_of(self, name: str) -> list[str]:
        node = self.nodes.get(name)
        return list(node.links) if node else []

    def dependents_of(self, name: str) -> list[str]:
        """All members that transitively link to ``name``, in build order."""
        affected = {name}
        changed = True
        while changed:
            changed = False
            for node in self.nodes.values():
                if node.name not in affected and affected.intersection(node.links):
                    affected.add(node.name)
                    changed = True
        return [n for n in self.build_order if n in affected and n != name]

    def node_for_path(self, path: str | Path) -> WorkspaceNode | None:
        """Member whose root most closely encloses ``path``."""
        path = Path(path).resolve()
        best: WorkspaceNode | None = None
        for node in self.nodes.values():
            if path == node.root or node.root in path.parents:
                if best is None or len(node.root.parts) > len(best.root.parts):
                    best = node
        return best


def build_graph(manifests: Iterable[PackageManifest]) -> WorkspaceGraph:
    """Build the workspace graph and its build order.

    Args:
        manifests: Workspace member manifests (with ``root`` attached)

    Returns:
        WorkspaceGraph

    Raises:
        ManifestError: A workspace marker names an unknown member, or the
            member's version does not satisfy the marker range
        CycleError: The local-link graph has a cycle
    """
    nodes: dict[str, WorkspaceNode] = {}
    for manifest in manifests:
        if manifest.root is None:
            raise ValueError(f"Manifest for '{manifest.name}' has no package root")
        nodes[manifest.name] = WorkspaceNode(manifest=manifest, root=manifest.root)

    for node in nodes.values():
        for dep_name, ref in node.manifest.workspace_dependencies().items():
            target = nodes.get(dep_name)
            if target is None:
                raise ManifestError(
                    f"'{node.name}' depends on '{dep_name}' via '{ref.raw}' but no workspace package has that name",
                    kind="UnknownWorkspacePackage",
                    specifier=dep_name,
                    path=str(node.root),
                )
            if not ref.allows(target.manifest.version):
                raise ManifestError(
                    f"'{node.name}' requires {dep_name}@{ref.range} but the workspace has "
                    f"{dep_name}@{target.manifest.version}",
                    kind="WorkspaceVersionMismatch",
                    specifier=dep_name,
                    path=str(node.root),
                )
            node.links.append(dep_name)

    order = _topological_order(nodes)
    logger.debug(f"[workspace] build order: {', '.join(order)}")
    return WorkspaceGraph(nodes, order)


def _topological_order(nodes: dict[str, WorkspaceNode]) -> list[str]:
    """Iterative three-color DFS; dependencies come before dependents."""
    color = dict.fromkeys(nodes, _WHITE)
    order: list[str] = []

    for start in sorted(nodes):
        if color[start] != _WHITE:
            continue

        color[start] = _GRAY
        path = [start]
        stack = [(start, iter(nodes[start].links))]
        while stack:
            name, edges = stack[-1]
            advanced = False
            for dep in edges:
                if color[dep] == _GRAY:
                    cycle = path[path.index(dep) :] + [dep]
                    raise CycleError(cycle, specifier=dep)
                if color[dep] == _WHITE:
                    color[dep] = _GRAY
                    path.append(dep)
                    stack.append((dep, iter(nodes[dep].links)))
                    advanced = True
                    break
            if not advanced:
                color[name] = _BLACK
                order.append(name)
                path.pop()
                stack.pop()

    return order
