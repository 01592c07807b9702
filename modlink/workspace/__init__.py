"""Workspace membership and local-link dependency graph."""

from .discovery import discover_members
from .discovery import read_workspace_declaration
from .graph import WorkspaceGraph
from .graph import WorkspaceNode
from .graph import build_graph

__all__ = [
    "WorkspaceGraph",
    "WorkspaceNode",
    "build_graph",
    "discover_members",
    "read_workspace_declaration",
]
