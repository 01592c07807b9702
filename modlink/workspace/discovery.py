"""Workspace membership discovery.

Expands the root-level workspace document into concrete package roots:

```yaml
# workspace.yaml
packages:
  - packages/*
  - apps/**
  - "!packages/legacy-*"
```

Patterns are globs relative to the workspace root; a leading ``!`` excludes.
Only directories containing a manifest become members. Installed package
directories are never members.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ManifestError
from ..manifests.schema import WorkspaceDeclaration

logger = logging.getLogger(__name__)


def read_workspace_declaration(root: Path, filename: str) -> WorkspaceDeclaration | None:
    """Read the workspace document, or None when the root has none.

    Raises:
        ManifestError: Document exists but is not a valid declaration
    """
    path = root / filename
    if not path.is_file():
        return None

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ManifestError(f"Cannot parse workspace file {path}: {e}", kind="Unparseable", path=str(path)) from e

    if not isinstance(data, dict):
        raise ManifestError(f"Workspace file {path} must be a mapping", kind="Unparseable", path=str(path))

    try:
        return WorkspaceDeclaration.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Invalid workspace file {path}: {e}", kind="InvalidField", path=str(path)) from e


def discover_members(
    root: Path,
    patterns: list[str],
    is_package_root: Callable[[Path], bool],
    ignore_dirs: tuple[str, ...] = (),
) -> list[Path]:
    """Expand membership patterns into sorted package roots.

    Args:
        root: Workspace root
        patterns: Glob patterns; ``!pattern`` excludes
        is_package_root: Predicate telling whether a directory holds a manifest
        ignore_dirs: Directory names never descended into (installed packages)

    Returns:
        Sorted, de-duplicated absolute package roots
    """
    root = root.resolve()
    includes = [p for p in patterns if not p.startswith("!")]
    excludes = [p[1:] for p in patterns if p.startswith("!")]

    found: set[Path] = set()
    for pattern in includes:
        for candidate in root.glob(pattern):
            if not candidate.is_dir():
                continue
            if any(part in ignore_dirs for part in candidate.relative_to(root).parts):
                continue
            if is_package_root(candidate):
                found.add(candidate.resolve())

    for pattern in excludes:
        for candidate in root.glob(pattern):
            found.discard(candidate.resolve())

    if is_package_root(root):
        found.add(root)

    members = sorted(found)
    logger.debug(f"[workspace] discovered {len(members)} member(s) under {root}")
    return members
