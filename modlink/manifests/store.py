"""Manifest store: parses and indexes package manifests.

The store is one of the two pieces of process-wide mutable state in an
engine (the other is the module registry). Manifests are only ever created
through load()/reload(); callers never mutate them.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ManifestError
from .schema import PackageManifest

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_NAMES = ("package.yaml", "package.yml", "package.json")

# pydantic error type -> ManifestError kind
_ERROR_KINDS = {
    "missing": "MissingField",
    "invalid_constraint": "InvalidConstraint",
    "conflicting_format": "ConflictingFormat",
}


class ManifestStore:
    """Loads manifests from package roots and indexes them by name.

    Name collisions: last-loaded wins, except that a workspace member is never
    replaced by a non-member, and two different workspace members with the
    same name raise ManifestError(WorkspaceConflict).
    """

    def __init__(self, manifest_names: tuple[str, ...] | list[str] = DEFAULT_MANIFEST_NAMES):
        self.manifest_names = tuple(manifest_names)
        self._by_root: dict[Path, PackageManifest] = {}
        self._by_name: dict[str, PackageManifest] = {}
        self._members: dict[str, PackageManifest] = {}
        self._no_manifest: set[Path] = set()

    def manifest_path(self, root: Path) -> Path | None:
        """First manifest file present in ``root`` (in configured order)."""
        for name in self.manifest_names:
            candidate = root / name
            if candidate.is_file():
                return candidate
        return None

    def load(self, root: str | Path, *, member: bool = False) -> PackageManifest:
        """Load and index the manifest of a package root.

        Args:
            root: Package root directory
            member: Whether the package is a workspace member

        Returns:
            The parsed manifest with ``root`` attached

        Raises:
            ManifestError: Missing/invalid fields, unparseable document or
                constraint, conflicting format conditions, workspace conflict
        """
        root = Path(root).resolve()
        path = self.manifest_path(root)
        if path is None:
            raise ManifestError(
                f"No manifest ({', '.join(self.manifest_names)}) in package root {root}",
                kind="MissingField",
                path=str(root),
            )

        data = self._read(path)
        try:
            manifest = PackageManifest.model_validate(data)
        except ValidationError as e:
            raise self._translate(e, path) from e

        manifest = manifest.model_copy(update={"root": root})
        self._index(manifest, member)
        self._no_manifest.discard(root)
        logger.debug(f"[manifest] loaded {manifest.name}@{manifest.version} from {path}")
        return manifest

    def reload(self, root: str | Path) -> PackageManifest:
        """Re-read a manifest, replacing the indexed copy.

        The previous manifest stays indexed when the new document fails
        to load.
        """
        root = Path(root).resolve()
        previous = self._by_root.pop(root, None)
        member = named = False
        if previous is not None:
            member = self._members.get(previous.name) is previous
            if member:
                del self._members[previous.name]
            named = self._by_name.get(previous.name) is previous
            if named:
                del self._by_name[previous.name]
        try:
            return self.load(root, member=member)
        except ManifestError:
            if previous is not None:
                self._by_root[root] = previous
                if member:
                    self._members[previous.name] = previous
                if named:
                    self._by_name[previous.name] = previous
            raise

    def lookup(self, name: str) -> PackageManifest | None:
        return self._by_name.get(name)

    def for_root(self, root: str | Path) -> PackageManifest | None:
        return self._by_root.get(Path(root).resolve())

    def find_owner(self, path: str | Path) -> PackageManifest | None:
        """Nearest package enclosing ``path`` (loads manifests on demand)."""
        current = Path(path).resolve()
        if not current.is_dir():
            current = current.parent
        for directory in (current, *current.parents):
            if directory in self._by_root:
                return self._by_root[directory]
            if directory in self._no_manifest:
                continue
            if self.manifest_path(directory) is not None:
                return self.load(directory)
            self._no_manifest.add(directory)
        return None

    def members(self) -> list[PackageManifest]:
        """Workspace members sorted by name."""
        return [self._members[name] for name in sorted(self._members)]

    def is_member(self, manifest: PackageManifest) -> bool:
        return self._members.get(manifest.name) is manifest

    def clear(self) -> None:
        self._by_root.clear()
        self._by_name.clear()
        self._members.clear()
        self._no_manifest.clear()

    def _index(self, manifest: PackageManifest, member: bool) -> None:
        name = manifest.name
        if member:
            existing = self._members.get(name)
            if existing is not None and existing.root != manifest.root:
                raise ManifestError(
                    f"Workspace packages at {existing.root} and {manifest.root} are both named '{name}'",
                    kind="WorkspaceConflict",
                    specifier=name,
                    path=str(manifest.root),
                )
            self._members[name] = manifest
            self._by_name[name] = manifest
        elif name in self._members and self._members[name].root != manifest.root:
            logger.debug(f"[manifest] {name} at {manifest.root} shadowed by workspace member")
        else:
            self._by_name[name] = manifest
        self._by_root[manifest.root] = manifest

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                if path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ManifestError(f"Cannot parse manifest {path}: {e}", kind="Unparseable", path=str(path)) from e

        if not isinstance(data, dict):
            raise ManifestError(
                f"Manifest {path} must be a mapping, got {type(data).__name__}",
                kind="Unparseable",
                path=str(path),
            )
        return data

    @staticmethod
    def _translate(error: ValidationError, path: Path) -> ManifestError:
        details = error.errors()
        first = details[0]
        kind = _ERROR_KINDS.get(first["type"], "InvalidField")
        field = ".".join(str(part) for part in first["loc"]) or "<document>"
        messages = "; ".join(
            f"{'.'.join(str(p) for p in d['loc']) or '<document>'}: {d['msg']}" for d in details
        )
        if kind == "MissingField":
            message = f"Manifest {path} is missing required field '{field}'"
        else:
            message = f"Invalid manifest {path}: {messages}"
        return ManifestError(message, kind=kind, specifier=field, path=str(path))
