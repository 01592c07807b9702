"""Package sources outside the workspace.

The engine does not fetch packages. Anything that is not linked locally is
looked up through a PackageLocator supplied by the host: typically a
directory that a package manager has already populated.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_INSTALLED_DIRNAME = "site_modules"


class PackageLocator(Protocol):
    """Protocol for the external registry collaborator.

    Implementations decide WHERE installed copies of packages live.
    """

    def locate(self, package_name: str, from_dir: Path) -> Path | None:
        """Find the installed root of ``package_name``.

        Args:
            package_name: Package name (may be scoped: @scope/name)
            from_dir: Directory of the importing module

        Returns:
            Package root, or None when not installed
        """
        ...


class InstalledPackageLocator:
    """Looks for ``<ancestor>/<dirname>/<package>`` from the importer upwards.

    Search order (first match wins):
    1. Each ancestor of the importing directory, nearest first
    2. Extra search paths, in the given order
    """

    def __init__(self, dirname: str = DEFAULT_INSTALLED_DIRNAME, search_paths: list[Path] | None = None):
        self.dirname = dirname
        self.search_paths = [Path(p) for p in search_paths or []]

    def locate(self, package_name: str, from_dir: Path) -> Path | None:
        from_dir = Path(from_dir).resolve()
        for directory in (from_dir, *from_dir.parents):
            candidate = directory / self.dirname / package_name
            if candidate.is_dir():
                logger.debug(f"[resolve] installed {package_name} -> {candidate}")
                return candidate.resolve()

        for search_path in self.search_paths:
            candidate = search_path / package_name
            if candidate.is_dir():
                logger.debug(f"[resolve] installed {package_name} -> {candidate} (search path)")
                return candidate.resolve()

        return None

    def __repr__(self) -> str:
        return f"InstalledPackageLocator({self.dirname!r})"
