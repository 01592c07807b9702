"""Specifier resolution: built-ins, paths, workspace links and installed packages."""

from .resolvers import ResolveContext
from .resolvers import SpecifierResolver
from .resolvers import split_package_specifier
from .sources import InstalledPackageLocator
from .sources import PackageLocator

__all__ = [
    "InstalledPackageLocator",
    "PackageLocator",
    "ResolveContext",
    "SpecifierResolver",
    "split_package_specifier",
]
