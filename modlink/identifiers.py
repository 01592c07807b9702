"""Canonical resource identifiers.

A ResourceIdentifier names exactly one loadable unit. It is the registry's
cache key, so construction normalizes everything that could make two
spellings of the same resource compare unequal: relative segments, symlinks,
trailing slashes and letter case.

Keys are case-folded on every platform, not only on case-insensitive
filesystems. On Linux ``A.py`` and ``a.py`` in one directory therefore map
to a single registry record, and whichever spelling is requested first is
the one loaded.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

FILE_SCHEME = "file"
BUILTIN_SCHEME = "builtin"


@dataclass(frozen=True, order=True)
class ResourceIdentifier:
    """Opaque, comparable identifier for a module resource.

    Attributes:
        scheme: "file" or "builtin"
        key: Canonical form case-folded on every platform, used for equality,
            hashing and ordering
        path: Canonical spelling used for loading (filesystem path or builtin name)
    """

    scheme: str
    key: str
    path: str = field(compare=False)

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> ResourceIdentifier:
        """Build a file identifier from a filesystem path."""
        resolved = Path(path).expanduser().absolute().resolve(strict=False)
        posix = resolved.as_posix()
        if len(posix) > 1:
            posix = posix.rstrip("/")
        return cls(scheme=FILE_SCHEME, key=f"{FILE_SCHEME}://{posix}".casefold(), path=posix)

    @classmethod
    def builtin(cls, name: str) -> ResourceIdentifier:
        """Build an identifier in the built-in namespace."""
        name = name.strip().rstrip("/")
        return cls(scheme=BUILTIN_SCHEME, key=f"{BUILTIN_SCHEME}:{name}".casefold(), path=name)

    @classmethod
    def parse(cls, href: str) -> ResourceIdentifier:
        """Parse an href produced by ``href``."""
        if href.startswith(f"{FILE_SCHEME}://"):
            return cls.from_path(href[len(FILE_SCHEME) + 3 :])
        if href.startswith(f"{BUILTIN_SCHEME}:"):
            return cls.builtin(href[len(BUILTIN_SCHEME) + 1 :])
        raise ValueError(f"Not a resource identifier: {href!r}")

    @property
    def is_builtin(self) -> bool:
        return self.scheme == BUILTIN_SCHEME

    @property
    def href(self) -> str:
        if self.is_builtin:
            return f"{BUILTIN_SCHEME}:{self.path}"
        return f"{FILE_SCHEME}://{self.path}"

    @property
    def suffix(self) -> str:
        return "" if self.is_builtin else Path(self.path).suffix.lower()

    @property
    def name(self) -> str:
        return self.path if self.is_builtin else Path(self.path).name

    def as_path(self) -> Path:
        """Filesystem path for file identifiers.

        Raises:
            ValueError: For built-in identifiers
        """
        if self.is_builtin:
            raise ValueError(f"Built-in resource has no filesystem path: {self.href}")
        return Path(self.path)

    def __str__(self) -> str:
        return self.href
