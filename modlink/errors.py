"""Error taxonomy for module linking.

Every failure the engine surfaces derives from ModuleLinkError and carries:
- kind: stable machine-readable kind (e.g. "NotFound", "AsyncOnly")
- stage: pipeline stage where it happened (resolve, load, transform, evaluate, workspace)
- specifier: the specifier or identifier that was being processed
- trail: the import chain (outermost importer first) that led to the failure

Per-module errors are cached on the failing ModuleRecord. Importers receive a
copy with their own identifier prepended to the trail (see with_importer), so
the cached original is never mutated.
"""

from __future__ import annotations

from typing import Any


class ModuleLinkError(Exception):
    """Base for all engine errors."""

    default_kind = "Error"
    default_stage: str | None = None

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        stage: str | None = None,
        specifier: str | None = None,
        trail: tuple[str, ...] | list[str] = (),
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.stage = stage or self.default_stage
        self.specifier = specifier
        self.trail = tuple(trail)

    def with_importer(self, importer: str) -> ModuleLinkError:
        """Return a copy whose trail starts at ``importer``."""
        # copy.copy replays __init__ with args only (breaks keyword-only params)
        clone = type(self).__new__(type(self), *self.args)
        clone.__dict__.update(self.__dict__)
        clone.trail = (importer, *self.trail)
        clone.__cause__ = self.__cause__
        return clone

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable diagnostic payload."""
        return {
            "error": type(self).__name__,
            "kind": self.kind,
            "stage": self.stage,
            "specifier": self.specifier,
            "trail": list(self.trail),
            "message": self.message,
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.stage:
            parts.append(f"[stage: {self.stage}]")
        if self.trail:
            parts.append(f"[via: {' -> '.join(self.trail)}]")
        return " ".join(parts)

    def __repr__(self) -> str:
        parts = [repr(self.message), f"kind={self.kind!r}"]
        if self.stage is not None:
            parts.append(f"stage={self.stage!r}")
        if self.specifier is not None:
            parts.append(f"specifier={self.specifier!r}")
        return f"{type(self).__name__}({', '.join(parts)})"


class ResolutionError(ModuleLinkError):
    """A specifier could not be turned into a resource identifier.

    Kinds: NotFound, AmbiguousExtension, InvalidSpecifier.
    """

    default_kind = "NotFound"
    default_stage = "resolve"


class ManifestError(ModuleLinkError):
    """A package manifest or workspace declaration is unusable.

    Kinds: MissingField, InvalidField, Unparseable, InvalidConstraint,
    ConflictingFormat, WorkspaceConflict, UnknownWorkspacePackage,
    WorkspaceVersionMismatch.

    Attributes:
        path: Manifest file or package root the error refers to.
    """

    default_kind = "MissingField"
    default_stage = "workspace"

    def __init__(self, message: str, *, path: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["path"] = self.path
        return result


class CycleError(ModuleLinkError):
    """The workspace local-link graph contains a cycle.

    Attributes:
        cycle: Package names along the cycle, first name repeated at the end.
    """

    default_kind = "Cycle"
    default_stage = "workspace"

    def __init__(self, cycle: list[str], **kwargs: Any) -> None:
        super().__init__(f"Workspace dependency cycle: {' -> '.join(cycle)}", **kwargs)
        self.cycle = list(cycle)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["cycle"] = self.cycle
        return result


class HookError(ModuleLinkError):
    """A hook raised or misbehaved; the whole chain for that request is aborted.

    Attributes:
        hook: Name of the offending hook.
    """

    default_kind = "HookFailed"

    def __init__(self, message: str, *, hook: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.hook = hook

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["hook"] = self.hook
        return result


class InteropError(ModuleLinkError):
    """Access across execution models is not possible right now.

    Kinds: AsyncOnly (async-static target not yet evaluated through a deferred
    request), NotLoaded (target was never linked).
    """

    default_kind = "AsyncOnly"
    default_stage = "evaluate"


class EvaluationError(ModuleLinkError):
    """A module body failed while executing.

    Kinds: BodyFailed, DynamicRequire.
    """

    default_kind = "BodyFailed"
    default_stage = "evaluate"


__all__ = [
    "ModuleLinkError",
    "ResolutionError",
    "ManifestError",
    "CycleError",
    "HookError",
    "InteropError",
    "EvaluationError",
]
