"""modlink - module resolution, loading and linking for multi-package workspaces."""

from .engine import ModuleEngine
from .errors import CycleError
from .errors import EvaluationError
from .errors import HookError
from .errors import InteropError
from .errors import ManifestError
from .errors import ModuleLinkError
from .errors import ResolutionError
from .hooks import Delegate
from .hooks import HookDescriptor
from .hooks import HookMatcher
from .hooks import HookStage
from .hooks import LoadedSource
from .hooks import ShortCircuit
from .identifiers import ResourceIdentifier
from .manifests import ModuleFormat
from .registry import UNINITIALIZED
from .registry import ModuleStatus
from .registry import Namespace
from .settings import EngineSettings

__all__ = [
    "UNINITIALIZED",
    "CycleError",
    "Delegate",
    "EngineSettings",
    "EvaluationError",
    "HookDescriptor",
    "HookError",
    "HookMatcher",
    "HookStage",
    "InteropError",
    "LoadedSource",
    "ManifestError",
    "ModuleEngine",
    "ModuleFormat",
    "ModuleLinkError",
    "ModuleStatus",
    "Namespace",
    "ResolutionError",
    "ResourceIdentifier",
    "ShortCircuit",
]
