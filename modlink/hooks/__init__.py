"""Resolve/load/transform hook chain.

Hooks intercept the three pipeline stages of a module import:

- resolve: specifier + context -> identifier (synchronous)
- load: identifier -> raw source
- transform: raw source -> evaluable source

Each hook returns Delegate (continue, optionally with a rewritten request)
or ShortCircuit (final result). Hooks are ordered by priority, then
registration order, and are fixed once the engine is constructed.

Hooks can be registered programmatically (HookDescriptor) or through the
``hooks`` section of settings.yaml (HooksConfig).
"""

from .chain import HookChain
from .config import HookDefinition
from .config import HooksConfig
from .config import import_handler
from .models import Delegate
from .models import HookDescriptor
from .models import HookMatcher
from .models import HookOutcome
from .models import HookStage
from .models import LoadedSource
from .models import LoadRequest
from .models import ResolveRequest
from .models import ShortCircuit
from .models import TransformRequest

__all__ = [
    "Delegate",
    "HookChain",
    "HookDefinition",
    "HookDescriptor",
    "HookMatcher",
    "HookOutcome",
    "HookStage",
    "HooksConfig",
    "LoadRequest",
    "LoadedSource",
    "ResolveRequest",
    "ShortCircuit",
    "TransformRequest",
    "import_handler",
]
