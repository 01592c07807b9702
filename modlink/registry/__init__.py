"""Module registry: records, live bindings and the load lifecycle."""

from .records import DEFAULT_EXPORT
from .records import UNINITIALIZED
from .records import BindingCell
from .records import ModuleRecord
from .records import ModuleStatus
from .records import Namespace
from .registry import ModuleLoader
from .registry import ModuleRegistry

__all__ = [
    "DEFAULT_EXPORT",
    "UNINITIALIZED",
    "BindingCell",
    "ModuleLoader",
    "ModuleRecord",
    "ModuleRegistry",
    "ModuleStatus",
    "Namespace",
]
