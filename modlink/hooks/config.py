"""Hook configuration loading.

Builds hook descriptors from the ``hooks`` section of the merged settings
(global, project and local scopes). Handlers are referenced by import path
(``package.module:function``) and imported when descriptors are built.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from ..errors import HookError
from .models import HookDescriptor
from .models import HookMatcher
from .models import HookStage

logger = logging.getLogger(__name__)


@dataclass
class HookDefinition:
    """One configured hook.

    Attributes:
        name: Unique hook name
        handlers: Stage -> ``module:attribute`` import path
        priority: Execution priority (lower = earlier)
        matcher: Declarative participation conditions
        description: Human-readable description
    """

    name: str
    handlers: dict[HookStage, str]
    priority: int = 100
    matcher: HookMatcher = field(default_factory=HookMatcher)
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        result: dict[str, Any] = {"name": self.name, "priority": self.priority}
        for stage, path in self.handlers.items():
            result[stage.value] = path
        matcher = self.matcher.to_dict()
        if matcher:
            result["matcher"] = matcher
        if self.description:
            result["description"] = self.description
        return result


@dataclass
class HooksConfig:
    """Hooks configuration from settings.

    Attributes:
        hooks: Enabled hook definitions, in declaration order
        disabled_hooks: Names of hooks to disable
    """

    hooks: list[HookDefinition] = field(default_factory=list)
    disabled_hooks: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> HooksConfig:
        """Load hooks config from a settings dictionary.

        Settings format:
        ```yaml
        hooks:
          disabled:
            - hook-name-to-disable
          definitions:
            - name: yaml-modules
              priority: 10
              resolve: my_hooks.yaml:resolve
              load: my_hooks.yaml:load
              transform: my_hooks.yaml:transform
              matcher:
                patterns: ["*.yaml", "*.yml"]
        ```

        Invalid definitions are logged and skipped.

        Args:
            settings: Settings dictionary (either the whole settings or its
                ``hooks`` section wrapped under a ``hooks`` key)

        Returns:
            HooksConfig instance
        """
        hooks_settings = settings.get("hooks") or {}
        disabled_hooks = list(hooks_settings.get("disabled") or [])

        hooks: list[HookDefinition] = []
        for hook_dict in hooks_settings.get("definitions") or []:
            try:
                hook = cls._parse_definition(hook_dict)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"[hooks] Invalid hook configuration: {e}")
                continue
            if hook.name in disabled_hooks:
                logger.debug(f"[hooks] '{hook.name}' is disabled")
                continue
            hooks.append(hook)

        return cls(hooks=hooks, disabled_hooks=disabled_hooks)

    @staticmethod
    def _parse_definition(data: dict[str, Any]) -> HookDefinition:
        """Parse a single hook definition.

        Raises:
            KeyError: If required field is missing
            ValueError: If the definition is invalid
        """
        if not isinstance(data, dict):
            raise ValueError(f"Hook definition must be a mapping, got {type(data).__name__}")

        name = data.get("name")
        if not name:
            raise KeyError("Hook requires 'name' field")

        handlers = {stage: data[stage.value] for stage in HookStage if data.get(stage.value)}
        if not handlers:
            raise ValueError(f"Hook '{name}' declares no resolve, load or transform handler")
        for stage, path in handlers.items():
            if not isinstance(path, str) or ":" not in path:
                raise ValueError(f"Hook '{name}' {stage.value} handler must be 'module:attribute', got {path!r}")

        return HookDefinition(
            name=name,
            handlers=handlers,
            priority=int(data.get("priority", 100)),
            matcher=HookMatcher.from_dict(data.get("matcher") or {}),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for saving."""
        return {
            "disabled": self.disabled_hooks,
            "definitions": [hook.to_dict() for hook in self.hooks],
        }

    def to_descriptors(self) -> list[HookDescriptor]:
        """Import handlers and build descriptors, in declaration order.

        Raises:
            HookError: InvalidHook if a handler cannot be imported
        """
        descriptors = []
        for hook in self.hooks:
            handlers = {stage: import_handler(path, hook_name=hook.name) for stage, path in hook.handlers.items()}
            descriptors.append(
                HookDescriptor(
                    name=hook.name,
                    handlers=handlers,
                    priority=hook.priority,
                    matcher=hook.matcher,
                    description=hook.description,
                )
            )
        return descriptors


def import_handler(path: str, *, hook_name: str):
    """Import ``package.module:attribute`` and return the callable."""
    module_name, _, attribute = path.partition(":")
    try:
        module = importlib.import_module(module_name)
        handler = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise HookError(
            f"Cannot import handler '{path}' for hook '{hook_name}': {e}",
            kind="InvalidHook",
            hook=hook_name,
            specifier=path,
        ) from e

    if not callable(handler):
        raise HookError(
            f"Handler '{path}' for hook '{hook_name}' is not callable",
            kind="InvalidHook",
            hook=hook_name,
            specifier=path,
        )
    return handler
