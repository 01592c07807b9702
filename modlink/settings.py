"""Settings management for modlink.

Simple, scope-aware YAML settings. Scope priority (most specific wins):
1. local (<root>/.modlink/settings.local.yaml) - gitignored, machine-specific
2. project (<root>/.modlink/settings.yaml) - committed, team-shared
3. global (~/.modlink/settings.yaml) - user defaults

The merged document is validated into EngineSettings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from typing import Literal

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from .manifests.schema import ModuleFormat
from .manifests.store import DEFAULT_MANIFEST_NAMES
from .module_resolution.resolvers import DEFAULT_BUILTIN_PREFIX
from .module_resolution.resolvers import DEFAULT_EXTENSIONS
from .module_resolution.resolvers import DEFAULT_INDEX_NAMES
from .module_resolution.sources import DEFAULT_INSTALLED_DIRNAME

logger = logging.getLogger(__name__)

Scope = Literal["local", "project", "global"]

SETTINGS_DIRNAME = ".modlink"


class EngineSettings(BaseModel):
    """Validated engine configuration."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    default_format: ModuleFormat = Field(
        ModuleFormat.EAGER_SYNC,
        description="Execution model for files outside any package",
    )
    extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXTENSIONS),
        description="Extensions probed, in order, for eager-sync requesters",
    )
    index_names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INDEX_NAMES),
        description="Directory index stems, in order",
    )
    manifest_names: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MANIFEST_NAMES),
        description="Manifest file names, in order",
    )
    workspace_file: str = Field("workspace.yaml", description="Workspace membership document")
    installed_dirname: str = Field(
        DEFAULT_INSTALLED_DIRNAME,
        description="Directory holding installed (non-workspace) packages",
    )
    search_paths: list[Path] = Field(default_factory=list, description="Extra installed-package directories")
    builtin_prefix: str = Field(DEFAULT_BUILTIN_PREFIX, description="Prefix of the built-in namespace")
    conditions: list[str] = Field(
        default_factory=list,
        description="Extra entry-point conditions, tried after the format condition",
    )
    hooks: dict[str, Any] = Field(default_factory=dict, description="Hook definitions (see hooks.config)")

    @field_validator("extensions")
    @classmethod
    def _check_extensions(cls, value: list[str]) -> list[str]:
        for ext in value:
            if not ext.startswith(".") or len(ext) < 2:
                raise ValueError(f"Extension must look like '.ext', got {ext!r}")
        return value

    @field_validator("builtin_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        if not value or value.startswith((".", "/")):
            raise ValueError(f"Invalid builtin prefix {value!r}")
        return value


@dataclass
class SettingsPaths:
    """Standard paths for settings files."""

    global_settings: Path
    project_settings: Path
    local_settings: Path

    @classmethod
    def default(cls, root: Path | None = None) -> SettingsPaths:
        """Create default paths for a workspace root (cwd when omitted)."""
        root = root or Path.cwd()
        return cls(
            global_settings=Path.home() / SETTINGS_DIRNAME / "settings.yaml",
            project_settings=root / SETTINGS_DIRNAME / "settings.yaml",
            local_settings=root / SETTINGS_DIRNAME / "settings.local.yaml",
        )


class AppSettings:
    """Settings manager with scope-aware merging.

    Usage:
        settings = AppSettings(SettingsPaths.default(root))
        engine_settings = settings.engine_settings()
        settings.set("default_format", "async-static", scope="local")
    """

    def __init__(self, paths: SettingsPaths | None = None) -> None:
        self.paths = paths or SettingsPaths.default()

    def get_merged_settings(self) -> dict[str, Any]:
        """Load and merge settings from all scopes."""
        result: dict[str, Any] = {}
        for path in [self.paths.global_settings, self.paths.project_settings, self.paths.local_settings]:
            if path.exists():
                try:
                    with open(path) as f:
                        content = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as e:
                    logger.warning(f"Skipping malformed settings file {path}: {e}")
                    continue
                if not isinstance(content, dict):
                    logger.warning(f"Skipping settings file {path}: top level must be a mapping")
                    continue
                result = deep_merge(result, content)
        return result

    def engine_settings(self) -> EngineSettings:
        """Merged settings validated into EngineSettings.

        Raises:
            pydantic.ValidationError: If merged values are invalid
        """
        return EngineSettings.model_validate(self.get_merged_settings())

    # ----- Scope utilities -----

    def set(self, key: str, value: Any, scope: Scope = "project") -> None:
        """Update a single setting at specified scope."""
        settings = self._read_scope(scope)
        settings[key] = value
        self._write_scope(scope, settings)

    def unset(self, key: str, scope: Scope = "project") -> None:
        """Remove a setting from specified scope."""
        settings = self._read_scope(scope)
        if key in settings:
            del settings[key]
            self._write_scope(scope, settings)

    def _get_scope_path(self, scope: Scope) -> Path:
        """Get settings file path for scope."""
        return {
            "local": self.paths.local_settings,
            "project": self.paths.project_settings,
            "global": self.paths.global_settings,
        }[scope]

    def _read_scope(self, scope: Scope) -> dict[str, Any]:
        """Read settings from a specific scope."""
        path = self._get_scope_path(scope)
        if not path.exists():
            return {}
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _write_scope(self, scope: Scope, settings: dict[str, Any]) -> None:
        """Write settings to a specific scope."""
        path = self._get_scope_path(scope)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(settings, f, default_flow_style=False)


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dicts, overlay wins."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_engine_settings(root: Path | None = None) -> EngineSettings:
    """Merged EngineSettings for a workspace root."""
    return AppSettings(SettingsPaths.default(root)).engine_settings()
