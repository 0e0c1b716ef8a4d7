from __future__ import annotations

import re
from pathlib import Path

from recovery_api.config import Settings
from recovery_api.workspaces.models import WorkspaceModule

MODULE_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]{0,127}$")


class InvalidModuleIdError(ValueError):
    """Raised when a module id is malformed or escapes the packages directory."""


class WorkspaceModuleManager:
    """Locates and classifies the modules of a multi-module workspace."""

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings

    @property
    def workspace_root(self) -> Path:
        return self._settings.workspace_root.expanduser().resolve()

    @property
    def packages_root(self) -> Path:
        return self._settings.packages_root

    def discover_modules(self) -> list[str]:
        if not self.packages_root.is_dir():
            return []
        modules: list[str] = []
        for candidate in self.packages_root.iterdir():
            if not candidate.is_dir() or not MODULE_ID_PATTERN.match(candidate.name):
                continue
            module = WorkspaceModule(module_id=candidate.name, path=candidate)
            if any(marker.exists() for marker in module.markers()):
                modules.append(candidate.name)
        return sorted(modules)

    def validate_module_id(self, module_id: str) -> str:
        if not module_id or not MODULE_ID_PATTERN.match(module_id) or ".." in module_id:
            raise InvalidModuleIdError(f"Invalid module id: {module_id!r}")
        resolved = (self.packages_root / module_id).resolve()
        if resolved.parent != self.packages_root:
            raise InvalidModuleIdError(f"Module id escapes packages directory: {module_id!r}")
        return module_id

    def module_for(self, module_id: str) -> WorkspaceModule:
        self.validate_module_id(module_id)
        return WorkspaceModule(module_id=module_id, path=self._settings.module_path_for(module_id))

    def category_for(self, module_id: str) -> str:
        """Category name used to place a module in its dependency layer."""
        recovery = self._settings.recovery
        if module_id in recovery.core_modules:
            return "core"
        if module_id in recovery.foundation_modules:
            return "foundation"
        return "business"
