"""Workspace module discovery."""

from .manager import InvalidModuleIdError, WorkspaceModuleManager
from .models import WorkspaceModule

__all__ = ["InvalidModuleIdError", "WorkspaceModule", "WorkspaceModuleManager"]
