"""
Module health assessment, recovery and rollback.

This package scores the health of the modules of a multi-module workspace,
runs recovery phases against unhealthy modules, orchestrates recoveries
across many modules, and restores modules from backups.
"""

from .analyzer import FileSystemAnalyzer, ModuleAnalyzer
from .backup import BackupManager, BackupMetadata
from .engine import (
    CancellationToken,
    ModuleRecoveryEngine,
    RecoveryOptions,
    RecoveryPhaseName,
    RecoveryResult,
    RecoveryStatus,
    RollbackResult,
)
from .errors import ErrorCategory, RecoveryError
from .health import (
    ModuleState,
    ModuleStatus,
    RecoveryStrategy,
    calculate_health_score,
    get_module_status,
)
from .models import RecoverySession, SessionStatus, apply_session_command
from .orchestrator import (
    MultiModuleRecoveryOptions,
    MultiModuleRecoveryResult,
    RecoveryOrchestrator,
)
from .process import AsyncProcessRunner, ProcessRunner
from .workspace_health import WorkspaceHealth, create_workspace_health

__all__ = [
    'AsyncProcessRunner',
    'BackupManager',
    'BackupMetadata',
    'CancellationToken',
    'ErrorCategory',
    'FileSystemAnalyzer',
    'ModuleAnalyzer',
    'ModuleRecoveryEngine',
    'ModuleState',
    'ModuleStatus',
    'MultiModuleRecoveryOptions',
    'MultiModuleRecoveryResult',
    'ProcessRunner',
    'RecoveryError',
    'RecoveryOptions',
    'RecoveryOrchestrator',
    'RecoveryPhaseName',
    'RecoveryResult',
    'RecoverySession',
    'RecoveryStatus',
    'RecoveryStrategy',
    'RollbackResult',
    'SessionStatus',
    'WorkspaceHealth',
    'apply_session_command',
    'calculate_health_score',
    'create_workspace_health',
    'get_module_status',
]
