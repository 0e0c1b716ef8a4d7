from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from recovery_api.recovery.engine import RecoveryPhaseName
from recovery_api.recovery.health import RecoveryStrategy


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    timestamp: datetime


class ModuleListResponse(BaseModel):
    workspace_root: str
    modules: list[str]


class RecoverModuleRequest(BaseModel):
    recovery_strategy: RecoveryStrategy | None = Field(
        default=None, description="Strategy to apply; selected from the assessment when omitted"
    )
    phases: list[RecoveryPhaseName] | None = None
    dry_run: bool = False
    max_retries: int | None = Field(default=None, ge=0)
    timeout: float | None = Field(default=None, gt=0, description="Per-command timeout in seconds")
    force_recovery: bool = False
    skip_validation: bool = False
    repair_configuration_first: bool = Field(
        default=True,
        description="Repair configuration before resolving dependencies when the manifest is missing",
    )

class RecoverModulesRequest(BaseModel):
    module_ids: list[str] = Field(..., min_length=1)
    parallel_execution: bool = False
    dependency_order_optimization: bool = True
    max_concurrency: int | None = Field(default=None, ge=1)
    fail_fast: bool = False
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.REPAIR
    dry_run: bool = False
    force_recovery: bool = False
    skip_validation: bool = False
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int | None = Field(default=None, ge=0)
    repair_configuration_first: bool = True


class RollbackRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    backup_id: str | None = Field(
        default=None, description="Backup to restore; the latest backup of the module when omitted"
    )
    preserve_progress: bool = False


class CancelSessionResponse(BaseModel):
    session_id: str
    cancelled: bool
