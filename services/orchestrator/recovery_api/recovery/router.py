"""
FastAPI router exposing module assessment, recovery and rollback.

The router is a thin driver: it validates module ids, maps requests to
engine and orchestrator calls, and returns their results unchanged.
Nothing is persisted.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from ..config import Settings, get_settings
from ..schemas import (
    CancelSessionResponse,
    ModuleListResponse,
    RecoverModuleRequest,
    RecoverModulesRequest,
    RollbackRequest,
)
from ..workspaces.manager import InvalidModuleIdError
from .engine import ModuleRecoveryEngine, RecoveryOptions, RecoveryResult, RollbackResult
from .health import ModuleState
from .models import RecoverySession
from .orchestrator import MultiModuleRecoveryOptions, MultiModuleRecoveryResult, RecoveryOrchestrator
from .workspace_health import WorkspaceHealth, create_workspace_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recovery", tags=["recovery"])

SettingsDep = Annotated[Settings, Depends(get_settings)]


@lru_cache(maxsize=1)
def get_recovery_orchestrator() -> RecoveryOrchestrator:
    """Orchestrator shared by all requests so per-module locks and sessions are shared too."""
    return RecoveryOrchestrator(ModuleRecoveryEngine(get_settings()))


OrchestratorDep = Annotated[RecoveryOrchestrator, Depends(get_recovery_orchestrator)]


def _validated(orchestrator: RecoveryOrchestrator, module_id: str) -> str:
    try:
        return orchestrator.engine.manager.validate_module_id(module_id)
    except InvalidModuleIdError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _backup_path_for(settings: Settings, backup_id: str) -> Path:
    backup_root = settings.recovery.backup_directory
    if backup_root is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No backup directory configured",
        )
    backup_root = Path(backup_root).expanduser().resolve()
    backup_path = (backup_root / backup_id).resolve()
    if backup_path.parent != backup_root:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid backup id: {backup_id!r}",
        )
    return backup_path


@router.get("/modules", response_model=ModuleListResponse)
def list_modules(orchestrator: OrchestratorDep) -> ModuleListResponse:
    manager = orchestrator.engine.manager
    return ModuleListResponse(
        workspace_root=str(manager.workspace_root),
        modules=manager.discover_modules(),
    )


@router.get("/modules/{module_id}/health", response_model=ModuleState)
async def module_health(module_id: str, orchestrator: OrchestratorDep) -> ModuleState:
    module_id = _validated(orchestrator, module_id)
    return await orchestrator.engine.assess(module_id)


@router.get("/workspace/health", response_model=WorkspaceHealth)
async def workspace_health(orchestrator: OrchestratorDep) -> WorkspaceHealth:
    engine = orchestrator.engine
    states = {}
    for module_id in engine.manager.discover_modules():
        states[module_id] = await engine.assess(module_id)
    backups_available = engine.backup_manager is not None and bool(engine.backup_manager.list_backups())
    return create_workspace_health(
        str(engine.manager.workspace_root), states, backups_available=backups_available
    )


@router.post("/modules/recover", response_model=MultiModuleRecoveryResult)
async def recover_modules(
    request: RecoverModulesRequest,
    orchestrator: OrchestratorDep,
) -> MultiModuleRecoveryResult:
    """
    Recover several modules in one session.

    Raises:
        HTTPException: 400 if any module id is invalid
    """
    for module_id in request.module_ids:
        _validated(orchestrator, module_id)
    logger.info(f"Recovering {len(request.module_ids)} modules")
    options = MultiModuleRecoveryOptions(**request.model_dump())
    return await orchestrator.recover_multiple_modules(options)


@router.post("/modules/{module_id}/recover", response_model=RecoveryResult)
async def recover_module(
    module_id: str,
    request: RecoverModuleRequest,
    orchestrator: OrchestratorDep,
) -> RecoveryResult:
    module_id = _validated(orchestrator, module_id)
    options = RecoveryOptions(module_id=module_id, **request.model_dump())
    return await orchestrator.engine.recover_module(options)


@router.post("/modules/{module_id}/rollback", response_model=RollbackResult)
async def rollback_module(
    module_id: str,
    request: RollbackRequest,
    orchestrator: OrchestratorDep,
    settings: SettingsDep,
) -> RollbackResult:
    module_id = _validated(orchestrator, module_id)
    backup_path = _backup_path_for(settings, request.backup_id) if request.backup_id else None
    return await orchestrator.engine.rollback_module(
        module_id,
        request.reason,
        backup_path=backup_path,
        preserve_progress=request.preserve_progress,
    )


@router.get("/sessions/{session_id}", response_model=RecoverySession)
def get_session(session_id: str, orchestrator: OrchestratorDep) -> RecoverySession:
    session = orchestrator.get_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Recovery session {session_id} not found",
        )
    return session


@router.post("/sessions/{session_id}/cancel", response_model=CancelSessionResponse)
def cancel_session(session_id: str, orchestrator: OrchestratorDep) -> CancelSessionResponse:
    if orchestrator.get_session(session_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Recovery session {session_id} not found",
        )
    return CancelSessionResponse(session_id=session_id, cancelled=orchestrator.cancel(session_id))
