"""
Module recovery engine.

`ModuleRecoveryEngine.recover_module` assesses a module, optionally backs up
its critical files, runs an ordered list of recovery phases against it,
validates and re-assesses the result, and classifies the outcome. Every
failure inside a run is folded into the returned `RecoveryResult`; the
method never raises to its caller.

Phases run strictly in sequence for one module. Recovery and rollback of
the same module are serialized by a per-module lock: a second concurrent
attempt is rejected with a failed result instead of waiting.
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from recovery_api.config import Settings
from recovery_api.logging import log_recovery_operation
from recovery_api.workspaces.manager import InvalidModuleIdError, WorkspaceModuleManager

from .analyzer import FileSystemAnalyzer, ModuleAnalyzer
from .backup import BackupManager, BackupMetadata
from .errors import (
    CommandExecutionError,
    CommandTimeoutError,
    ErrorCategory,
    PhaseExecutionError,
    RecoveryInProgressError,
    RollbackError,
    classify_error,
)
from .health import (
    BuildStatus,
    BuildStatusChanged,
    ConfigurationRepaired,
    CriticalError,
    DependencyHealth,
    DependencyHealthChanged,
    ModuleCategory,
    ModuleState,
    RecoveryAttempt,
    RecoveryFinished,
    RecoveryStarted,
    RecoveryStrategy,
    TestStatus,
    TestStatusChanged,
    apply_module_event,
    create_module_state,
)
from .process import AsyncProcessRunner, ProcessRunner

logger = logging.getLogger(__name__)

ERROR_HANDLING_PHASE = "error-handling"


class RecoveryPhaseName(str, Enum):
    DEPENDENCY_RESOLUTION = "dependency-resolution"
    CONFIGURATION_REPAIR = "configuration-repair"
    CODE_REPAIR = "code-repair"
    BUILD_FIX = "build-fix"
    TEST_FIX = "test-fix"
    VALIDATION = "validation"


class PhaseStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RecoveryStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


class ChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


DEFAULT_PHASES: Dict[RecoveryStrategy, List[RecoveryPhaseName]] = {
    RecoveryStrategy.REPAIR: [
        RecoveryPhaseName.DEPENDENCY_RESOLUTION,
        RecoveryPhaseName.CONFIGURATION_REPAIR,
        RecoveryPhaseName.VALIDATION,
    ],
    RecoveryStrategy.REBUILD: list(RecoveryPhaseName),
    RecoveryStrategy.RESET: [
        RecoveryPhaseName.CONFIGURATION_REPAIR,
        RecoveryPhaseName.DEPENDENCY_RESOLUTION,
        RecoveryPhaseName.VALIDATION,
    ],
}

# Health estimates reported by successful phases
PHASE_HEALTH_ESTIMATES: Dict[RecoveryPhaseName, int] = {
    RecoveryPhaseName.DEPENDENCY_RESOLUTION: 15,
    RecoveryPhaseName.CONFIGURATION_REPAIR: 10,
    RecoveryPhaseName.CODE_REPAIR: 20,
    RecoveryPhaseName.BUILD_FIX: 25,
    RecoveryPhaseName.TEST_FIX: 15,
    RecoveryPhaseName.VALIDATION: 5,
}

DRY_RUN_DESCRIPTIONS: Dict[RecoveryPhaseName, str] = {
    RecoveryPhaseName.DEPENDENCY_RESOLUTION: "install dependencies",
    RecoveryPhaseName.CONFIGURATION_REPAIR: "repair configuration files",
    RecoveryPhaseName.CODE_REPAIR: "repair code issues",
    RecoveryPhaseName.BUILD_FIX: "attempt build fix",
    RecoveryPhaseName.TEST_FIX: "fix test issues",
    RecoveryPhaseName.VALIDATION: "validate module structure",
}


def default_phases(strategy: RecoveryStrategy) -> List[RecoveryPhaseName]:
    return list(DEFAULT_PHASES.get(strategy, DEFAULT_PHASES[RecoveryStrategy.REPAIR]))


def _now() -> datetime:
    return datetime.now(UTC)


class CancellationToken:
    """Cooperative cancellation flag shared by the runs of one session."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Recovery cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class RecoveryOptions(BaseModel):
    """Options for a single module recovery run."""

    module_id: str
    recovery_strategy: Optional[RecoveryStrategy] = None  # None selects from assessment
    phases: Optional[List[RecoveryPhaseName]] = None
    dry_run: bool = False
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_delay: Optional[float] = Field(default=None, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)  # seconds, per command
    backup_path: Optional[Path] = None
    force_recovery: bool = False
    skip_validation: bool = False
    # Run configuration repair before dependency resolution when the manifest is missing
    repair_configuration_first: bool = True
    session_id: Optional[str] = None


class PhaseResult(BaseModel):
    phase_name: str
    status: PhaseStatus = PhaseStatus.FAILED
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    duration: float = 0.0
    health_improvement: int = 0
    errors_fixed: int = 0
    attempts: int = 1
    outputs: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    error_category: Optional[ErrorCategory] = None


class ConfigurationChange(BaseModel):
    file: str
    change_type: ChangeType
    description: str
    backup: Optional[str] = None


class ValidationResult(BaseModel):
    validation_type: str
    status: ValidationStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RecoveryResult(BaseModel):
    module_id: str
    recovery_status: RecoveryStatus = RecoveryStatus.FAILED
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    duration: float = 0.0
    recovery_strategy: Optional[RecoveryStrategy] = None
    phase_results: List[PhaseResult] = Field(default_factory=list)
    phases_reordered: bool = False

    initial_health_score: int = 0
    final_health_score: int = 0
    health_improvement: int = 0

    errors_at_start: int = 0
    errors_resolved: int = 0
    errors_remaining: int = 0

    backup_created: bool = False
    backup_path: Optional[str] = None
    configuration_changes: List[ConfigurationChange] = Field(default_factory=list)
    files_modified: List[str] = Field(default_factory=list)
    validation_results: List[ValidationResult] = Field(default_factory=list)

    rollback_available: bool = False
    rollback_path: Optional[str] = None

    session_id: Optional[str] = None
    attempt_id: Optional[str] = None


class StateRestoration(BaseModel):
    module_state_restored: bool = False
    files_restored: List[str] = Field(default_factory=list)
    files_removed: List[str] = Field(default_factory=list)
    configurations_restored: List[str] = Field(default_factory=list)
    dependencies_restored: bool = False


class PreservedProgress(BaseModel):
    progress_preserved: bool = False
    partial_fixes_retained: List[str] = Field(default_factory=list)
    knowledge_base_updated: bool = False


class RollbackValidation(BaseModel):
    module_state_consistent: bool = False
    build_status_valid: bool = False
    no_data_loss: bool = False
    rollback_complete: bool = False


class RollbackResult(BaseModel):
    module_id: str
    rollback_status: RecoveryStatus = RecoveryStatus.FAILED
    rollback_time: datetime = Field(default_factory=_now)
    rollback_reason: str
    backup_id: Optional[str] = None
    state_restoration: StateRestoration = Field(default_factory=StateRestoration)
    preserved_progress: Optional[PreservedProgress] = None
    rollback_validation: RollbackValidation = Field(default_factory=RollbackValidation)
    errors: List[str] = Field(default_factory=list)


CodeRepairHook = Callable[[str, Path], Awaitable[List[str]]]


@dataclass
class PhaseContext:
    """Per-run state shared by the phase handlers of one module."""

    module_id: str
    module_path: Path
    options: RecoveryOptions
    result: RecoveryResult
    timeout: float
    events: List[Any] = field(default_factory=list)


class ModuleRecoveryEngine:
    """
    Executes recovery strategies against the modules of one workspace.

    Collaborators are injected so callers and tests can replace the
    analyzer, the process runner and the backup manager.
    """

    def __init__(
        self,
        settings: Settings,
        analyzer: Optional[ModuleAnalyzer] = None,
        process_runner: Optional[ProcessRunner] = None,
        backup_manager: Optional[BackupManager] = None,
        code_repair: Optional[CodeRepairHook] = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.settings = settings
        self.recovery_settings = settings.recovery
        self.manager = WorkspaceModuleManager(settings=settings)
        self.analyzer = analyzer or FileSystemAnalyzer(settings, self.manager)
        self.process_runner = process_runner or AsyncProcessRunner(
            default_timeout=self.recovery_settings.command_timeout_seconds
        )
        self.code_repair = code_repair

        self._backup_managers: Dict[Path, BackupManager] = {}
        self.backup_manager = backup_manager
        if backup_manager is None and self.recovery_settings.backup_directory is not None:
            self.backup_manager = self._backup_manager_for(self.recovery_settings.backup_directory)
        if self.backup_manager is not None:
            self._backup_managers[Path(self.backup_manager.backup_root)] = self.backup_manager

        self._module_locks: Dict[str, asyncio.Lock] = {}
        self._module_states: Dict[str, ModuleState] = {}
        self._history: Dict[str, List[RecoveryAttempt]] = {}

    @property
    def completion_threshold(self) -> int:
        return self.recovery_settings.completion_health_threshold

    def _lock_for(self, module_id: str) -> asyncio.Lock:
        """Lock for an already validated module id."""
        if module_id not in self._module_locks:
            self._module_locks[module_id] = asyncio.Lock()
        return self._module_locks[module_id]

    def _backup_manager_for(self, backup_root: Path) -> BackupManager:
        backup_root = Path(backup_root)
        if backup_root not in self._backup_managers:
            self._backup_managers[backup_root] = BackupManager(
                backup_root,
                critical_files=self.recovery_settings.critical_files,
                max_backups=self.recovery_settings.max_backups,
            )
        return self._backup_managers[backup_root]

    def module_path(self, module_id: str) -> Path:
        return self.settings.module_path_for(module_id)

    def get_module_state(self, module_id: str) -> Optional[ModuleState]:
        return self._module_states.get(module_id)

    def get_recovery_history(self, module_id: str) -> List[RecoveryAttempt]:
        """Recovery attempts recorded for a module, oldest first."""
        return list(self._history.get(module_id, []))

    def is_busy(self, module_id: str) -> bool:
        lock = self._module_locks.get(module_id)
        return lock is not None and lock.locked()

    async def assess(self, module_id: str) -> ModuleState:
        """
        Assess a module through the analyzer.

        An analyzer failure is treated as an absent module: the returned
        state carries one critical error and scores 0.
        """
        try:
            state = self.analyzer.assess(module_id)
            if inspect.isawaitable(state):
                state = await state
            return state
        except Exception as e:
            self.logger.error(f"Assessment of {module_id} failed: {e}")
            state = create_module_state(module_id, ModuleCategory(self.manager.category_for(module_id)))
            state.critical_errors.append(CriticalError(
                error_id=f"analysis-error-{module_id}",
                error_type="assessment_failed",
                message=f"Module assessment failed: {e}",
            ))
            state.error_count = 1
            return state

    async def recover_module(
        self,
        options: RecoveryOptions,
        cancellation: Optional[CancellationToken] = None,
    ) -> RecoveryResult:
        """
        Recover a single module.

        Args:
            options: Module id, strategy, phase list and execution flags
            cancellation: Optional token checked before every phase

        Returns:
            RecoveryResult with a terminal status; never raises
        """
        result = RecoveryResult(
            module_id=options.module_id,
            recovery_strategy=options.recovery_strategy,
            session_id=options.session_id,
            attempt_id=f"recovery-{options.module_id}-{uuid4().hex[:8]}",
        )
        started = time.monotonic()
        try:
            self.manager.validate_module_id(options.module_id)
        except InvalidModuleIdError as e:
            self.logger.warning(f"Rejected recovery request: {e}")
            self._record_failure(result, e)
            self._finish(result, started)
            return result

        lock = self._lock_for(options.module_id)
        if lock.locked():
            error = RecoveryInProgressError(
                f"Recovery or rollback already in progress for module {options.module_id}",
                options.module_id,
            )
            self._record_failure(result, error)
            self._finish(result, started)
            return result

        async with lock:
            try:
                await self._run_recovery(options, result, cancellation)
            except Exception as e:
                self.logger.exception(f"Recovery of module {options.module_id} failed")
                self._record_failure(result, e)
            finally:
                self._finish(result, started)
                self._record_attempt(result)

        log_recovery_operation(
            self.logger,
            f"Recovery of {options.module_id} finished: {result.recovery_status.value} "
            f"({result.initial_health_score} -> {result.final_health_score})",
            module_id=options.module_id,
            session_id=options.session_id,
            strategy=result.recovery_strategy.value if result.recovery_strategy else None,
            status=result.recovery_status.value,
            duration=result.duration,
        )
        return result

    async def _run_recovery(
        self,
        options: RecoveryOptions,
        result: RecoveryResult,
        cancellation: Optional[CancellationToken],
    ) -> None:
        module_id = self.manager.validate_module_id(options.module_id)
        module_path = self.module_path(module_id)

        initial_state = await self.assess(module_id)
        result.initial_health_score = initial_state.health_score
        result.errors_at_start = initial_state.error_count

        strategy = options.recovery_strategy or initial_state.recovery_state.recovery_strategy
        result.recovery_strategy = strategy
        self._module_states[module_id] = apply_module_event(
            self._with_history(initial_state), RecoveryStarted(strategy)
        )

        backup_root = options.backup_path or self.recovery_settings.backup_directory
        if backup_root is not None and not options.dry_run:
            await self._create_backup(module_id, module_path, Path(backup_root), result)

        phases = self._select_phases(options, strategy, module_path)
        result.phases_reordered = options.phases is None and phases != default_phases(strategy)
        if result.phases_reordered:
            self.logger.info(
                f"Running configuration repair before dependency resolution for {module_id}: "
                f"{self.recovery_settings.manifest_file} is missing"
            )
        context = PhaseContext(
            module_id=module_id,
            module_path=module_path,
            options=options,
            result=result,
            timeout=options.timeout or self.recovery_settings.command_timeout_seconds,
        )

        partial = False
        cancelled = False
        for phase in phases:
            if cancellation is not None and cancellation.is_cancelled:
                cancelled = True
                self.logger.info(f"Recovery of {module_id} cancelled before {phase.value}")
                break

            phase_result = await self._execute_phase(phase, context, cancellation)
            result.phase_results.append(phase_result)
            self._apply_phase_events(module_id, context)

            if phase_result.status == PhaseStatus.FAILED and not options.force_recovery:
                partial = True
                break

        if not options.skip_validation and not cancelled:
            result.validation_results = self._validate_recovery(module_path)
            validation_passed = all(
                v.status != ValidationStatus.FAILED for v in result.validation_results
            )
            if not validation_passed and not options.force_recovery:
                partial = True

        final_state = await self.assess(module_id)
        result.final_health_score = final_state.health_score
        result.errors_remaining = final_state.error_count
        result.errors_resolved = result.errors_at_start - result.errors_remaining
        result.health_improvement = result.final_health_score - result.initial_health_score
        self._module_states[module_id] = self._with_history(final_state)

        if cancelled:
            result.recovery_status = RecoveryStatus.CANCELLED
        elif partial:
            result.recovery_status = RecoveryStatus.PARTIAL
        else:
            result.recovery_status = self.classify_outcome(result)

    def classify_outcome(self, result: RecoveryResult) -> RecoveryStatus:
        if result.final_health_score >= self.completion_threshold and result.errors_remaining == 0:
            return RecoveryStatus.COMPLETED
        if result.health_improvement > 0:
            return RecoveryStatus.PARTIAL
        return RecoveryStatus.FAILED

    def _select_phases(
        self,
        options: RecoveryOptions,
        strategy: RecoveryStrategy,
        module_path: Path,
    ) -> List[RecoveryPhaseName]:
        if options.phases is not None:
            return list(options.phases)

        phases = default_phases(strategy)
        # Installing needs a manifest, so create it first when it is missing
        manifest = module_path / self.recovery_settings.manifest_file
        if (
            options.repair_configuration_first
            and module_path.is_dir()
            and not manifest.exists()
            and RecoveryPhaseName.CONFIGURATION_REPAIR in phases
            and RecoveryPhaseName.DEPENDENCY_RESOLUTION in phases
        ):
            phases.remove(RecoveryPhaseName.CONFIGURATION_REPAIR)
            phases.insert(phases.index(RecoveryPhaseName.DEPENDENCY_RESOLUTION), RecoveryPhaseName.CONFIGURATION_REPAIR)
        return phases

    async def _create_backup(
        self,
        module_id: str,
        module_path: Path,
        backup_root: Path,
        result: RecoveryResult,
    ) -> None:
        try:
            metadata = await self._backup_manager_for(backup_root).create_backup(
                module_id, module_path, tags=["pre-recovery"]
            )
        except Exception as e:
            self.logger.warning(f"Backup of {module_id} failed, continuing without rollback anchor: {e}")
            return
        result.backup_created = True
        result.backup_path = metadata.backup_path
        result.rollback_available = True
        result.rollback_path = metadata.backup_path

    async def _execute_phase(
        self,
        phase: RecoveryPhaseName,
        context: PhaseContext,
        cancellation: Optional[CancellationToken] = None,
    ) -> PhaseResult:
        options = context.options
        phase_result = PhaseResult(phase_name=phase.value)
        started = time.monotonic()

        if options.dry_run:
            phase_result.outputs.append(f"DRY RUN: Would {DRY_RUN_DESCRIPTIONS[phase]}")
            phase_result.status = PhaseStatus.COMPLETED
            self._finish_phase(phase_result, started)
            return phase_result

        max_retries = options.max_retries
        if max_retries is None:
            max_retries = self.recovery_settings.max_retries
        retry_delay = options.retry_delay
        if retry_delay is None:
            retry_delay = self.recovery_settings.retry_delay_seconds

        handler = PHASE_HANDLERS[phase]
        for attempt in range(1, max_retries + 2):
            phase_result.attempts = attempt
            phase_result.errors_fixed = 0
            try:
                await handler(self, context, phase_result)
                break
            except Exception as e:
                phase_result.status = PhaseStatus.FAILED
                phase_result.health_improvement = 0
                phase_result.errors.append(str(e) or type(e).__name__)
                phase_result.error_category = classify_error(e, default=ErrorCategory.PHASE)
                self.logger.warning(f"Phase {phase.value} failed for {context.module_id} (attempt {attempt}): {e}")

            if attempt > max_retries:
                break
            if cancellation is not None and cancellation.is_cancelled:
                break
            phase_result.outputs.append(f"Retrying {phase.value} (attempt {attempt + 1} of {max_retries + 1})")
            await asyncio.sleep(retry_delay)

        self._finish_phase(phase_result, started)
        log_recovery_operation(
            self.logger,
            f"Phase {phase.value} {phase_result.status.value}",
            module_id=context.module_id,
            session_id=options.session_id,
            phase=phase.value,
            attempt=phase_result.attempts,
            status=phase_result.status.value,
            duration=phase_result.duration,
            level=logging.DEBUG,
        )
        return phase_result

    @staticmethod
    def _finish_phase(phase_result: PhaseResult, started: float) -> None:
        phase_result.end_time = _now()
        phase_result.duration = round(time.monotonic() - started, 3)

    def _complete(self, phase: RecoveryPhaseName, phase_result: PhaseResult) -> None:
        phase_result.status = PhaseStatus.COMPLETED
        phase_result.health_improvement = PHASE_HEALTH_ESTIMATES[phase]

    async def _run_command(
        self,
        command: List[str],
        context: PhaseContext,
        phase: RecoveryPhaseName,
        failure: str,
    ) -> str:
        try:
            return await self.process_runner.run(command, cwd=context.module_path, timeout=context.timeout)
        except (CommandExecutionError, CommandTimeoutError) as e:
            raise PhaseExecutionError(f"{failure}: {e}", phase=phase.value, module_id=context.module_id) from e

    def _read_manifest(self, module_path: Path) -> Dict[str, Any]:
        manifest = module_path / self.recovery_settings.manifest_file
        data = json.loads(manifest.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{manifest.name} must contain a JSON object")
        return data

    async def _resolve_dependencies(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        manifest_name = self.recovery_settings.manifest_file
        if not (context.module_path / manifest_name).is_file():
            raise PhaseExecutionError(
                f"{manifest_name} not found",
                phase=RecoveryPhaseName.DEPENDENCY_RESOLUTION.value,
                module_id=context.module_id,
            )
        command = self.recovery_settings.installer_command
        output = await self._run_command(
            command, context, RecoveryPhaseName.DEPENDENCY_RESOLUTION, f"{' '.join(command)} failed"
        )
        if output:
            phase_result.outputs.append(output)
        phase_result.outputs.append("Dependencies installed")
        self._complete(RecoveryPhaseName.DEPENDENCY_RESOLUTION, phase_result)
        phase_result.errors_fixed = 1
        context.events.append(DependencyHealthChanged(DependencyHealth.RESOLVED))

    async def _repair_configuration(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        created = []
        manifest_name = self.recovery_settings.manifest_file
        manifest = context.module_path / manifest_name
        if not manifest.exists():
            manifest.write_text(
                json.dumps(self._manifest_template(context.module_id), indent=2), encoding="utf-8"
            )
            created.append(manifest_name)

        config_name = self.recovery_settings.build_config_file
        build_config = context.module_path / config_name
        if not build_config.exists():
            build_config.write_text(json.dumps(BUILD_CONFIG_TEMPLATE, indent=2), encoding="utf-8")
            created.append(config_name)

        for name in created:
            phase_result.outputs.append(f"Created basic {name}")
            context.result.configuration_changes.append(ConfigurationChange(
                file=name,
                change_type=ChangeType.CREATED,
                description=f"Created basic {name}",
                backup=context.result.backup_path,
            ))
            context.result.files_modified.append(str(context.module_path / name))
        if not created:
            phase_result.outputs.append("Configuration files present")

        self._complete(RecoveryPhaseName.CONFIGURATION_REPAIR, phase_result)
        phase_result.errors_fixed = len(created)
        context.events.append(ConfigurationRepaired(
            manifest_created=manifest_name in created,
            build_config_created=config_name in created,
            files=tuple(created),
        ))

    def _manifest_template(self, module_id: str) -> Dict[str, Any]:
        return {
            "name": f"{self.recovery_settings.package_scope}/{module_id}",
            "version": "1.0.0",
            "description": f"{module_id} module",
            "main": "dist/index.js",
            "types": "dist/index.d.ts",
            "scripts": {
                "build": "tsup",
                "test": "jest",
                "type-check": "tsc --noEmit",
            },
            "devDependencies": {
                "typescript": "^5.0.0",
                "tsup": "^8.0.0",
                "jest": "^29.0.0",
            },
        }

    async def _repair_code(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        if self.code_repair is not None:
            phase_result.outputs.extend(await self.code_repair(context.module_id, context.module_path))
        else:
            phase_result.outputs.append("Code repair completed")
        self._complete(RecoveryPhaseName.CODE_REPAIR, phase_result)

    async def _fix_build(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        try:
            output = await self._run_command(
                self.recovery_settings.build_command, context, RecoveryPhaseName.BUILD_FIX, "Build failed"
            )
        except PhaseExecutionError:
            context.events.append(BuildStatusChanged(BuildStatus.FAILED))
            raise
        if output:
            phase_result.outputs.append(output)
        self._complete(RecoveryPhaseName.BUILD_FIX, phase_result)
        context.events.append(BuildStatusChanged(BuildStatus.SUCCESS))

    async def _fix_tests(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        try:
            scripts = self._read_manifest(context.module_path).get("scripts") or {}
        except FileNotFoundError:
            scripts = {}
        if not isinstance(scripts, dict):
            raise PhaseExecutionError(
                "\"scripts\" in the manifest must be an object",
                phase=RecoveryPhaseName.TEST_FIX.value,
                module_id=context.module_id,
            )
        if not scripts.get("test"):
            phase_result.outputs.append("No test script found, skipping test fix")
            phase_result.status = PhaseStatus.SKIPPED
            return

        try:
            output = await self._run_command(
                self.recovery_settings.test_command, context, RecoveryPhaseName.TEST_FIX, "Test fix failed"
            )
        except PhaseExecutionError:
            context.events.append(TestStatusChanged(TestStatus.FAILING))
            raise
        if output:
            phase_result.outputs.append(output)
        self._complete(RecoveryPhaseName.TEST_FIX, phase_result)
        context.events.append(TestStatusChanged(TestStatus.PASSING))

    async def _validate_structure(self, context: PhaseContext, phase_result: PhaseResult) -> None:
        missing = [
            name for name, present in (
                (self.recovery_settings.manifest_file,
                 (context.module_path / self.recovery_settings.manifest_file).is_file()),
                (self.recovery_settings.source_directory,
                 (context.module_path / self.recovery_settings.source_directory).is_dir()),
            )
            if not present
        ]
        if missing:
            raise PhaseExecutionError(
                f"Basic validation failed - missing required files: {', '.join(missing)}",
                phase=RecoveryPhaseName.VALIDATION.value,
                module_id=context.module_id,
            )
        phase_result.outputs.append("Basic validation passed")
        self._complete(RecoveryPhaseName.VALIDATION, phase_result)

    def _validate_recovery(self, module_path: Path) -> List[ValidationResult]:
        """Post-recovery file structure checks; read-only."""
        manifest_name = self.recovery_settings.manifest_file
        source_directory = self.recovery_settings.source_directory
        config_name = self.recovery_settings.build_config_file

        manifest_exists = (module_path / manifest_name).is_file()
        source_exists = (module_path / source_directory).is_dir()
        config_exists = (module_path / config_name).is_file()
        return [
            ValidationResult(
                validation_type="file-structure",
                status=ValidationStatus.PASSED if manifest_exists else ValidationStatus.FAILED,
                message=f"{manifest_name} exists" if manifest_exists else f"{manifest_name} missing",
                details={"file": manifest_name, "exists": manifest_exists},
            ),
            ValidationResult(
                validation_type="file-structure",
                status=ValidationStatus.PASSED if source_exists else ValidationStatus.WARNING,
                message=f"{source_directory} directory exists" if source_exists else f"{source_directory} directory missing",
                details={"directory": source_directory, "exists": source_exists},
            ),
            ValidationResult(
                validation_type="configuration",
                status=ValidationStatus.PASSED if config_exists else ValidationStatus.WARNING,
                message=f"{config_name} exists" if config_exists else f"{config_name} missing",
                details={"file": config_name, "exists": config_exists},
            ),
        ]

    def _apply_phase_events(self, module_id: str, context: PhaseContext) -> None:
        state = self._module_states.get(module_id)
        while context.events:
            event = context.events.pop(0)
            if state is not None:
                state = apply_module_event(state, event)
        if state is not None:
            self._module_states[module_id] = state

    def _with_history(self, state: ModuleState) -> ModuleState:
        history = self._history.get(state.module_id)
        if history:
            state = state.model_copy(update={"recovery_history": list(history)})
        return state

    def _record_failure(self, result: RecoveryResult, error: Exception) -> None:
        result.recovery_status = RecoveryStatus.FAILED
        result.phase_results.append(PhaseResult(
            phase_name=ERROR_HANDLING_PHASE,
            status=PhaseStatus.FAILED,
            end_time=_now(),
            errors=[str(error) or type(error).__name__],
            error_category=classify_error(error),
        ))

    @staticmethod
    def _finish(result: RecoveryResult, started: float) -> None:
        result.end_time = _now()
        result.duration = round(time.monotonic() - started, 3)

    def _record_attempt(self, result: RecoveryResult) -> None:
        if result.recovery_strategy is None:
            return
        attempt = RecoveryAttempt(
            attempt_id=result.attempt_id or uuid4().hex,
            start_time=result.start_time,
            end_time=result.end_time,
            duration=result.duration,
            strategy=result.recovery_strategy,
            status=result.recovery_status.value,
            health_before=result.initial_health_score,
            health_after=result.final_health_score,
            errors_fixed=max(0, result.errors_resolved),
            issues_introduced=max(0, -result.errors_resolved),
            rollback_required=result.recovery_status == RecoveryStatus.FAILED and result.rollback_available,
            notes="dry run" if any(
                output.startswith("DRY RUN") for phase in result.phase_results for output in phase.outputs
            ) else None,
        )
        self._history.setdefault(result.module_id, []).append(attempt)
        state = self._module_states.get(result.module_id)
        if state is not None:
            self._module_states[result.module_id] = apply_module_event(state, RecoveryFinished(attempt))

    async def rollback_module(
        self,
        module_id: str,
        reason: str,
        backup_path: Optional[Path] = None,
        preserve_progress: bool = False,
    ) -> RollbackResult:
        """
        Restore a module's critical files from a backup.

        Uses `backup_path` when given, otherwise the latest backup of the
        module. With `preserve_progress`, files created by recovery since
        the backup are kept instead of removed. Rolling back twice to the
        same backup yields the same module state.

        Returns:
            RollbackResult; never raises
        """
        result = RollbackResult(module_id=module_id, rollback_reason=reason)
        try:
            self.manager.validate_module_id(module_id)
        except InvalidModuleIdError as e:
            result.errors.append(str(e))
            return result

        lock = self._lock_for(module_id)
        if lock.locked():
            result.errors.append(
                str(RecoveryInProgressError(
                    f"Recovery or rollback already in progress for module {module_id}", module_id
                ))
            )
            return result

        async with lock:
            try:
                await self._run_rollback(module_id, backup_path, preserve_progress, result)
            except Exception as e:
                self.logger.error(f"Rollback of module {module_id} failed: {e}")
                result.rollback_status = RecoveryStatus.FAILED
                result.errors.append(str(e) or type(e).__name__)

        log_recovery_operation(
            self.logger,
            f"Rollback of {module_id} {result.rollback_status.value}: {reason}",
            module_id=module_id,
            status=result.rollback_status.value,
        )
        return result

    async def _run_rollback(
        self,
        module_id: str,
        backup_path: Optional[Path],
        preserve_progress: bool,
        result: RollbackResult,
    ) -> None:
        self.manager.validate_module_id(module_id)
        metadata = self._find_backup(module_id, backup_path)
        result.backup_id = metadata.id
        manager = self._backup_manager_for(Path(metadata.backup_path).parent)

        module_path = self.module_path(module_id)
        retained = []
        if preserve_progress:
            retained = [name for name in metadata.absent_files if (module_path / name).exists()]
        outcome = await manager.restore_backup(
            metadata, module_path, remove_created=not preserve_progress
        )

        restored = set(outcome.restored_files)
        result.state_restoration = StateRestoration(
            module_state_restored=outcome.verified,
            files_restored=outcome.restored_files,
            files_removed=outcome.removed_files,
            configurations_restored=[name for name in outcome.restored_files if name in self.recovery_settings.critical_files],
            dependencies_restored=self.recovery_settings.manifest_file in restored
            or self.recovery_settings.manifest_file not in metadata.files,
        )
        if preserve_progress:
            result.preserved_progress = PreservedProgress(
                progress_preserved=True,
                partial_fixes_retained=retained,
                knowledge_base_updated=bool(self._history.get(module_id)),
            )

        state = self._with_history(await self.assess(module_id))
        self._module_states[module_id] = state

        consistent = outcome.verified
        no_data_loss = restored == set(metadata.files)
        result.rollback_validation = RollbackValidation(
            module_state_consistent=consistent,
            build_status_valid=state.build_status != BuildStatus.FAILED,
            no_data_loss=no_data_loss,
            rollback_complete=consistent and no_data_loss,
        )
        if result.rollback_validation.rollback_complete:
            result.rollback_status = RecoveryStatus.COMPLETED
        else:
            result.rollback_status = RecoveryStatus.FAILED
            result.errors.extend(f"File does not match backup: {name}" for name in outcome.mismatched_files)

    def _find_backup(self, module_id: str, backup_path: Optional[Path]) -> BackupMetadata:
        if backup_path is not None:
            backup_path = Path(backup_path)
            metadata = self._backup_manager_for(backup_path.parent).load_metadata(backup_path)
        else:
            if self.backup_manager is None:
                raise RollbackError("No backup directory configured", module_id)
            metadata = self.backup_manager.latest_backup(module_id)
            if metadata is None:
                raise RollbackError(f"No backup available for module {module_id}", module_id)
        if metadata.module_id != module_id:
            raise RollbackError(
                f"Backup {metadata.id} belongs to module {metadata.module_id}, not {module_id}",
                module_id,
            )
        return metadata


BUILD_CONFIG_TEMPLATE: Dict[str, Any] = {
    "extends": "../../tsconfig.json",
    "compilerOptions": {
        "outDir": "./dist",
        "rootDir": "./src",
    },
    "include": ["src/**/*"],
    "exclude": ["dist", "node_modules", "**/*.test.ts", "**/*.spec.ts"],
}

PHASE_HANDLERS: Dict[RecoveryPhaseName, Callable[..., Awaitable[None]]] = {
    RecoveryPhaseName.DEPENDENCY_RESOLUTION: ModuleRecoveryEngine._resolve_dependencies,
    RecoveryPhaseName.CONFIGURATION_REPAIR: ModuleRecoveryEngine._repair_configuration,
    RecoveryPhaseName.CODE_REPAIR: ModuleRecoveryEngine._repair_code,
    RecoveryPhaseName.BUILD_FIX: ModuleRecoveryEngine._fix_build,
    RecoveryPhaseName.TEST_FIX: ModuleRecoveryEngine._fix_tests,
    RecoveryPhaseName.VALIDATION: ModuleRecoveryEngine._validate_structure,
}


def _check_phase_tables() -> None:
    for table in (PHASE_HANDLERS, PHASE_HEALTH_ESTIMATES, DRY_RUN_DESCRIPTIONS):
        missing = set(RecoveryPhaseName) - set(table)
        if missing:
            raise RuntimeError(f"Recovery phases without an entry: {sorted(p.value for p in missing)}")


_check_phase_tables()
