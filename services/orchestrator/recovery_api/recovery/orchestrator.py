"""
Multi-module recovery orchestration.

`RecoveryOrchestrator.recover_multiple_modules` runs the recovery engine
across a list of modules, either one at a time or in bounded-concurrency
batches, and folds the per-module results into one aggregate result. Each
invocation owns a RecoverySession whose plan is driven exclusively through
session commands applied by the scheduler, never by module workers.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from recovery_api.logging import log_recovery_operation

from .engine import (
    CancellationToken,
    ModuleRecoveryEngine,
    PhaseResult,
    PhaseStatus,
    RecoveryOptions,
    RecoveryResult,
    RecoveryStatus,
)
from .errors import ErrorCategory
from .health import ModuleCategory, RecoveryStrategy
from .models import (
    PLANNING_TASK_ID,
    VALIDATION_TASK_ID,
    CancelTask,
    CompletePhase,
    CompleteTask,
    ExecutionStrategy,
    FailPhase,
    FailTask,
    PhaseType,
    RecordHealth,
    RecordModuleResult,
    RecoveryConfiguration,
    RecoverySession,
    SessionStatus,
    SkipTask,
    StartPhase,
    StartTask,
    TransitionSession,
    apply_session_command,
    create_recovery_session,
    recovery_task_id,
)

BATCH_FAILURE_PHASE = "batch-execution"

CATEGORY_ORDER = (ModuleCategory.CORE, ModuleCategory.FOUNDATION, ModuleCategory.BUSINESS)


def _now() -> datetime:
    return datetime.now(UTC)


class MultiModuleRecoveryOptions(BaseModel):
    module_ids: List[str]
    parallel_execution: bool = False
    dependency_order_optimization: bool = True
    max_concurrency: Optional[int] = Field(default=None, ge=1)  # None uses settings
    fail_fast: bool = False
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.REPAIR
    dry_run: bool = False
    backup_path: Optional[Path] = None
    force_recovery: bool = False
    skip_validation: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    repair_configuration_first: bool = True


class MultiModuleRecoveryResult(BaseModel):
    session_id: str
    total_modules: int
    execution_strategy: ExecutionStrategy
    recovery_strategy: RecoveryStrategy
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    duration: float = 0.0

    module_results: List[RecoveryResult] = Field(default_factory=list)
    execution_order: List[str] = Field(default_factory=list)
    skipped_modules: List[str] = Field(default_factory=list)

    modules_successful: int = 0
    modules_partial: int = 0
    modules_failed: int = 0
    modules_cancelled: int = 0

    overall_health_improvement: int = 0
    total_errors_resolved: int = 0
    parallelization_efficiency: float = 0.0
    dependency_order_optimal: bool = False

    session: Optional[RecoverySession] = None


def parallelization_efficiency(durations: Sequence[float]) -> float:
    """Sum of individual durations over the longest one; 0 when nothing ran."""
    longest = max(durations, default=0.0)
    if longest <= 0:
        return 0.0
    return round(sum(durations) / longest, 2)


class RecoveryOrchestrator:
    """
    Runs module recoveries for one workspace.

    The orchestrator holds no process-wide state: each instance wraps one
    engine, and each call to `recover_multiple_modules` creates its own
    session and cancellation token, so several sessions may run at once.
    """

    def __init__(self, engine: ModuleRecoveryEngine):
        self.logger = logging.getLogger(__name__)
        self.engine = engine
        self.settings = engine.settings
        self._sessions: Dict[str, RecoverySession] = {}
        self._cancellations: Dict[str, CancellationToken] = {}
        self._session_lock = asyncio.Lock()

    @property
    def workspace_path(self) -> Path:
        return self.settings.workspace_root

    def get_session(self, session_id: str) -> Optional[RecoverySession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[RecoverySession]:
        return list(self._sessions.values())

    def _prune_sessions(self) -> None:
        """Make room for a new session: at most ``max_retained_sessions - 1`` finished ones stay."""
        limit = self.settings.recovery.max_retained_sessions
        finished = [sid for sid, session in self._sessions.items() if session.is_terminal]
        for session_id in finished[:max(0, len(finished) - limit + 1)]:
            del self._sessions[session_id]

    def cancel(self, session_id: str, reason: str = "Recovery cancelled") -> bool:
        """
        Stop scheduling further modules of a running session.

        In-flight module recoveries finish their current phase; nothing
        already applied is rolled back.

        Returns:
            True if the session was running and is now flagged for cancellation
        """
        token = self._cancellations.get(session_id)
        session = self._sessions.get(session_id)
        if token is None or session is None or session.is_terminal:
            return False
        self.logger.info(f"Cancelling recovery session {session_id}: {reason}")
        token.cancel(reason)
        return True

    def optimize_recovery_order(self, module_ids: Sequence[str]) -> List[str]:
        """
        Stable partition of modules into core, foundation and business.

        Integration and testing modules are scheduled with business modules.
        """
        buckets: Dict[ModuleCategory, List[str]] = {category: [] for category in CATEGORY_ORDER}
        for module_id in module_ids:
            category = ModuleCategory(self.engine.manager.category_for(module_id))
            buckets.get(category, buckets[ModuleCategory.BUSINESS]).append(module_id)
        return [module_id for category in CATEGORY_ORDER for module_id in buckets[category]]

    async def recover_multiple_modules(
        self,
        options: MultiModuleRecoveryOptions,
        cancellation: Optional[CancellationToken] = None,
    ) -> MultiModuleRecoveryResult:
        """
        Recover a set of modules.

        Args:
            options: Module ids, scheduling mode and per-module recovery flags
            cancellation: Optional token; a fresh one is created when omitted

        Returns:
            MultiModuleRecoveryResult; per-module failures are reported in
            `module_results` and never raised
        """
        started = time.monotonic()
        module_ids = list(dict.fromkeys(options.module_ids))
        if options.dependency_order_optimization:
            module_ids = self.optimize_recovery_order(module_ids)

        max_concurrency = options.max_concurrency or self.settings.recovery.max_concurrency
        execution_strategy = (
            ExecutionStrategy.PARALLEL if options.parallel_execution else ExecutionStrategy.SEQUENTIAL
        )
        configuration = RecoveryConfiguration(
            create_backups=not options.dry_run and (
                options.backup_path is not None or self.settings.recovery.backup_directory is not None
            ),
            backup_path=str(options.backup_path) if options.backup_path else None,
            max_backups=self.settings.recovery.max_backups,
            max_concurrent_operations=max_concurrency,
            command_timeout=options.timeout or self.settings.recovery.command_timeout_seconds,
            max_retries=options.max_retries if options.max_retries is not None else self.settings.recovery.max_retries,
            retry_delay=self.settings.recovery.retry_delay_seconds,
            completion_health_threshold=self.engine.completion_threshold,
        )
        session = create_recovery_session(
            str(self.workspace_path),
            module_ids,
            strategy=options.recovery_strategy,
            execution_strategy=execution_strategy,
            configuration=configuration,
        )
        token = cancellation or CancellationToken()
        self._prune_sessions()
        self._sessions[session.id] = session
        self._cancellations[session.id] = token

        result = MultiModuleRecoveryResult(
            session_id=session.id,
            total_modules=len(module_ids),
            execution_strategy=execution_strategy,
            recovery_strategy=options.recovery_strategy,
            dependency_order_optimal=module_ids == self.optimize_recovery_order(module_ids),
        )
        log_recovery_operation(
            self.logger,
            f"Starting {execution_strategy.value} recovery of {len(module_ids)} modules",
            session_id=session.id,
            strategy=options.recovery_strategy.value,
        )

        try:
            await self._run_session(session.id, module_ids, options, max_concurrency, token, result)
        except Exception:
            self.logger.exception(f"Recovery session {session.id} failed")
            self._aggregate(result)
            await self._fail_session(session.id)
        finally:
            self._cancellations.pop(session.id, None)

        result.end_time = _now()
        result.duration = time.monotonic() - started
        result.session = self._sessions[session.id]

        log_recovery_operation(
            self.logger,
            f"Recovery session finished: {result.modules_successful} completed, "
            f"{result.modules_partial} partial, {result.modules_failed} failed, "
            f"{result.modules_cancelled} cancelled",
            session_id=session.id,
            status=result.session.status.value,
            duration=result.duration,
        )
        return result

    async def _apply(self, session_id: str, *commands) -> RecoverySession:
        async with self._session_lock:
            session = self._sessions[session_id]
            for command in commands:
                session = apply_session_command(session, command)
            self._sessions[session_id] = session
            return session

    async def _fail_session(self, session_id: str) -> None:
        session = self._sessions[session_id]
        if not session.is_terminal:
            await self._apply(session_id, TransitionSession(SessionStatus.FAILED))

    async def _run_session(
        self,
        session_id: str,
        module_ids: List[str],
        options: MultiModuleRecoveryOptions,
        max_concurrency: int,
        token: CancellationToken,
        result: MultiModuleRecoveryResult,
    ) -> None:
        await self._apply(
            session_id,
            TransitionSession(SessionStatus.ANALYZING),
            TransitionSession(SessionStatus.PLANNING),
            StartPhase(1),
            StartTask(PLANNING_TASK_ID),
            CompleteTask(PLANNING_TASK_ID, output=f"Recovery order: {', '.join(module_ids)}"),
            CompletePhase(1),
            TransitionSession(SessionStatus.EXECUTING),
        )

        semaphore = asyncio.Semaphore(max_concurrency)
        plan = self._sessions[session_id].recovery_plan
        batch_phases = [p for p in plan.phases if p.phase_type == PhaseType.IMPLEMENTATION]

        stopped = False
        for phase in batch_phases:
            batch = [task.target_modules[0] for task in phase.tasks]
            if stopped or token.is_cancelled:
                await self._skip_modules(session_id, batch, result)
                stopped = True
                continue

            await self._apply(session_id, StartPhase(phase.phase_id))
            if options.parallel_execution:
                stopped = await self._run_batch(session_id, batch, options, semaphore, token, result)
            else:
                stopped = await self._run_sequential(session_id, batch, options, token, result)

            if stopped or token.is_cancelled:
                await self._apply(session_id, FailPhase(phase.phase_id))
                stopped = True
            else:
                await self._apply(session_id, CompletePhase(
                    phase.phase_id,
                    health_improvement=sum(r.health_improvement for r in result.module_results
                                           if r.module_id in batch),
                    errors_resolved=sum(r.errors_resolved for r in result.module_results
                                        if r.module_id in batch),
                ))

        self._aggregate(result)
        await self._validate_session(session_id, stopped, result)

        if token.is_cancelled:
            final_status = SessionStatus.CANCELLED
        elif result.modules_failed:
            final_status = SessionStatus.FAILED
        else:
            final_status = SessionStatus.COMPLETED
        await self._apply(session_id, TransitionSession(final_status))

    async def _run_sequential(
        self,
        session_id: str,
        module_ids: List[str],
        options: MultiModuleRecoveryOptions,
        token: CancellationToken,
        result: MultiModuleRecoveryResult,
    ) -> bool:
        for index, module_id in enumerate(module_ids):
            if token.is_cancelled:
                await self._skip_modules(session_id, module_ids[index:], result)
                return True

            await self._apply(session_id, StartTask(recovery_task_id(module_id)))
            module_result = await self._recover(module_id, options, session_id, token)
            await self._record_module(session_id, module_result, result)

            if options.fail_fast and module_result.recovery_status == RecoveryStatus.FAILED:
                self.logger.warning(f"Module {module_id} failed; stopping sequential recovery")
                await self._skip_modules(session_id, module_ids[index + 1:], result)
                return True
        return False

    async def _run_batch(
        self,
        session_id: str,
        batch: List[str],
        options: MultiModuleRecoveryOptions,
        semaphore: asyncio.Semaphore,
        token: CancellationToken,
        result: MultiModuleRecoveryResult,
    ) -> bool:
        async def run_one(module_id: str) -> RecoveryResult:
            async with semaphore:
                return await self._recover(module_id, options, session_id, token)

        await self._apply(session_id, *(StartTask(recovery_task_id(m)) for m in batch))
        outcomes = await asyncio.gather(*(run_one(m) for m in batch), return_exceptions=True)

        batch_failed = False
        for module_id, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self.logger.error(f"Recovery task for {module_id} raised: {outcome}")
                outcome = self._batch_failure(module_id, session_id, outcome)
            await self._record_module(session_id, outcome, result)
            if outcome.recovery_status == RecoveryStatus.FAILED:
                batch_failed = True

        if options.fail_fast and batch_failed:
            self.logger.warning("Batch contained failed modules; stopping parallel recovery")
            return True
        return False

    async def _recover(
        self,
        module_id: str,
        options: MultiModuleRecoveryOptions,
        session_id: str,
        token: CancellationToken,
    ) -> RecoveryResult:
        return await self.engine.recover_module(
            RecoveryOptions(
                module_id=module_id,
                recovery_strategy=options.recovery_strategy,
                dry_run=options.dry_run,
                max_retries=options.max_retries,
                timeout=options.timeout,
                backup_path=options.backup_path,
                force_recovery=options.force_recovery,
                skip_validation=options.skip_validation,
                repair_configuration_first=options.repair_configuration_first,
                session_id=session_id,
            ),
            cancellation=token,
        )

    @staticmethod
    def _batch_failure(module_id: str, session_id: str, error: Exception) -> RecoveryResult:
        now = _now()
        return RecoveryResult(
            module_id=module_id,
            recovery_status=RecoveryStatus.FAILED,
            end_time=now,
            session_id=session_id,
            phase_results=[PhaseResult(
                phase_name=BATCH_FAILURE_PHASE,
                status=PhaseStatus.FAILED,
                start_time=now,
                end_time=now,
                errors=[str(error)],
                error_category=ErrorCategory.BATCH,
            )],
        )

    async def _record_module(
        self,
        session_id: str,
        module_result: RecoveryResult,
        result: MultiModuleRecoveryResult,
    ) -> None:
        task_id = recovery_task_id(module_result.module_id)
        status = module_result.recovery_status
        if status in (RecoveryStatus.COMPLETED, RecoveryStatus.PARTIAL):
            finish = CompleteTask(task_id, output=f"Recovery {status.value}")
        else:
            errors = [e for phase in module_result.phase_results for e in phase.errors]
            finish = FailTask(task_id, error_output="\n".join(errors) or f"Recovery {status.value}")
        await self._apply(
            session_id, finish, RecordModuleResult(module_result.module_id, status.value)
        )
        result.module_results.append(module_result)
        result.execution_order.append(module_result.module_id)

    async def _skip_modules(
        self,
        session_id: str,
        module_ids: Sequence[str],
        result: MultiModuleRecoveryResult,
    ) -> None:
        if not module_ids:
            return
        await self._apply(session_id, *(CancelTask(recovery_task_id(m)) for m in module_ids))
        result.skipped_modules.extend(module_ids)

    def _aggregate(self, result: MultiModuleRecoveryResult) -> None:
        counts = {status: 0 for status in RecoveryStatus}
        for module_result in result.module_results:
            counts[module_result.recovery_status] += 1
        result.modules_successful = counts[RecoveryStatus.COMPLETED]
        result.modules_partial = counts[RecoveryStatus.PARTIAL]
        result.modules_failed = counts[RecoveryStatus.FAILED]
        result.modules_cancelled = counts[RecoveryStatus.CANCELLED]
        result.overall_health_improvement = sum(r.health_improvement for r in result.module_results)
        result.total_errors_resolved = sum(r.errors_resolved for r in result.module_results)
        result.parallelization_efficiency = parallelization_efficiency(
            [r.duration for r in result.module_results]
        )

    async def _validate_session(
        self,
        session_id: str,
        stopped: bool,
        result: MultiModuleRecoveryResult,
    ) -> None:
        module_results = result.module_results
        count = len(module_results) or 1
        health = RecordHealth(
            initial_health_score=round(sum(r.initial_health_score for r in module_results) / count),
            current_health_score=round(sum(r.final_health_score for r in module_results) / count),
            errors_at_start=sum(r.errors_at_start for r in module_results),
            errors_remaining=sum(r.errors_remaining for r in module_results),
        )
        validation_phase = self._sessions[session_id].recovery_plan.phases[-1]

        if stopped:
            await self._apply(session_id, health, SkipTask(VALIDATION_TASK_ID))
            return

        session = await self._apply(
            session_id,
            health,
            StartPhase(validation_phase.phase_id),
            StartTask(VALIDATION_TASK_ID),
        )
        summary = (
            f"{result.modules_successful}/{result.total_modules} modules completed, "
            f"health {session.initial_health_score} -> {session.current_health_score}"
        )
        await self._apply(
            session_id,
            CompleteTask(VALIDATION_TASK_ID, output=summary),
            CompletePhase(
                validation_phase.phase_id,
                health_improvement=session.health_improvement,
                errors_resolved=session.errors_resolved,
            ),
        )

