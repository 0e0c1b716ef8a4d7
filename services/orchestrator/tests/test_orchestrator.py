"""
Tests for multi-module recovery orchestration.
"""

import asyncio

import pytest

from conftest import FakeProcessRunner, make_module
from recovery_api.recovery.engine import (
    CancellationToken,
    ModuleRecoveryEngine,
    RecoveryResult,
    RecoveryStatus,
)
from recovery_api.recovery.errors import ErrorCategory
from recovery_api.recovery.models import (
    VALIDATION_TASK_ID,
    ExecutionStrategy,
    PhaseStatus,
    PhaseType,
    SessionStatus,
    TaskStatus,
)
from recovery_api.recovery.orchestrator import (
    BATCH_FAILURE_PHASE,
    MultiModuleRecoveryOptions,
    RecoveryOrchestrator,
    parallelization_efficiency,
)
from recovery_api.workspaces.manager import WorkspaceModuleManager


class FakeEngine:
    """Stands in for ModuleRecoveryEngine; outcomes map module ids to a status or an exception."""

    def __init__(self, settings, outcomes=None, delay=0.0, on_recover=None):
        self.settings = settings
        self.manager = WorkspaceModuleManager(settings=settings)
        self.completion_threshold = 85
        self.outcomes = outcomes or {}
        self.delay = delay
        self.on_recover = on_recover
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def recover_module(self, options, cancellation=None):
        self.calls.append(options)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_recover is not None:
                self.on_recover(options)
            await asyncio.sleep(self.delay)
            outcome = self.outcomes.get(options.module_id, RecoveryStatus.COMPLETED)
            if isinstance(outcome, Exception):
                raise outcome
            return RecoveryResult(
                module_id=options.module_id,
                recovery_status=outcome,
                recovery_strategy=options.recovery_strategy,
                initial_health_score=50,
                final_health_score=90,
                health_improvement=40,
                errors_at_start=2,
                errors_resolved=2,
                duration=self.delay,
                session_id=options.session_id,
            )
        finally:
            self.active -= 1


def task_status(session, module_id):
    return session.recovery_plan.find_task(f"recover-{module_id}")[1].status


@pytest.mark.asyncio
async def test_modules_recovered_in_dependency_order(settings):
    engine = FakeEngine(settings)
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(
        MultiModuleRecoveryOptions(module_ids=["widgets", "auth", "core"])
    )

    assert result.execution_order == ["core", "auth", "widgets"]
    assert result.dependency_order_optimal
    assert result.execution_strategy == ExecutionStrategy.SEQUENTIAL
    assert result.modules_successful == 3
    assert result.overall_health_improvement == 120
    assert result.total_errors_resolved == 6
    assert all(call.session_id == result.session_id for call in engine.calls)

    session = result.session
    assert session.status == SessionStatus.COMPLETED
    assert session.overall_progress == 100.0
    assert session.initial_health_score == 50
    assert session.current_health_score == 90
    assert session.module_outcomes == {"core": "completed", "auth": "completed", "widgets": "completed"}
    assert orchestrator.get_session(result.session_id) == session


@pytest.mark.asyncio
async def test_order_kept_without_optimization(settings):
    orchestrator = RecoveryOrchestrator(FakeEngine(settings))

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["widgets", "core"], dependency_order_optimization=False
    ))

    assert result.execution_order == ["widgets", "core"]
    assert not result.dependency_order_optimal


@pytest.mark.asyncio
async def test_duplicate_module_ids_run_once(settings):
    engine = FakeEngine(settings)
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(
        MultiModuleRecoveryOptions(module_ids=["core", "auth", "core"])
    )

    assert result.total_modules == 2
    assert [call.module_id for call in engine.calls] == ["core", "auth"]


@pytest.mark.asyncio
async def test_sequential_fail_fast_skips_remaining_modules(settings):
    engine = FakeEngine(settings, outcomes={"core": RecoveryStatus.FAILED})
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["core", "auth", "widgets"], fail_fast=True
    ))

    assert [r.module_id for r in result.module_results] == ["core"]
    assert result.skipped_modules == ["auth", "widgets"]
    assert result.modules_failed == 1

    session = result.session
    assert session.status == SessionStatus.FAILED
    assert task_status(session, "core") == TaskStatus.FAILED
    assert task_status(session, "auth") == TaskStatus.CANCELLED
    assert session.recovery_plan.find_task(VALIDATION_TASK_ID)[1].status == TaskStatus.SKIPPED
    assert session.recovery_plan.get_phase(2).status == PhaseStatus.FAILED


@pytest.mark.asyncio
async def test_failures_do_not_stop_recovery_without_fail_fast(settings):
    engine = FakeEngine(settings, outcomes={"core": RecoveryStatus.FAILED, "auth": RecoveryStatus.PARTIAL})
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(
        MultiModuleRecoveryOptions(module_ids=["core", "auth", "widgets"])
    )

    assert len(result.module_results) == 3
    assert result.modules_failed == 1
    assert result.modules_partial == 1
    assert result.modules_successful == 1
    assert result.session.status == SessionStatus.FAILED


@pytest.mark.asyncio
async def test_partial_modules_complete_the_session(settings):
    orchestrator = RecoveryOrchestrator(FakeEngine(settings, outcomes={"widgets": RecoveryStatus.PARTIAL}))

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(module_ids=["widgets"]))

    assert result.session.status == SessionStatus.COMPLETED
    assert result.modules_partial == 1


@pytest.mark.asyncio
async def test_parallel_batches_respect_concurrency_limit(settings):
    engine = FakeEngine(settings, delay=0.01)
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["a", "b", "c", "d", "e"], parallel_execution=True, max_concurrency=2
    ))

    assert engine.max_active == 2
    assert result.execution_strategy == ExecutionStrategy.PARALLEL
    assert sorted(result.execution_order) == ["a", "b", "c", "d", "e"]
    assert result.parallelization_efficiency == 5.0
    batches = [p for p in result.session.recovery_plan.phases if p.phase_type == PhaseType.IMPLEMENTATION]
    assert len(batches) == 3
    assert all(p.status == PhaseStatus.COMPLETED for p in batches)
    assert result.session.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_exception_in_batch_becomes_failed_result(settings):
    engine = FakeEngine(settings, outcomes={"b": RuntimeError("worker crashed")})
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["a", "b", "c"], parallel_execution=True, max_concurrency=3
    ))

    failed = next(r for r in result.module_results if r.module_id == "b")
    assert failed.recovery_status == RecoveryStatus.FAILED
    assert failed.phase_results[0].phase_name == BATCH_FAILURE_PHASE
    assert failed.phase_results[0].error_category == ErrorCategory.BATCH
    assert result.modules_successful == 2
    assert result.session.recovery_plan.find_task("recover-b")[1].error_output == "worker crashed"


@pytest.mark.asyncio
async def test_parallel_fail_fast_stops_after_batch(settings):
    engine = FakeEngine(settings, outcomes={"a": RecoveryStatus.FAILED})
    orchestrator = RecoveryOrchestrator(engine)

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["a", "b", "c", "d"], parallel_execution=True, max_concurrency=2, fail_fast=True
    ))

    assert sorted(result.execution_order) == ["a", "b"]
    assert result.skipped_modules == ["c", "d"]
    assert result.session.status == SessionStatus.FAILED


@pytest.mark.asyncio
async def test_cancelled_before_start(settings):
    engine = FakeEngine(settings)
    orchestrator = RecoveryOrchestrator(engine)
    token = CancellationToken()
    token.cancel()

    result = await orchestrator.recover_multiple_modules(
        MultiModuleRecoveryOptions(module_ids=["core", "auth"]), cancellation=token
    )

    assert engine.calls == []
    assert result.module_results == []
    assert result.skipped_modules == ["core", "auth"]
    assert result.session.status == SessionStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_running_session(settings):
    cancelled = []

    def cancel_after_core(options):
        if options.module_id == "core":
            cancelled.append(orchestrator.cancel(options.session_id, reason="operator request"))

    orchestrator = RecoveryOrchestrator(FakeEngine(settings, on_recover=cancel_after_core))

    result = await orchestrator.recover_multiple_modules(
        MultiModuleRecoveryOptions(module_ids=["core", "auth"])
    )

    assert cancelled == [True]
    assert result.execution_order == ["core"]
    assert result.skipped_modules == ["auth"]
    assert result.session.status == SessionStatus.CANCELLED
    assert task_status(result.session, "auth") == TaskStatus.CANCELLED
    assert not orchestrator.cancel(result.session_id)


def test_cancel_unknown_session(settings):
    assert not RecoveryOrchestrator(FakeEngine(settings)).cancel("recovery-missing")


@pytest.mark.asyncio
async def test_finished_sessions_are_pruned(settings):
    settings.recovery.max_retained_sessions = 2
    orchestrator = RecoveryOrchestrator(FakeEngine(settings))

    session_ids = []
    for _ in range(4):
        result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(module_ids=["core"]))
        session_ids.append(result.session_id)

    assert [s.id for s in orchestrator.list_sessions()] == session_ids[-2:]
    assert orchestrator.get_session(session_ids[0]) is None


def test_parallelization_efficiency():
    assert parallelization_efficiency([]) == 0.0
    assert parallelization_efficiency([0.0, 0.0]) == 0.0
    assert parallelization_efficiency([1.0, 1.0, 2.0]) == 2.0


def test_optimize_recovery_order_is_stable(settings):
    orchestrator = RecoveryOrchestrator(FakeEngine(settings))

    order = orchestrator.optimize_recovery_order(["widgets", "i18n", "billing", "shell", "auth", "core"])

    assert order == ["shell", "core", "i18n", "auth", "widgets", "billing"]


@pytest.mark.asyncio
async def test_dry_run_across_real_modules(settings):
    runner = FakeProcessRunner()
    orchestrator = RecoveryOrchestrator(ModuleRecoveryEngine(settings, process_runner=runner))
    make_module(settings, "core")
    make_module(settings, "widgets")

    result = await orchestrator.recover_multiple_modules(MultiModuleRecoveryOptions(
        module_ids=["widgets", "core"], dry_run=True
    ))

    assert runner.calls == []
    assert result.execution_order == ["core", "widgets"]
    assert result.modules_successful == 2
    assert result.session.status == SessionStatus.COMPLETED
    assert not result.session.configuration.create_backups
    assert len(orchestrator.list_sessions()) == 1
