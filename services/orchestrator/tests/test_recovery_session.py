"""
Tests for recovery plans and the session command reducer.
"""

import pytest

from recovery_api.recovery.errors import DependencyNotSatisfiedError, InvalidTransitionError
from recovery_api.recovery.health import RecoveryStrategy
from recovery_api.recovery.models import (
    PLANNING_TASK_ID,
    VALIDATION_TASK_ID,
    CancelTask,
    CompletePhase,
    CompleteTask,
    ExecutionStrategy,
    FailTask,
    PhaseStatus,
    PhaseType,
    RecordHealth,
    RecordModuleResult,
    RecoveryConfiguration,
    RetryTask,
    SessionStatus,
    SkipTask,
    StartPhase,
    StartTask,
    TaskStatus,
    apply_session_command,
    build_recovery_plan,
    create_recovery_session,
    recovery_task_id,
    schedule_batches,
    transition_session,
)


def apply_all(session, *commands):
    for command in commands:
        session = apply_session_command(session, command)
    return session


def _to_executing(session):
    session = transition_session(session, SessionStatus.ANALYZING)
    session = transition_session(session, SessionStatus.PLANNING)
    session = apply_all(
        session,
        StartPhase(1),
        StartTask(PLANNING_TASK_ID),
        CompleteTask(PLANNING_TASK_ID),
        CompletePhase(1),
    )
    return transition_session(session, SessionStatus.EXECUTING)


class TestPlanBuilding:
    def test_sequential_plan_has_single_recovery_phase(self):
        plan = build_recovery_plan(["core", "auth", "widgets"])
        assert plan.total_phases == 3
        assert [p.phase_type for p in plan.phases] == [
            PhaseType.ANALYSIS, PhaseType.IMPLEMENTATION, PhaseType.VALIDATION
        ]
        recovery = plan.phases[1]
        assert [t.task_id for t in recovery.tasks] == [
            "recover-core", "recover-auth", "recover-widgets"
        ]
        assert recovery.max_task_concurrency == 1
        assert not recovery.parallel_execution

    def test_parallel_plan_has_one_phase_per_batch(self):
        plan = build_recovery_plan(
            ["a", "b", "c", "d", "e"],
            execution_strategy=ExecutionStrategy.PARALLEL,
            max_concurrency=2,
        )
        batches = [p for p in plan.phases if p.phase_type == PhaseType.IMPLEMENTATION]
        assert [[t.target_modules[0] for t in p.tasks] for p in batches] == [["a", "b"], ["c", "d"], ["e"]]
        assert all(p.parallel_execution for p in batches)

    def test_phases_depend_on_predecessor(self):
        plan = build_recovery_plan(["a"])
        assert plan.phases[0].depends_on == []
        for previous, phase in zip(plan.phases, plan.phases[1:]):
            assert phase.depends_on == [previous.phase_id]

    def test_schedule_batches(self):
        assert schedule_batches(["a", "b", "c"], ExecutionStrategy.SEQUENTIAL, 2) == [["a", "b", "c"]]
        assert schedule_batches(["a", "b", "c"], ExecutionStrategy.PARALLEL, 2) == [["a", "b"], ["c"]]
        assert schedule_batches([], ExecutionStrategy.PARALLEL, 2) == [[]]

    def test_session_counts_every_task(self):
        session = create_recovery_session(
            "/tmp/workspace",
            ["a", "b"],
            strategy=RecoveryStrategy.REBUILD,
            configuration=RecoveryConfiguration(completion_health_threshold=90),
        )
        assert session.total_tasks == 4
        assert session.target_health_score == 90
        assert session.recovery_plan.recovery_strategy == RecoveryStrategy.REBUILD
        assert session.id.startswith("recovery-")
        assert session.status == SessionStatus.INITIALIZING


class TestSessionLifecycle:
    def test_valid_lifecycle(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        assert session.status == SessionStatus.EXECUTING
        session = transition_session(session, SessionStatus.COMPLETED)
        assert session.is_terminal
        assert session.end_time is not None
        assert session.duration is not None

    def test_cannot_skip_states(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        with pytest.raises(InvalidTransitionError):
            transition_session(session, SessionStatus.EXECUTING)

    def test_terminal_session_rejects_commands(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        session = transition_session(session, SessionStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            transition_session(session, SessionStatus.ANALYZING)
        with pytest.raises(InvalidTransitionError):
            apply_session_command(session, StartPhase(1))

    def test_module_results_recorded_after_termination(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        session = transition_session(session, SessionStatus.FAILED)
        session = apply_session_command(session, RecordModuleResult("a", "failed"))
        assert session.module_outcomes == {"a": "failed"}

    def test_pause_and_resume(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        session = transition_session(session, SessionStatus.PAUSED)
        session = transition_session(session, SessionStatus.EXECUTING)
        assert session.status == SessionStatus.EXECUTING

    def test_commands_do_not_mutate_input(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        updated = transition_session(session, SessionStatus.ANALYZING)
        assert session.status == SessionStatus.INITIALIZING
        assert updated.status == SessionStatus.ANALYZING
        assert updated.id == session.id

    def test_unknown_command_is_rejected(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        with pytest.raises(TypeError):
            apply_session_command(session, "start")


class TestPhaseAndTaskCommands:
    def test_phase_cannot_start_before_dependencies(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        with pytest.raises(DependencyNotSatisfiedError):
            apply_session_command(session, StartPhase(2))

    def test_task_requires_executing_phase(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        with pytest.raises(InvalidTransitionError):
            apply_session_command(session, StartTask(recovery_task_id("a")))

    def test_progress_tracks_completed_tasks(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a", "b"]))
        assert session.overall_progress == 25.0
        session = apply_all(
            session,
            StartPhase(2),
            StartTask("recover-a"),
            CompleteTask("recover-a", output="done"),
            StartTask("recover-b"),
            FailTask("recover-b", error_output="npm ERR!"),
            CompletePhase(2, health_improvement=30, errors_resolved=2),
        )
        assert session.completed_tasks == 2
        assert session.failed_tasks == 1
        assert session.overall_progress == 50.0
        phase = session.recovery_plan.get_phase(2)
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.health_improvement == 30
        _, task = session.recovery_plan.find_task("recover-b")
        assert task.status == TaskStatus.FAILED
        assert task.error_output == "npm ERR!"

    def test_completed_task_cannot_restart(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        session = apply_all(session, StartPhase(2), StartTask("recover-a"), CompleteTask("recover-a"))
        with pytest.raises(InvalidTransitionError):
            apply_session_command(session, StartTask("recover-a"))

    def test_retry_requires_remaining_retries(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        session = apply_all(session, StartPhase(2), StartTask("recover-a"), FailTask("recover-a"))
        with pytest.raises(InvalidTransitionError):
            apply_session_command(session, RetryTask("recover-a"))

    def test_retry_then_complete(self):
        session = _to_executing(create_recovery_session(
            "/tmp/workspace", ["a"], configuration=RecoveryConfiguration(max_retries=1)
        ))
        session = apply_all(
            session,
            StartPhase(2),
            StartTask("recover-a"),
            FailTask("recover-a"),
            RetryTask("recover-a"),
            StartTask("recover-a"),
            CompleteTask("recover-a"),
        )
        _, task = session.recovery_plan.find_task("recover-a")
        assert task.status == TaskStatus.COMPLETED
        assert task.retry_count == 1
        assert session.failed_tasks == 0

    def test_skip_and_cancel_pending_tasks(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a", "b"]))
        session = apply_all(session, CancelTask("recover-a"), SkipTask(VALIDATION_TASK_ID))
        assert session.recovery_plan.find_task("recover-a")[1].status == TaskStatus.CANCELLED
        assert session.recovery_plan.find_task(VALIDATION_TASK_ID)[1].status == TaskStatus.SKIPPED
        with pytest.raises(InvalidTransitionError):
            apply_session_command(session, CancelTask("recover-a"))

    def test_record_health(self):
        session = create_recovery_session("/tmp/workspace", ["a"])
        session = apply_all(
            session,
            RecordHealth(initial_health_score=40, errors_at_start=6),
            RecordHealth(current_health_score=85, errors_remaining=1),
        )
        assert session.health_improvement == 45
        assert session.errors_resolved == 5
        assert session.errors_remaining == 1

    def test_unknown_task(self):
        session = _to_executing(create_recovery_session("/tmp/workspace", ["a"]))
        with pytest.raises(KeyError):
            apply_session_command(session, StartTask("recover-missing"))
