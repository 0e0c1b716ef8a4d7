"""
Pydantic models for recovery sessions and plans.

A RecoverySession owns a RecoveryPlan made of ordered RecoveryPhases, each
holding RecoveryTasks. Session, phase and task state only change through
`apply_session_command`, which validates lifecycle transitions and
dependency edges before applying a command.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from pydantic import BaseModel, Field

from .errors import DependencyNotSatisfiedError, InvalidTransitionError
from .health import RecoveryStrategy

# Default threshold for classifying a module recovery as completed
COMPLETION_HEALTH_THRESHOLD = 85


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EXECUTING = "executing"
    PAUSED = "paused"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_SESSION_STATES = frozenset({
    SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED
})

VALID_SESSION_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.INITIALIZING: frozenset({
        SessionStatus.ANALYZING, SessionStatus.FAILED, SessionStatus.CANCELLED
    }),
    SessionStatus.ANALYZING: frozenset({
        SessionStatus.PLANNING, SessionStatus.FAILED, SessionStatus.CANCELLED, SessionStatus.INTERRUPTED
    }),
    SessionStatus.PLANNING: frozenset({
        SessionStatus.EXECUTING, SessionStatus.FAILED, SessionStatus.CANCELLED, SessionStatus.INTERRUPTED
    }),
    SessionStatus.EXECUTING: frozenset({
        SessionStatus.PAUSED, SessionStatus.INTERRUPTED, SessionStatus.COMPLETED,
        SessionStatus.FAILED, SessionStatus.CANCELLED
    }),
    SessionStatus.PAUSED: frozenset({
        SessionStatus.EXECUTING, SessionStatus.CANCELLED, SessionStatus.FAILED
    }),
    SessionStatus.INTERRUPTED: frozenset({
        SessionStatus.EXECUTING, SessionStatus.CANCELLED, SessionStatus.FAILED
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class PhaseType(str, Enum):
    STABILIZATION = "stabilization"
    ANALYSIS = "analysis"
    IMPLEMENTATION = "implementation"
    VALIDATION = "validation"
    MONITORING = "monitoring"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class TaskType(str, Enum):
    ANALYSIS = "analysis"
    REPAIR = "repair"
    BUILD = "build"
    TEST = "test"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class ExecutionStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HYBRID = "hybrid"


class ExecutionMode(str, Enum):
    INTERACTIVE = "interactive"
    AUTOMATED = "automated"
    BATCH = "batch"


def _now() -> datetime:
    return datetime.now(UTC)


class RecoveryTask(BaseModel):
    task_id: str
    task_name: str
    task_description: str = ""
    task_type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    estimated_duration: int = 60
    target_modules: List[str] = Field(default_factory=list)
    command: Optional[List[str]] = None
    depends_on: List[str] = Field(default_factory=list)
    output: Optional[str] = None
    error_output: Optional[str] = None
    retryable: bool = True
    max_retries: int = 0
    retry_count: int = 0
    retry_delay: float = 1.0  # seconds


class RecoveryPhase(BaseModel):
    phase_id: int
    phase_name: str
    phase_description: str = ""
    phase_type: PhaseType
    status: PhaseStatus = PhaseStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    estimated_duration: int = 0
    tasks: List[RecoveryTask] = Field(default_factory=list)
    depends_on: List[int] = Field(default_factory=list)
    blocked_by: List[int] = Field(default_factory=list)
    health_improvement: int = 0
    errors_resolved: int = 0
    parallel_execution: bool = False
    max_task_concurrency: int = 1
    rollback_capable: bool = True
    validation_required: bool = False

    @property
    def total_tasks(self) -> int:
        return len(self.tasks)

    @property
    def completed_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)

    @property
    def failed_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.status == TaskStatus.FAILED)


class SuccessCriteria(BaseModel):
    minimum_health_score: int = COMPLETION_HEALTH_THRESHOLD
    maximum_errors: int = 0
    maximum_warnings: int = 5
    all_modules_build_successfully: bool = True
    all_tests_pass: bool = True
    minimum_test_coverage: int = 80
    all_dependencies_resolved: bool = True
    no_cyclic_dependencies: bool = True


class RecoveryPlan(BaseModel):
    plan_id: str = Field(default_factory=lambda: f"plan-{uuid4().hex[:12]}")
    plan_version: str = "1.0.0"
    plan_type: str = "comprehensive"
    phases: List[RecoveryPhase] = Field(default_factory=list)
    estimated_duration: int = 0
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL
    max_concurrency: int = 4
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.REPAIR
    target_modules: List[str] = Field(default_factory=list)
    excluded_modules: List[str] = Field(default_factory=list)
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)
    risk_level: str = "medium"
    risk_factors: List[str] = Field(default_factory=list)

    @property
    def total_phases(self) -> int:
        return len(self.phases)

    def get_phase(self, phase_id: int) -> RecoveryPhase:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        raise KeyError(f"Unknown phase: {phase_id}")

    def find_task(self, task_id: str) -> tuple[RecoveryPhase, RecoveryTask]:
        for phase in self.phases:
            for task in phase.tasks:
                if task.task_id == task_id:
                    return phase, task
        raise KeyError(f"Unknown task: {task_id}")


class RecoveryConfiguration(BaseModel):
    execution_mode: ExecutionMode = ExecutionMode.AUTOMATED
    confirmation_required: bool = False
    auto_rollback_on_failure: bool = False
    max_execution_time: int = 14400  # seconds
    create_backups: bool = True
    backup_path: Optional[str] = None
    max_backups: int = 10
    max_cpu_usage: float = 80.0
    max_memory_usage: int = 4096  # MB
    max_concurrent_operations: int = 4
    command_timeout: float = 300.0
    max_retries: int = 0
    retry_delay: float = 1.0
    completion_health_threshold: int = COMPLETION_HEALTH_THRESHOLD


class RecoverySession(BaseModel):
    id: str = Field(default_factory=lambda: f"recovery-{uuid4().hex[:12]}")
    workspace_path: str
    session_type: str = "manual"
    status: SessionStatus = SessionStatus.INITIALIZING
    start_time: datetime = Field(default_factory=_now)
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    recovery_plan: RecoveryPlan = Field(default_factory=RecoveryPlan)
    current_phase: Optional[int] = None
    current_task: Optional[str] = None
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    initial_health_score: int = 0
    current_health_score: int = 0
    target_health_score: int = COMPLETION_HEALTH_THRESHOLD
    health_improvement: int = 0
    total_errors_at_start: int = 0
    errors_resolved: int = 0
    errors_remaining: int = 0
    module_outcomes: Dict[str, str] = Field(default_factory=dict)
    configuration: RecoveryConfiguration = Field(default_factory=RecoveryConfiguration)
    last_modified: datetime = Field(default_factory=_now)
    tags: List[str] = Field(default_factory=list)

    @property
    def overall_progress(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return round(self.completed_tasks / self.total_tasks * 100, 1)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATES


# Session commands, applied through apply_session_command

@dataclass(frozen=True)
class TransitionSession:
    status: SessionStatus


@dataclass(frozen=True)
class StartPhase:
    phase_id: int


@dataclass(frozen=True)
class CompletePhase:
    phase_id: int
    health_improvement: int = 0
    errors_resolved: int = 0


@dataclass(frozen=True)
class FailPhase:
    phase_id: int


@dataclass(frozen=True)
class StartTask:
    task_id: str


@dataclass(frozen=True)
class CompleteTask:
    task_id: str
    output: Optional[str] = None


@dataclass(frozen=True)
class FailTask:
    task_id: str
    error_output: Optional[str] = None


@dataclass(frozen=True)
class RetryTask:
    task_id: str


@dataclass(frozen=True)
class SkipTask:
    task_id: str


@dataclass(frozen=True)
class RecordHealth:
    initial_health_score: Optional[int] = None
    current_health_score: Optional[int] = None
    errors_at_start: Optional[int] = None
    errors_remaining: Optional[int] = None


@dataclass(frozen=True)
class CancelTask:
    task_id: str


@dataclass(frozen=True)
class RecordModuleResult:
    module_id: str
    outcome: str


def _ensure_task_transition(task: RecoveryTask, allowed_from: Sequence[TaskStatus], target: TaskStatus) -> None:
    if task.status not in allowed_from:
        raise InvalidTransitionError(
            f"Task {task.task_id} cannot move from {task.status.value} to {target.value}"
        )


def _finish(item, status) -> None:
    item.status = status
    item.end_time = _now()
    if item.start_time is not None:
        item.duration = (item.end_time - item.start_time).total_seconds()


def _on_transition(session: RecoverySession, command: TransitionSession) -> None:
    allowed = VALID_SESSION_TRANSITIONS[session.status]
    if command.status not in allowed:
        raise InvalidTransitionError(
            f"Session {session.id} cannot move from {session.status.value} to {command.status.value}"
        )
    session.status = command.status
    if command.status in TERMINAL_SESSION_STATES:
        session.end_time = _now()
        session.duration = (session.end_time - session.start_time).total_seconds()


def _on_start_phase(session: RecoverySession, command: StartPhase) -> None:
    plan = session.recovery_plan
    phase = plan.get_phase(command.phase_id)
    if phase.status not in (PhaseStatus.PENDING, PhaseStatus.READY):
        raise InvalidTransitionError(
            f"Phase {phase.phase_id} cannot start from {phase.status.value}"
        )
    unmet = [
        dep for dep in phase.depends_on + phase.blocked_by
        if plan.get_phase(dep).status != PhaseStatus.COMPLETED
    ]
    if unmet:
        raise DependencyNotSatisfiedError(
            f"Phase {phase.phase_id} depends on unfinished phases: {unmet}"
        )
    phase.status = PhaseStatus.EXECUTING
    phase.start_time = _now()
    session.current_phase = phase.phase_id


def _on_complete_phase(session: RecoverySession, command: CompletePhase) -> None:
    phase = session.recovery_plan.get_phase(command.phase_id)
    if phase.status != PhaseStatus.EXECUTING:
        raise InvalidTransitionError(f"Phase {phase.phase_id} is not executing")
    phase.health_improvement += command.health_improvement
    phase.errors_resolved += command.errors_resolved
    _finish(phase, PhaseStatus.COMPLETED)


def _on_fail_phase(session: RecoverySession, command: FailPhase) -> None:
    phase = session.recovery_plan.get_phase(command.phase_id)
    if phase.status != PhaseStatus.EXECUTING:
        raise InvalidTransitionError(f"Phase {phase.phase_id} is not executing")
    _finish(phase, PhaseStatus.FAILED)


def _on_start_task(session: RecoverySession, command: StartTask) -> None:
    phase, task = session.recovery_plan.find_task(command.task_id)
    if phase.status != PhaseStatus.EXECUTING:
        raise InvalidTransitionError(
            f"Task {task.task_id} cannot start while phase {phase.phase_id} is {phase.status.value}"
        )
    _ensure_task_transition(
        task, (TaskStatus.PENDING, TaskStatus.READY, TaskStatus.RETRYING), TaskStatus.EXECUTING
    )
    unmet = [
        dep for dep in task.depends_on
        if session.recovery_plan.find_task(dep)[1].status != TaskStatus.COMPLETED
    ]
    if unmet:
        raise DependencyNotSatisfiedError(
            f"Task {task.task_id} depends on unfinished tasks: {unmet}"
        )
    task.status = TaskStatus.EXECUTING
    task.start_time = _now()
    session.current_task = task.task_id


def _on_complete_task(session: RecoverySession, command: CompleteTask) -> None:
    _, task = session.recovery_plan.find_task(command.task_id)
    _ensure_task_transition(task, (TaskStatus.EXECUTING,), TaskStatus.COMPLETED)
    task.output = command.output
    _finish(task, TaskStatus.COMPLETED)
    session.completed_tasks += 1


def _on_fail_task(session: RecoverySession, command: FailTask) -> None:
    _, task = session.recovery_plan.find_task(command.task_id)
    _ensure_task_transition(task, (TaskStatus.EXECUTING,), TaskStatus.FAILED)
    task.error_output = command.error_output
    _finish(task, TaskStatus.FAILED)
    session.failed_tasks += 1


def _on_retry_task(session: RecoverySession, command: RetryTask) -> None:
    _, task = session.recovery_plan.find_task(command.task_id)
    _ensure_task_transition(task, (TaskStatus.FAILED,), TaskStatus.RETRYING)
    if not task.retryable or task.retry_count >= task.max_retries:
        raise InvalidTransitionError(f"Task {task.task_id} has no retries left")
    task.retry_count += 1
    task.status = TaskStatus.RETRYING
    session.failed_tasks = max(0, session.failed_tasks - 1)


def _on_skip_task(session: RecoverySession, command: SkipTask) -> None:
    _, task = session.recovery_plan.find_task(command.task_id)
    _ensure_task_transition(task, (TaskStatus.PENDING, TaskStatus.READY), TaskStatus.SKIPPED)
    _finish(task, TaskStatus.SKIPPED)


def _on_record_health(session: RecoverySession, command: RecordHealth) -> None:
    if command.initial_health_score is not None:
        session.initial_health_score = command.initial_health_score
        session.current_health_score = command.initial_health_score
    if command.current_health_score is not None:
        session.current_health_score = command.current_health_score
    if command.errors_at_start is not None:
        session.total_errors_at_start = command.errors_at_start
        session.errors_remaining = command.errors_at_start
    if command.errors_remaining is not None:
        session.errors_remaining = command.errors_remaining
    session.health_improvement = session.current_health_score - session.initial_health_score
    session.errors_resolved = session.total_errors_at_start - session.errors_remaining


def _on_cancel_task(session: RecoverySession, command: CancelTask) -> None:
    _, task = session.recovery_plan.find_task(command.task_id)
    _ensure_task_transition(
        task, (TaskStatus.PENDING, TaskStatus.READY, TaskStatus.RETRYING), TaskStatus.CANCELLED
    )
    _finish(task, TaskStatus.CANCELLED)


def _on_record_module_result(session: RecoverySession, command: RecordModuleResult) -> None:
    session.module_outcomes[command.module_id] = command.outcome


SESSION_COMMAND_HANDLERS: Dict[type, Callable] = {
    TransitionSession: _on_transition,
    StartPhase: _on_start_phase,
    CompletePhase: _on_complete_phase,
    FailPhase: _on_fail_phase,
    StartTask: _on_start_task,
    CompleteTask: _on_complete_task,
    FailTask: _on_fail_task,
    RetryTask: _on_retry_task,
    SkipTask: _on_skip_task,
    CancelTask: _on_cancel_task,
    RecordHealth: _on_record_health,
    RecordModuleResult: _on_record_module_result,
}


def apply_session_command(session: RecoverySession, command) -> RecoverySession:
    """
    Apply a command to a session and return the updated copy.

    Raises:
        InvalidTransitionError: if the command is not valid in the current state
        DependencyNotSatisfiedError: if a phase or task is started early
    """
    handler = SESSION_COMMAND_HANDLERS.get(type(command))
    if handler is None:
        raise TypeError(f"Unsupported session command: {type(command).__name__}")
    if session.is_terminal and not isinstance(command, RecordModuleResult):
        raise InvalidTransitionError(f"Session {session.id} is {session.status.value}")
    updated = session.model_copy(deep=True)
    handler(updated, command)
    updated.last_modified = _now()
    return updated


def transition_session(session: RecoverySession, status: SessionStatus) -> RecoverySession:
    return apply_session_command(session, TransitionSession(status))


PLANNING_TASK_ID = "plan-recovery-order"
VALIDATION_TASK_ID = "validate-results"


def recovery_task_id(module_id: str) -> str:
    return f"recover-{module_id}"


def schedule_batches(module_ids: Sequence[str], execution_strategy: ExecutionStrategy, max_concurrency: int) -> List[List[str]]:
    """Split modules into the batches the orchestrator runs; sequential runs use one batch."""
    module_ids = list(module_ids)
    if execution_strategy == ExecutionStrategy.SEQUENTIAL or not module_ids:
        return [module_ids]
    size = max(1, max_concurrency)
    return [module_ids[i:i + size] for i in range(0, len(module_ids), size)]


def build_recovery_plan(
    module_ids: Sequence[str],
    strategy: RecoveryStrategy = RecoveryStrategy.REPAIR,
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL,
    max_concurrency: int = 4,
    max_retries: int = 0,
    retry_delay: float = 1.0,
) -> RecoveryPlan:
    """
    Build the plan for a multi-module recovery.

    Phase 1 plans the module order, one implementation phase per
    scheduling batch recovers modules, and a final phase validates the
    aggregate result. Each phase depends on the one before it. A
    sequential plan holds a single implementation phase that runs one task
    at a time.
    """
    plan = RecoveryPlan(
        execution_strategy=execution_strategy,
        max_concurrency=max_concurrency,
        recovery_strategy=strategy,
        target_modules=list(module_ids),
    )
    parallel = execution_strategy != ExecutionStrategy.SEQUENTIAL

    plan.phases.append(RecoveryPhase(
        phase_id=1,
        phase_name="Planning",
        phase_description="Order modules by dependency layer and schedule batches",
        phase_type=PhaseType.ANALYSIS,
        tasks=[RecoveryTask(
            task_id=PLANNING_TASK_ID,
            task_name="Plan recovery order",
            task_type=TaskType.ANALYSIS,
            target_modules=list(module_ids),
            estimated_duration=5,
            retryable=False,
        )],
        estimated_duration=5,
        rollback_capable=False,
    ))

    for batch in schedule_batches(module_ids, execution_strategy, max_concurrency):
        phase_id = len(plan.phases) + 1
        tasks = []
        for module_id in batch:
            tasks.append(RecoveryTask(
                task_id=recovery_task_id(module_id),
                task_name=f"Recover {module_id}",
                task_description=f"Run {strategy.value} recovery against {module_id}",
                task_type=TaskType.REPAIR,
                target_modules=[module_id],
                max_retries=max_retries,
                retry_delay=retry_delay,
            ))
        plan.phases.append(RecoveryPhase(
            phase_id=phase_id,
            phase_name=f"Recovery batch {phase_id - 1}" if parallel else "Recovery",
            phase_description=f"Recover {len(batch)} modules",
            phase_type=PhaseType.IMPLEMENTATION,
            tasks=tasks,
            depends_on=[phase_id - 1],
            estimated_duration=sum(t.estimated_duration for t in tasks) if not parallel else 60,
            parallel_execution=parallel,
            max_task_concurrency=max(1, len(batch)) if parallel else 1,
        ))

    final_id = len(plan.phases) + 1
    plan.phases.append(RecoveryPhase(
        phase_id=final_id,
        phase_name="Validation",
        phase_description="Aggregate module results and validate recovery",
        phase_type=PhaseType.VALIDATION,
        tasks=[RecoveryTask(
            task_id=VALIDATION_TASK_ID,
            task_name="Validate recovery results",
            task_type=TaskType.VALIDATION,
            target_modules=list(module_ids),
            estimated_duration=5,
            retryable=False,
        )],
        depends_on=[final_id - 1],
        estimated_duration=5,
        rollback_capable=False,
        validation_required=True,
    ))

    plan.estimated_duration = sum(p.estimated_duration for p in plan.phases)
    return plan


def create_recovery_session(
    workspace_path: str,
    module_ids: Sequence[str],
    strategy: RecoveryStrategy = RecoveryStrategy.REPAIR,
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL,
    configuration: Optional[RecoveryConfiguration] = None,
    session_type: str = "manual",
) -> RecoverySession:
    configuration = configuration or RecoveryConfiguration()
    plan = build_recovery_plan(
        module_ids,
        strategy=strategy,
        execution_strategy=execution_strategy,
        max_concurrency=configuration.max_concurrent_operations,
        max_retries=configuration.max_retries,
        retry_delay=configuration.retry_delay,
    )
    return RecoverySession(
        workspace_path=str(workspace_path),
        session_type=session_type,
        recovery_plan=plan,
        total_tasks=sum(p.total_tasks for p in plan.phases),
        target_health_score=configuration.completion_health_threshold,
        configuration=configuration,
    )
