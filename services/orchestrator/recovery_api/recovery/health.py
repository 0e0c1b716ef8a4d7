"""
Health model for workspace modules.

This module defines the per-module state captured by an assessment, the
additive-penalty scoring function that turns its raw signals into a 0-100
health score, and the reducer used to apply state changes after recovery
phases.

The score and status are computed fields: they are always derived from the
signals and cannot be assigned.
"""

import math
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ModuleType(str, Enum):
    """Dependency layer of a module."""
    LAYER0 = "layer0"  # core
    LAYER1 = "layer1"  # foundation
    LAYER2 = "layer2"  # business


class ModuleCategory(str, Enum):
    """Functional category of a module."""
    CORE = "core"
    FOUNDATION = "foundation"
    BUSINESS = "business"
    INTEGRATION = "integration"
    TESTING = "testing"


class ModuleStatus(str, Enum):
    """Discrete health status of a module."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    FAILED = "failed"
    RECOVERING = "recovering"
    UNKNOWN = "unknown"


class BuildStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BUILDING = "building"
    NOT_STARTED = "not_started"
    CANCELLED = "cancelled"


class TestStatus(str, Enum):
    PASSING = "passing"
    FAILING = "failing"
    RUNNING = "running"
    NOT_CONFIGURED = "not_configured"
    NOT_STARTED = "not_started"
    CANCELLED = "cancelled"


class DependencyHealth(str, Enum):
    RESOLVED = "resolved"
    MISSING = "missing"
    CONFLICTED = "conflicted"
    CIRCULAR = "circular"
    OUTDATED = "outdated"


class RecoveryStrategy(str, Enum):
    """Remediation approach for a module."""
    REPAIR = "repair"
    REBUILD = "rebuild"
    RESET = "reset"
    REPLACE = "replace"
    SKIP = "skip"
    MANUAL = "manual"


class RecoveryPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    CRITICAL = "critical"


CATEGORY_LAYERS: Dict[ModuleCategory, ModuleType] = {
    ModuleCategory.CORE: ModuleType.LAYER0,
    ModuleCategory.FOUNDATION: ModuleType.LAYER1,
    ModuleCategory.BUSINESS: ModuleType.LAYER2,
    ModuleCategory.INTEGRATION: ModuleType.LAYER2,
    ModuleCategory.TESTING: ModuleType.LAYER2,
}

# Scoring constants
BUILD_PENALTIES = {
    BuildStatus.FAILED: 40,
    BuildStatus.NOT_STARTED: 20,
    BuildStatus.BUILDING: 10,
}
TEST_PENALTIES = {
    TestStatus.FAILING: 30,
    TestStatus.NOT_CONFIGURED: 15,
    TestStatus.RUNNING: 5,
}
DEPENDENCY_PENALTIES = {
    DependencyHealth.MISSING: 25,
    DependencyHealth.CONFLICTED: 20,
    DependencyHealth.CIRCULAR: 35,
    DependencyHealth.OUTDATED: 10,
}
ERROR_PENALTY, ERROR_PENALTY_CAP = 2, 20
WARNING_PENALTY, WARNING_PENALTY_CAP = 1, 10
CRITICAL_ERROR_PENALTY, CRITICAL_ERROR_PENALTY_CAP = 10, 30
INVALID_CONFIGURATION_PENALTY = 15
INVALID_MANIFEST_PENALTY = 10
INVALID_BUILD_CONFIG_PENALTY = 10
COVERAGE_TARGET = 80.0
COVERAGE_PENALTY_FACTOR = 0.5

# Health status thresholds
HEALTHY_THRESHOLD = 90
WARNING_THRESHOLD = 70
CRITICAL_THRESHOLD = 40

# A module at or above this score no longer needs recovery
RECOVERY_NEEDED_BELOW = 85


def _now() -> datetime:
    return datetime.now(UTC)


class BuildError(BaseModel):
    error_id: str
    error_type: str = "compilation"
    severity: str = "error"
    message: str
    file: str = ""
    line: Optional[int] = None
    resolved: bool = False
    timestamp: datetime = Field(default_factory=_now)


class BuildWarning(BaseModel):
    warning_id: str
    warning_type: str = "configuration"
    message: str
    file: str = ""
    acknowledged: bool = False
    timestamp: datetime = Field(default_factory=_now)


class CriticalError(BaseModel):
    error_id: str
    error_type: str
    message: str
    impact: str = "blocks_functionality"
    severity: str = "critical"
    first_occurred: datetime = Field(default_factory=_now)
    last_occurred: datetime = Field(default_factory=_now)
    occurrence_count: int = 1
    resolved: bool = False


class NonCriticalError(BaseModel):
    error_id: str
    error_type: str
    message: str
    severity: str = "medium"
    impact: str = "code_quality"
    occurrence_count: int = 1
    acknowledged: bool = False


class ModuleWarning(BaseModel):
    warning_id: str
    warning_type: str = "best_practice"
    message: str
    recommendation: str = ""
    file: str = ""
    severity: str = "low"
    auto_fixable: bool = False


class ConfigurationError(BaseModel):
    config_file: str
    error_type: str
    message: str
    field: Optional[str] = None
    auto_fixable: bool = False
    fix_suggestion: Optional[str] = None


class ModuleDependency(BaseModel):
    dependency_name: str
    dependency_type: str = "production"
    required_version: str = "*"
    installed_version: Optional[str] = None
    satisfied: bool = True
    source: str = "npm"


class CoverageMetric(BaseModel):
    total: int = 0
    covered: int = 0
    percentage: float = 0.0


class TestCoverage(BaseModel):
    overall: float = Field(default=100.0, ge=0.0, le=100.0)
    statements: CoverageMetric = Field(default_factory=CoverageMetric)
    branches: CoverageMetric = Field(default_factory=CoverageMetric)
    functions: CoverageMetric = Field(default_factory=CoverageMetric)
    lines: CoverageMetric = Field(default_factory=CoverageMetric)
    uncovered_files: List[str] = Field(default_factory=list)
    coverage_threshold: float = COVERAGE_TARGET

    @computed_field
    @property
    def meets_threshold(self) -> bool:
        return self.overall >= self.coverage_threshold


class CodeQualityMetrics(BaseModel):
    code_quality_score: int = Field(default=100, ge=0, le=100)
    lint_errors: int = 0
    lint_warnings: int = 0
    type_errors: int = 0
    complexity_score: float = 0.0
    maintainability_index: int = Field(default=100, ge=0, le=100)


class RecoveryState(BaseModel):
    recovery_needed: bool = False
    recovery_priority: RecoveryPriority = RecoveryPriority.LOW
    recovery_strategy: RecoveryStrategy = RecoveryStrategy.REPAIR
    estimated_recovery_time: int = 0  # seconds
    recovery_complexity: RecoveryComplexity = RecoveryComplexity.SIMPLE
    blocked_by: List[str] = Field(default_factory=list)
    blocks: List[str] = Field(default_factory=list)
    in_progress: bool = False


class RecoveryAttempt(BaseModel):
    """Immutable audit record of one recovery run."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[float] = None  # seconds
    strategy: RecoveryStrategy
    status: str
    health_before: int
    health_after: Optional[int] = None
    errors_fixed: int = 0
    issues_introduced: int = 0
    rollback_required: bool = False
    notes: Optional[str] = None


class ModuleState(BaseModel):
    """
    Assessed state of a single workspace module.

    Field defaults describe a fully healthy module; `create_module_state`
    builds the not-yet-assessed starting point used by analyzers.
    """

    module_id: str
    module_name: str = ""
    module_type: ModuleType = ModuleType.LAYER2
    module_category: ModuleCategory = ModuleCategory.BUSINESS
    last_assessment: datetime = Field(default_factory=_now)

    build_status: BuildStatus = BuildStatus.SUCCESS
    build_errors: List[BuildError] = Field(default_factory=list)
    build_warnings: List[BuildWarning] = Field(default_factory=list)
    build_artifacts: List[str] = Field(default_factory=list)

    test_status: TestStatus = TestStatus.PASSING
    test_coverage: TestCoverage = Field(default_factory=TestCoverage)

    dependency_health: DependencyHealth = DependencyHealth.RESOLVED
    dependencies: List[ModuleDependency] = Field(default_factory=list)
    dependent_modules: List[str] = Field(default_factory=list)
    circular_dependencies: List[str] = Field(default_factory=list)

    error_count: int = Field(default=0, ge=0)
    warning_count: int = Field(default=0, ge=0)
    critical_errors: List[CriticalError] = Field(default_factory=list)
    non_critical_errors: List[NonCriticalError] = Field(default_factory=list)
    warnings: List[ModuleWarning] = Field(default_factory=list)

    configuration_valid: bool = True
    configuration_errors: List[ConfigurationError] = Field(default_factory=list)
    manifest_valid: bool = True
    build_config_valid: bool = True
    build_tooling_configured: bool = True

    code_quality: CodeQualityMetrics = Field(default_factory=CodeQualityMetrics)

    recovery_state: RecoveryState = Field(default_factory=RecoveryState)
    recovery_history: List[RecoveryAttempt] = Field(default_factory=list)
    last_recovery_attempt: Optional[datetime] = None

    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator('module_id')
    @classmethod
    def validate_module_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Module id cannot be empty")
        return v

    @computed_field
    @property
    def health_score(self) -> int:
        return calculate_health_score(self)

    @computed_field
    @property
    def status(self) -> ModuleStatus:
        return get_module_status(self.health_score)


def module_name_for(module_id: str) -> str:
    """Derive a display name ("cv-processing" -> "Cv Processing")."""
    return " ".join(part.capitalize() for part in module_id.replace("_", "-").split("-") if part)


def create_module_state(module_id: str, category: ModuleCategory) -> ModuleState:
    """Create the pre-assessment state of a module."""
    state = ModuleState(
        module_id=module_id,
        module_name=module_name_for(module_id),
        module_type=CATEGORY_LAYERS[category],
        module_category=category,
        build_status=BuildStatus.NOT_STARTED,
        test_status=TestStatus.NOT_CONFIGURED,
        test_coverage=TestCoverage(overall=0.0),
        configuration_valid=False,
        manifest_valid=False,
        build_config_valid=False,
        build_tooling_configured=False,
        code_quality=CodeQualityMetrics(code_quality_score=0, maintainability_index=0),
    )
    return refresh_recovery_state(state)


def calculate_health_score(state: ModuleState) -> int:
    """
    Calculate the 0-100 health score of a module.

    Starts at 100 and subtracts fixed penalties for build, test and
    dependency status, capped penalties for error, warning and critical
    error counts, flat penalties for invalid configuration, and a
    proportional penalty for coverage below the target.
    """
    score = 100.0

    score -= BUILD_PENALTIES.get(state.build_status, 0)
    score -= TEST_PENALTIES.get(state.test_status, 0)
    score -= DEPENDENCY_PENALTIES.get(state.dependency_health, 0)

    score -= min(state.error_count * ERROR_PENALTY, ERROR_PENALTY_CAP)
    score -= min(state.warning_count * WARNING_PENALTY, WARNING_PENALTY_CAP)
    score -= min(len(state.critical_errors) * CRITICAL_ERROR_PENALTY, CRITICAL_ERROR_PENALTY_CAP)

    if not state.configuration_valid:
        score -= INVALID_CONFIGURATION_PENALTY
    if not state.manifest_valid:
        score -= INVALID_MANIFEST_PENALTY
    if not state.build_config_valid:
        score -= INVALID_BUILD_CONFIG_PENALTY

    score -= max(0.0, (COVERAGE_TARGET - state.test_coverage.overall) * COVERAGE_PENALTY_FACTOR)

    # Half-up rounding so x.5 shortfalls round consistently
    return max(0, min(100, math.floor(score + 0.5)))


def get_module_status(health_score: int) -> ModuleStatus:
    if health_score >= HEALTHY_THRESHOLD:
        return ModuleStatus.HEALTHY
    if health_score >= WARNING_THRESHOLD:
        return ModuleStatus.WARNING
    if health_score >= CRITICAL_THRESHOLD:
        return ModuleStatus.CRITICAL
    if health_score > 0:
        return ModuleStatus.FAILED
    return ModuleStatus.UNKNOWN


def get_recovery_priority(state: ModuleState) -> RecoveryPriority:
    score = state.health_score
    if score < 20:
        return RecoveryPriority.CRITICAL
    if score < 40:
        return RecoveryPriority.HIGH
    if score < 70:
        return RecoveryPriority.MEDIUM
    return RecoveryPriority.LOW


def get_recovery_strategy(state: ModuleState) -> RecoveryStrategy:
    """Select a recovery strategy from the module's signals, most severe first."""
    if state.critical_errors:
        return RecoveryStrategy.REBUILD
    if state.error_count > 10:
        return RecoveryStrategy.REBUILD
    if state.dependency_health != DependencyHealth.RESOLVED:
        return RecoveryStrategy.REPAIR
    if not state.configuration_valid:
        return RecoveryStrategy.REPAIR
    if state.build_status == BuildStatus.FAILED:
        return RecoveryStrategy.REBUILD
    return RecoveryStrategy.REPAIR


def estimate_recovery_time(state: ModuleState) -> int:
    """Rough recovery time estimate in seconds."""
    if state.health_score >= RECOVERY_NEEDED_BELOW:
        return 0
    base = 300 if get_recovery_strategy(state) == RecoveryStrategy.REBUILD else 120
    return base + 30 * len(state.critical_errors) + 10 * state.error_count


def get_recovery_complexity(state: ModuleState) -> RecoveryComplexity:
    if state.critical_errors and state.health_score < 20:
        return RecoveryComplexity.CRITICAL
    if state.critical_errors or state.error_count > 10:
        return RecoveryComplexity.COMPLEX
    if state.health_score < RECOVERY_NEEDED_BELOW:
        return RecoveryComplexity.MODERATE
    return RecoveryComplexity.SIMPLE


def refresh_recovery_state(state: ModuleState) -> ModuleState:
    """Recompute the derived recovery fields in place and return the state."""
    recovery = state.recovery_state
    recovery.recovery_needed = state.health_score < RECOVERY_NEEDED_BELOW
    recovery.recovery_priority = get_recovery_priority(state)
    recovery.recovery_strategy = get_recovery_strategy(state)
    recovery.estimated_recovery_time = estimate_recovery_time(state)
    recovery.recovery_complexity = get_recovery_complexity(state)
    return state


# Module state events, applied through apply_module_event

@dataclass(frozen=True)
class BuildStatusChanged:
    status: BuildStatus


@dataclass(frozen=True)
class TestStatusChanged:
    status: TestStatus


@dataclass(frozen=True)
class DependencyHealthChanged:
    health: DependencyHealth


@dataclass(frozen=True)
class ConfigurationRepaired:
    manifest_created: bool = False
    build_config_created: bool = False
    files: tuple = ()


@dataclass(frozen=True)
class ErrorsResolved:
    count: int


@dataclass(frozen=True)
class RecoveryStarted:
    strategy: RecoveryStrategy


@dataclass(frozen=True)
class RecoveryFinished:
    attempt: RecoveryAttempt


def _on_build_status(state: ModuleState, event: BuildStatusChanged) -> None:
    state.build_status = event.status
    if event.status == BuildStatus.SUCCESS:
        state.build_errors = [e for e in state.build_errors if e.resolved]


def _on_test_status(state: ModuleState, event: TestStatusChanged) -> None:
    state.test_status = event.status


def _on_dependency_health(state: ModuleState, event: DependencyHealthChanged) -> None:
    state.dependency_health = event.health
    if event.health == DependencyHealth.RESOLVED:
        for dependency in state.dependencies:
            dependency.satisfied = True


def _on_configuration_repaired(state: ModuleState, event: ConfigurationRepaired) -> None:
    if event.manifest_created:
        state.manifest_valid = True
    if event.build_config_created:
        state.build_config_valid = True
    repaired = set(event.files)
    state.configuration_errors = [
        e for e in state.configuration_errors if e.config_file not in repaired
    ]
    state.configuration_valid = (
        state.manifest_valid and state.build_config_valid and not state.configuration_errors
    )


def _on_errors_resolved(state: ModuleState, event: ErrorsResolved) -> None:
    remaining = max(0, event.count)
    state.error_count = max(0, state.error_count - remaining)
    dropped = min(remaining, len(state.non_critical_errors))
    state.non_critical_errors = state.non_critical_errors[dropped:]
    remaining -= dropped
    if remaining:
        state.critical_errors = state.critical_errors[remaining:]


def _on_recovery_started(state: ModuleState, event: RecoveryStarted) -> None:
    state.recovery_state.in_progress = True
    state.last_recovery_attempt = _now()


def _on_recovery_finished(state: ModuleState, event: RecoveryFinished) -> None:
    state.recovery_state.in_progress = False
    state.recovery_history.append(event.attempt)
    state.last_recovery_attempt = event.attempt.end_time or _now()


MODULE_EVENT_HANDLERS: Dict[type, Callable] = {
    BuildStatusChanged: _on_build_status,
    TestStatusChanged: _on_test_status,
    DependencyHealthChanged: _on_dependency_health,
    ConfigurationRepaired: _on_configuration_repaired,
    ErrorsResolved: _on_errors_resolved,
    RecoveryStarted: _on_recovery_started,
    RecoveryFinished: _on_recovery_finished,
}


def apply_module_event(state: ModuleState, event) -> ModuleState:
    """Return a copy of `state` with `event` applied and derived fields refreshed."""
    handler = MODULE_EVENT_HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported module event: {type(event).__name__}")
    updated = state.model_copy(deep=True)
    handler(updated, event)
    updated.last_assessment = _now()
    return refresh_recovery_state(updated)
