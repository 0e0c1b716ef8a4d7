"""
Workspace-level health aggregation.

Rolls individual module states up into a WorkspaceHealth view: the
layer-weighted overall score, status counts, per-layer averages, the
workspace-internal dependency graph, a risk assessment and recovery
readiness.
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, Field

from .health import (
    BuildStatus,
    DependencyHealth,
    ModuleState,
    ModuleStatus,
    ModuleType,
    RecoveryPriority,
    TestStatus,
)


class WorkspaceHealthStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    CRITICAL = "critical"
    FAILED = "failed"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReadinessStatus(str, Enum):
    READY = "ready"
    PARTIAL = "partial"
    NOT_READY = "not_ready"


class HealthTrendDirection(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


LAYER_WEIGHTS: Dict[ModuleType, int] = {
    ModuleType.LAYER0: 3,
    ModuleType.LAYER1: 2,
    ModuleType.LAYER2: 1,
}

LAYER_NAMES: Dict[ModuleType, str] = {
    ModuleType.LAYER0: "Core",
    ModuleType.LAYER1: "Foundation",
    ModuleType.LAYER2: "Business",
}

MAX_HISTORY_SNAPSHOTS = 100


class HealthDistribution(BaseModel):
    excellent: int = 0
    good: int = 0
    fair: int = 0
    poor: int = 0
    critical: int = 0
    failed: int = 0


class ModuleSummary(BaseModel):
    total_modules: int = 0
    healthy_modules: int = 0
    warning_modules: int = 0
    critical_modules: int = 0
    failed_modules: int = 0
    recovering_modules: int = 0
    unknown_modules: int = 0
    health_distribution: HealthDistribution = Field(default_factory=HealthDistribution)
    high_priority_modules: List[str] = Field(default_factory=list)
    medium_priority_modules: List[str] = Field(default_factory=list)
    low_priority_modules: List[str] = Field(default_factory=list)
    estimated_recovery_time: int = 0
    parallel_recovery_possible: bool = True
    parallel_recovery_time: int = 0


class LayerHealthMetrics(BaseModel):
    layer_name: str
    modules: List[str] = Field(default_factory=list)
    average_health_score: int = 0
    health_status: WorkspaceHealthStatus = WorkspaceHealthStatus.FAILED
    critical_issues: int = 0
    blocked_modules: List[str] = Field(default_factory=list)
    blocking_modules: List[str] = Field(default_factory=list)
    layer_stable: bool = True


class LayerDependencyIssue(BaseModel):
    from_layer: ModuleType
    to_layer: ModuleType
    issue_type: str
    affected_modules: List[str]
    severity: RiskLevel
    description: str


class LayerHealth(BaseModel):
    layer0: LayerHealthMetrics
    layer1: LayerHealthMetrics
    layer2: LayerHealthMetrics
    layer_dependency_issues: List[LayerDependencyIssue] = Field(default_factory=list)


class DependencyNode(BaseModel):
    node_id: str
    layer: ModuleType
    status: ModuleStatus
    dependency_count: int = 0
    dependent_count: int = 0


class DependencyEdge(BaseModel):
    from_node: str
    to_node: str
    satisfied: bool = True


class DependencyGraph(BaseModel):
    nodes: List[DependencyNode] = Field(default_factory=list)
    edges: List[DependencyEdge] = Field(default_factory=list)
    circular_dependencies: List[List[str]] = Field(default_factory=list)
    orphaned_nodes: List[str] = Field(default_factory=list)
    dependency_depth: Dict[str, int] = Field(default_factory=dict)
    critical_path: List[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    overall_risk_level: RiskLevel = RiskLevel.LOW
    risk_score: int = 0
    risk_factors: List[str] = Field(default_factory=list)
    immediate_actions: List[str] = Field(default_factory=list)


class RecoveryReadiness(BaseModel):
    recovery_readiness_score: int = 0
    readiness_status: ReadinessStatus = ReadinessStatus.NOT_READY
    backups_available: bool = False
    dependencies_mapped: bool = False
    estimated_recovery_time: int = 0
    parallel_recovery_possible: bool = True
    recovery_blockers: List[str] = Field(default_factory=list)


class HealthSnapshot(BaseModel):
    timestamp: datetime
    overall_health_score: int
    health_status: WorkspaceHealthStatus
    module_scores: Dict[str, int] = Field(default_factory=dict)


class HealthTrend(BaseModel):
    overall_trend: HealthTrendDirection = HealthTrendDirection.STABLE
    health_score_change: int = 0
    intervention_recommended: bool = False


class WorkspaceHealth(BaseModel):
    workspace_id: str
    workspace_path: str
    workspace_name: str
    overall_health_score: int
    health_status: WorkspaceHealthStatus
    last_health_check: datetime
    module_summary: ModuleSummary
    module_states: Dict[str, ModuleState] = Field(default_factory=dict)
    layer_health: LayerHealth
    dependency_graph: DependencyGraph
    risk_assessment: RiskAssessment
    recovery_readiness: RecoveryReadiness
    health_trend: HealthTrend = Field(default_factory=HealthTrend)
    historical_data: List[HealthSnapshot] = Field(default_factory=list)


def calculate_overall_health_score(module_states: Mapping[str, ModuleState]) -> int:
    """Layer-weighted mean of module scores; core modules weigh the most."""
    if not module_states:
        return 0

    total_score = 0
    total_weight = 0
    for state in module_states.values():
        weight = LAYER_WEIGHTS.get(state.module_type, 1)
        total_score += state.health_score * weight
        total_weight += weight

    if total_weight == 0:
        return 0
    return int(total_score / total_weight + 0.5)


def get_workspace_health_status(health_score: int) -> WorkspaceHealthStatus:
    if health_score >= 90:
        return WorkspaceHealthStatus.EXCELLENT
    if health_score >= 70:
        return WorkspaceHealthStatus.GOOD
    if health_score >= 50:
        return WorkspaceHealthStatus.FAIR
    if health_score >= 30:
        return WorkspaceHealthStatus.POOR
    if health_score >= 10:
        return WorkspaceHealthStatus.CRITICAL
    return WorkspaceHealthStatus.FAILED


def calculate_module_summary(module_states: Mapping[str, ModuleState]) -> ModuleSummary:
    summary = ModuleSummary(total_modules=len(module_states))
    distribution = summary.health_distribution

    for module_id, state in module_states.items():
        if state.recovery_state.in_progress:
            summary.recovering_modules += 1
        elif state.status == ModuleStatus.HEALTHY:
            summary.healthy_modules += 1
        elif state.status == ModuleStatus.WARNING:
            summary.warning_modules += 1
        elif state.status == ModuleStatus.CRITICAL:
            summary.critical_modules += 1
        elif state.status == ModuleStatus.FAILED:
            summary.failed_modules += 1
        else:
            summary.unknown_modules += 1

        score = state.health_score
        if score >= 90:
            distribution.excellent += 1
        elif score >= 70:
            distribution.good += 1
        elif score >= 50:
            distribution.fair += 1
        elif score >= 30:
            distribution.poor += 1
        elif score >= 10:
            distribution.critical += 1
        else:
            distribution.failed += 1

        priority = state.recovery_state.recovery_priority
        if priority in (RecoveryPriority.CRITICAL, RecoveryPriority.HIGH):
            summary.high_priority_modules.append(module_id)
        elif priority == RecoveryPriority.MEDIUM:
            summary.medium_priority_modules.append(module_id)
        else:
            summary.low_priority_modules.append(module_id)

        summary.estimated_recovery_time += state.recovery_state.estimated_recovery_time

    summary.parallel_recovery_time = max(
        (s.recovery_state.estimated_recovery_time for s in module_states.values()), default=0
    )
    summary.parallel_recovery_possible = not any(
        s.circular_dependencies for s in module_states.values()
    )
    return summary


def _internal_dependencies(state: ModuleState, module_ids: Set[str]) -> List[str]:
    """Workspace modules this module declares a dependency on."""
    found = []
    for dependency in state.dependencies:
        name = dependency.dependency_name.rsplit("/", 1)[-1]
        if dependency.source == "workspace" or name in module_ids:
            if name in module_ids and name != state.module_id and name not in found:
                found.append(name)
    return found


def analyze_dependency_graph(module_states: Mapping[str, ModuleState]) -> DependencyGraph:
    module_ids = set(module_states)
    adjacency = {mid: _internal_dependencies(state, module_ids) for mid, state in module_states.items()}

    graph = DependencyGraph()
    dependents: Dict[str, int] = {mid: 0 for mid in module_ids}
    for mid, targets in adjacency.items():
        for target in targets:
            dependents[target] += 1
            graph.edges.append(DependencyEdge(
                from_node=mid,
                to_node=target,
                satisfied=module_states[target].status in (ModuleStatus.HEALTHY, ModuleStatus.WARNING),
            ))

    for mid, state in module_states.items():
        graph.nodes.append(DependencyNode(
            node_id=mid,
            layer=state.module_type,
            status=state.status,
            dependency_count=len(adjacency[mid]),
            dependent_count=dependents[mid],
        ))
        if not adjacency[mid] and not dependents[mid] and len(module_ids) > 1:
            graph.orphaned_nodes.append(mid)

    graph.circular_dependencies = _find_cycles(adjacency)

    in_cycle = {mid for cycle in graph.circular_dependencies for mid in cycle}
    depth_cache: Dict[str, int] = {}
    path_cache: Dict[str, List[str]] = {}

    def depth(mid: str) -> int:
        if mid in depth_cache:
            return depth_cache[mid]
        best, best_path = 0, [mid]
        for target in adjacency[mid]:
            if target in in_cycle:
                continue
            d = depth(target) + 1
            if d > best:
                best, best_path = d, [mid] + path_cache[target]
        depth_cache[mid] = best
        path_cache[mid] = best_path
        return best

    for mid in sorted(module_ids):
        if mid not in in_cycle:
            graph.dependency_depth[mid] = depth(mid)
    if graph.dependency_depth:
        deepest = max(sorted(graph.dependency_depth), key=lambda m: graph.dependency_depth[m])
        graph.critical_path = path_cache[deepest]
    return graph


def _find_cycles(adjacency: Mapping[str, List[str]]) -> List[List[str]]:
    cycles: List[List[str]] = []
    seen: Set[frozenset] = set()
    visiting: List[str] = []
    done: Set[str] = set()

    def visit(node: str) -> None:
        visiting.append(node)
        for target in adjacency.get(node, []):
            if target in visiting:
                cycle = visiting[visiting.index(target):]
                key = frozenset(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(list(cycle))
            elif target not in done:
                visit(target)
        visiting.pop()
        done.add(node)

    for node in sorted(adjacency):
        if node not in done:
            visit(node)
    return cycles


def calculate_layer_health(
    module_states: Mapping[str, ModuleState],
    graph: Optional[DependencyGraph] = None,
) -> LayerHealth:
    graph = graph or analyze_dependency_graph(module_states)
    layers: Dict[ModuleType, LayerHealthMetrics] = {
        layer: LayerHealthMetrics(layer_name=name) for layer, name in LAYER_NAMES.items()
    }

    for module_id, state in module_states.items():
        metrics = layers[state.module_type]
        metrics.modules.append(module_id)
        metrics.critical_issues += len(state.critical_errors)

    for layer, metrics in layers.items():
        scores = [module_states[m].health_score for m in metrics.modules]
        metrics.average_health_score = int(sum(scores) / len(scores) + 0.5) if scores else 0
        metrics.health_status = get_workspace_health_status(metrics.average_health_score)
        metrics.layer_stable = metrics.critical_issues == 0 and all(
            module_states[m].build_status != BuildStatus.FAILED for m in metrics.modules
        )

    issues: List[LayerDependencyIssue] = []
    layer_rank = {ModuleType.LAYER0: 0, ModuleType.LAYER1: 1, ModuleType.LAYER2: 2}
    for edge in graph.edges:
        source = module_states[edge.from_node]
        target = module_states[edge.to_node]
        if not edge.satisfied:
            layers[source.module_type].blocked_modules.append(edge.from_node)
            layers[target.module_type].blocking_modules.append(edge.to_node)
        if layer_rank[target.module_type] > layer_rank[source.module_type]:
            issues.append(LayerDependencyIssue(
                from_layer=source.module_type,
                to_layer=target.module_type,
                issue_type="upward_dependency",
                affected_modules=[edge.from_node, edge.to_node],
                severity=RiskLevel.HIGH,
                description=f"{edge.from_node} depends on higher-layer module {edge.to_node}",
            ))

    for metrics in layers.values():
        metrics.blocked_modules = sorted(set(metrics.blocked_modules))
        metrics.blocking_modules = sorted(set(metrics.blocking_modules))

    return LayerHealth(
        layer0=layers[ModuleType.LAYER0],
        layer1=layers[ModuleType.LAYER1],
        layer2=layers[ModuleType.LAYER2],
        layer_dependency_issues=issues,
    )


def assess_risks(module_states: Mapping[str, ModuleState], graph: DependencyGraph) -> RiskAssessment:
    assessment = RiskAssessment()
    score = 0

    failed_core = [
        m for m, s in module_states.items()
        if s.module_type == ModuleType.LAYER0 and s.status in (ModuleStatus.FAILED, ModuleStatus.UNKNOWN)
    ]
    if failed_core:
        score += 40
        assessment.risk_factors.append(f"Core modules non-functional: {', '.join(sorted(failed_core))}")
        assessment.immediate_actions.append("Recover core modules before dependent layers")

    critical_total = sum(len(s.critical_errors) for s in module_states.values())
    if critical_total:
        score += min(critical_total * 5, 30)
        assessment.risk_factors.append(f"{critical_total} unresolved critical errors")

    if graph.circular_dependencies:
        score += 20
        assessment.risk_factors.append(f"{len(graph.circular_dependencies)} circular dependency chains")
        assessment.immediate_actions.append("Break circular dependencies between modules")

    missing = [m for m, s in module_states.items() if s.dependency_health == DependencyHealth.MISSING]
    if missing:
        score += 10
        assessment.risk_factors.append(f"Dependencies not installed: {', '.join(sorted(missing))}")

    failing_tests = [m for m, s in module_states.items() if s.test_status == TestStatus.FAILING]
    if failing_tests:
        score += 5
        assessment.risk_factors.append(f"Failing tests: {', '.join(sorted(failing_tests))}")

    assessment.risk_score = min(score, 100)
    if assessment.risk_score >= 70:
        assessment.overall_risk_level = RiskLevel.CRITICAL
    elif assessment.risk_score >= 40:
        assessment.overall_risk_level = RiskLevel.HIGH
    elif assessment.risk_score >= 15:
        assessment.overall_risk_level = RiskLevel.MEDIUM
    else:
        assessment.overall_risk_level = RiskLevel.LOW
    return assessment


def assess_recovery_readiness(
    module_states: Mapping[str, ModuleState],
    graph: DependencyGraph,
    backups_available: bool = False,
) -> RecoveryReadiness:
    readiness = RecoveryReadiness(
        backups_available=backups_available,
        dependencies_mapped=True,
        estimated_recovery_time=sum(
            s.recovery_state.estimated_recovery_time for s in module_states.values()
        ),
        parallel_recovery_possible=not graph.circular_dependencies,
    )

    for cycle in graph.circular_dependencies:
        readiness.recovery_blockers.append(f"Circular dependency: {' -> '.join(cycle + cycle[:1])}")
    for module_id, state in module_states.items():
        if state.recovery_state.in_progress:
            readiness.recovery_blockers.append(f"Recovery already in progress for {module_id}")

    score = 40
    if backups_available:
        score += 30
    if not readiness.recovery_blockers:
        score += 30
    readiness.recovery_readiness_score = score
    if score >= 70 and not readiness.recovery_blockers:
        readiness.readiness_status = ReadinessStatus.READY
    elif score >= 40:
        readiness.readiness_status = ReadinessStatus.PARTIAL
    return readiness


def create_workspace_health(
    workspace_path: Path,
    module_states: Mapping[str, ModuleState],
    backups_available: bool = False,
    history: Optional[List[HealthSnapshot]] = None,
) -> WorkspaceHealth:
    workspace_path = Path(workspace_path)
    overall = calculate_overall_health_score(module_states)
    graph = analyze_dependency_graph(module_states)

    health = WorkspaceHealth(
        workspace_id=f"workspace-{uuid4().hex[:12]}",
        workspace_path=str(workspace_path),
        workspace_name=workspace_path.name or "unknown",
        overall_health_score=overall,
        health_status=get_workspace_health_status(overall),
        last_health_check=datetime.now(UTC),
        module_summary=calculate_module_summary(module_states),
        module_states=dict(module_states),
        layer_health=calculate_layer_health(module_states, graph),
        dependency_graph=graph,
        risk_assessment=assess_risks(module_states, graph),
        recovery_readiness=assess_recovery_readiness(module_states, graph, backups_available),
        historical_data=list(history or []),
    )
    health.health_trend = calculate_health_trend(health)
    return health


def record_health_snapshot(health: WorkspaceHealth) -> HealthSnapshot:
    """Append a snapshot of the current scores to the workspace history."""
    snapshot = HealthSnapshot(
        timestamp=datetime.now(UTC),
        overall_health_score=health.overall_health_score,
        health_status=health.health_status,
        module_scores={m: s.health_score for m, s in health.module_states.items()},
    )
    health.historical_data.append(snapshot)
    del health.historical_data[:-MAX_HISTORY_SNAPSHOTS]
    health.health_trend = calculate_health_trend(health)
    return snapshot


def calculate_health_trend(health: WorkspaceHealth) -> HealthTrend:
    trend = HealthTrend(intervention_recommended=health.overall_health_score < 70)
    if not health.historical_data:
        return trend

    baseline = health.historical_data[0].overall_health_score
    change = health.overall_health_score - baseline
    trend.health_score_change = change
    if change > 2:
        trend.overall_trend = HealthTrendDirection.IMPROVING
    elif change < -2:
        trend.overall_trend = HealthTrendDirection.DEGRADING
    return trend
