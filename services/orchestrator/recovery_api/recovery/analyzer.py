"""
Module assessment.

`ModuleAnalyzer` is the contract the recovery engine consumes;
`FileSystemAnalyzer` is the default implementation, which inspects a
module's manifest, build configuration, installed dependencies and source
layout on disk.
"""

import json
import logging
from typing import Iterable, Mapping, Optional, Protocol

from recovery_api.config import Settings
from recovery_api.workspaces.manager import WorkspaceModuleManager
from recovery_api.workspaces.models import (
    BUILD_OUTPUT_DIRECTORY,
    BUILD_TOOL_CONFIGS,
    COVERAGE_SUMMARY_FILE,
    INDEX_FILES,
    WorkspaceModule,
)

from .errors import AssessmentError
from .health import (
    BuildStatus,
    BuildWarning,
    ConfigurationError,
    CoverageMetric,
    CriticalError,
    DependencyHealth,
    ModuleCategory,
    ModuleDependency,
    ModuleState,
    ModuleWarning,
    TestCoverage,
    TestStatus,
    create_module_state,
    refresh_recovery_state,
)
from .workspace_health import HealthSnapshot, WorkspaceHealth, create_workspace_health

logger = logging.getLogger(__name__)

DEPENDENCY_SECTIONS = (
    ("dependencies", "production"),
    ("devDependencies", "development"),
    ("peerDependencies", "peer"),
)

MANIFEST_OBJECT_FIELDS = ("scripts",) + tuple(section for section, _ in DEPENDENCY_SECTIONS)


class ModuleAnalyzer(Protocol):
    """Produces a fully populated ModuleState for a module id."""

    async def assess(self, module_id: str) -> ModuleState:
        ...


class FileSystemAnalyzer:
    """Assesses modules under `<workspace>/<packages>/<module_id>`."""

    def __init__(self, settings: Settings, manager: Optional[WorkspaceModuleManager] = None):
        self.settings = settings
        self.manager = manager or WorkspaceModuleManager(settings=settings)

    async def assess(self, module_id: str) -> ModuleState:
        """
        Assess a module from its files on disk.

        Args:
            module_id: Module directory name under the packages directory

        Returns:
            ModuleState with every health-contributing signal populated

        Raises:
            AssessmentError: if the module's files cannot be read
        """
        module = self.manager.module_for(module_id)
        category = ModuleCategory(self.manager.category_for(module_id))
        state = create_module_state(module_id, category)

        if not module.exists:
            state.critical_errors.append(CriticalError(
                error_id=f"missing-module-{module_id}",
                error_type="dependency_missing",
                message=f"Module directory not found: {module.path}",
            ))
            state.error_count = 1
            logger.warning(f"Module directory not found: {module.path}")
            return refresh_recovery_state(state)

        try:
            self._analyze_manifest(module, state)
            self._analyze_build_config(module, state)
            self._analyze_build_tooling(module, state)
            self._analyze_dependencies(module, state)
            self._analyze_source_structure(module, state)
            self._analyze_build_artifacts(module, state)
            self._analyze_coverage(module, state)
            self._detect_common_issues(module, state)
        except OSError as e:
            raise AssessmentError(f"Module analysis failed: {e}", module_id) from e

        state.error_count = len(state.critical_errors) + len(state.non_critical_errors)
        state.warning_count = len(state.warnings) + len(state.build_warnings)
        state.configuration_valid = not state.configuration_errors
        return refresh_recovery_state(state)

    async def assess_many(self, module_ids: Iterable[str]) -> dict[str, ModuleState]:
        return {module_id: await self.assess(module_id) for module_id in module_ids}

    async def assess_workspace(
        self,
        module_ids: Optional[Iterable[str]] = None,
        backups_available: bool = False,
        history: Optional[list[HealthSnapshot]] = None,
    ) -> WorkspaceHealth:
        if module_ids is None:
            module_ids = self.manager.discover_modules()
        states = await self.assess_many(module_ids)
        return create_workspace_health(
            str(self.manager.workspace_root),
            states,
            backups_available=backups_available,
            history=history,
        )

    def _analyze_manifest(self, module: WorkspaceModule, state: ModuleState) -> None:
        manifest_name = self.settings.recovery.manifest_file
        manifest_path = module.file(manifest_name)

        if not manifest_path.is_file():
            state.manifest_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=manifest_name,
                error_type="missing_file",
                message=f"{manifest_name} file not found",
                auto_fixable=True,
                fix_suggestion=f"Create {manifest_name} with the module's name and version",
            ))
            return

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            state.manifest_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=manifest_name,
                error_type="syntax",
                message=f"JSON parse error: {e}",
            ))
            return

        if not isinstance(manifest, dict):
            state.manifest_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=manifest_name,
                error_type="syntax",
                message=f"{manifest_name} must contain a JSON object, got {type(manifest).__name__}",
            ))
            return

        for field in MANIFEST_OBJECT_FIELDS:
            if field in manifest and not isinstance(manifest[field], (dict, type(None))):
                state.configuration_errors.append(ConfigurationError(
                    config_file=manifest_name,
                    error_type="invalid_type",
                    field=field,
                    message=f"\"{field}\" must be an object, got {type(manifest[field]).__name__}",
                ))

        for field in ("name", "version"):
            if not manifest.get(field):
                state.configuration_errors.append(ConfigurationError(
                    config_file=manifest_name,
                    error_type="missing_field",
                    field=field,
                    message=f"Missing required field: {field}",
                    auto_fixable=True,
                    fix_suggestion=f'Add "{field}" field to {manifest_name}',
                ))

        scripts = manifest.get("scripts")
        if not isinstance(scripts, dict):
            scripts = {}
        if scripts.get("build"):
            state.build_tooling_configured = True
        if scripts.get("test"):
            state.test_status = TestStatus.NOT_STARTED

        state.dependencies.extend(self._collect_dependencies(manifest))
        state.manifest_valid = not any(
            e.config_file == manifest_name for e in state.configuration_errors
        )
        if isinstance(manifest.get("version"), str) and manifest["version"]:
            state.version = manifest["version"]

    def _collect_dependencies(self, manifest: Mapping) -> list[ModuleDependency]:
        scope = self.settings.recovery.package_scope
        dependencies = []
        for section, dependency_type in DEPENDENCY_SECTIONS:
            entries = manifest.get(section)
            if not isinstance(entries, dict):
                continue
            for name, version in entries.items():
                version = str(version)
                internal = version.startswith("workspace:") or name.startswith(f"{scope}/")
                dependencies.append(ModuleDependency(
                    dependency_name=name,
                    dependency_type=dependency_type,
                    required_version=version,
                    source="workspace" if internal else "npm",
                ))
        return dependencies

    def _analyze_build_config(self, module: WorkspaceModule, state: ModuleState) -> None:
        config_name = self.settings.recovery.build_config_file
        config_path = module.file(config_name)

        if not config_path.is_file():
            state.build_config_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=config_name,
                error_type="missing_file",
                message=f"{config_name} file not found",
                auto_fixable=True,
                fix_suggestion=f"Create {config_name} with a basic compiler configuration",
            ))
            return

        try:
            config = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            state.build_config_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=config_name,
                error_type="syntax",
                message=f"JSON parse error: {e}",
            ))
            return

        if not isinstance(config, dict):
            state.build_config_valid = False
            state.configuration_errors.append(ConfigurationError(
                config_file=config_name,
                error_type="syntax",
                message=f"{config_name} must contain a JSON object, got {type(config).__name__}",
            ))
            return

        if not config.get("compilerOptions"):
            state.configuration_errors.append(ConfigurationError(
                config_file=config_name,
                error_type="missing_field",
                field="compilerOptions",
                message="Missing compilerOptions section",
                auto_fixable=True,
                fix_suggestion=f"Add compilerOptions section to {config_name}",
            ))
        state.build_config_valid = not any(
            e.config_file == config_name for e in state.configuration_errors
        )

    def _analyze_build_tooling(self, module: WorkspaceModule, state: ModuleState) -> None:
        if any(module.file(name).is_file() for name in BUILD_TOOL_CONFIGS):
            state.build_tooling_configured = True

        if not state.build_tooling_configured:
            state.build_warnings.append(BuildWarning(
                warning_id=f"no-build-config-{state.module_id}",
                message="No build configuration file found",
                file=str(module.path),
            ))

    def _analyze_dependencies(self, module: WorkspaceModule, state: ModuleState) -> None:
        installed = module.file("node_modules").is_dir()
        external = [d for d in state.dependencies if d.source != "workspace"]

        if external and not installed:
            state.dependency_health = DependencyHealth.MISSING
            for dependency in external:
                dependency.satisfied = False
            state.critical_errors.append(CriticalError(
                error_id=f"missing-dependencies-{state.module_id}",
                error_type="dependency_missing",
                message="node_modules directory not found - dependencies not installed",
                impact="blocks_build",
            ))
        else:
            state.dependency_health = DependencyHealth.RESOLVED

    def _analyze_source_structure(self, module: WorkspaceModule, state: ModuleState) -> None:
        source_directory = self.settings.recovery.source_directory
        if not module.file(source_directory).is_dir():
            state.warnings.append(ModuleWarning(
                warning_id=f"no-src-directory-{state.module_id}",
                message=f"No {source_directory}/ directory found",
                recommendation=f"Create {source_directory}/ and move source files there",
                file=str(module.path),
            ))

        if not any(module.file(name).is_file() for name in INDEX_FILES):
            state.warnings.append(ModuleWarning(
                warning_id=f"no-index-file-{state.module_id}",
                message="No index file found - module may not be properly exported",
                recommendation="Create src/index.ts or index.ts",
                file=str(module.path),
            ))

    def _detect_common_issues(self, module: WorkspaceModule, state: ModuleState) -> None:
        if not any(module.path.iterdir()):
            state.critical_errors.append(CriticalError(
                error_id=f"empty-module-{state.module_id}",
                error_type="configuration_invalid",
                message="Module directory is empty",
            ))

    def _analyze_build_artifacts(self, module: WorkspaceModule, state: ModuleState) -> None:
        output_dir = module.file(BUILD_OUTPUT_DIRECTORY)
        if not output_dir.is_dir():
            return
        artifacts = sorted(
            path.relative_to(module.path).as_posix()
            for path in output_dir.rglob("*")
            if path.is_file()
        )
        if artifacts:
            state.build_status = BuildStatus.SUCCESS
            state.build_artifacts = artifacts

    def _analyze_coverage(self, module: WorkspaceModule, state: ModuleState) -> None:
        summary_path = module.file(COVERAGE_SUMMARY_FILE)
        if not summary_path.is_file():
            return
        try:
            total = json.loads(summary_path.read_text(encoding="utf-8")).get("total") or {}
            metrics = {}
            for key in ("statements", "branches", "functions", "lines"):
                entry = total.get(key) or {}
                metrics[key] = CoverageMetric(
                    total=int(entry.get("total", 0)),
                    covered=int(entry.get("covered", 0)),
                    percentage=float(entry.get("pct", 0.0)),
                )
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable coverage summary for {state.module_id}: {e}")
            return
        state.test_coverage = TestCoverage(overall=metrics["lines"].percentage, **metrics)
