"""Shared fixtures for recovery tests."""

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from recovery_api.config import RecoverySettings, Settings
from recovery_api.recovery.errors import CommandExecutionError

HEALTHY_MANIFEST = {
    "name": "@workspace/widgets",
    "version": "1.2.0",
    "scripts": {"build": "tsup", "test": "jest"},
    "dependencies": {"lodash": "^4.17.21", "@workspace/core": "workspace:*"},
}

HEALTHY_BUILD_CONFIG = {"compilerOptions": {"outDir": "./dist", "rootDir": "./src"}}


def write_coverage(module_path: Path, pct: float = 92.0) -> None:
    entry = {"total": 100, "covered": int(pct), "pct": pct}
    summary = {"total": {key: entry for key in ("statements", "branches", "functions", "lines")}}
    coverage = module_path / "coverage"
    coverage.mkdir(parents=True, exist_ok=True)
    (coverage / "coverage-summary.json").write_text(json.dumps(summary), encoding="utf-8")


def write_build_outputs(module_path: Path) -> None:
    (module_path / "node_modules").mkdir(exist_ok=True)
    (module_path / "dist").mkdir(exist_ok=True)
    (module_path / "dist" / "index.js").write_text("module.exports = {};\n", encoding="utf-8")
    write_coverage(module_path)


def make_module(
    settings: Settings,
    module_id: str,
    manifest: Optional[dict] = HEALTHY_MANIFEST,
    build_config: Optional[dict] = HEALTHY_BUILD_CONFIG,
    source: bool = True,
    built: bool = True,
) -> Path:
    """Create a module directory under the workspace's packages directory."""
    module_path = settings.module_path_for(module_id)
    module_path.mkdir(parents=True, exist_ok=True)
    if manifest is not None:
        (module_path / "package.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    if build_config is not None:
        (module_path / "tsconfig.json").write_text(json.dumps(build_config, indent=2), encoding="utf-8")
    if source:
        (module_path / "src").mkdir(exist_ok=True)
        (module_path / "src" / "index.ts").write_text("export {};\n", encoding="utf-8")
    if built:
        write_build_outputs(module_path)
    return module_path


class FakeProcessRunner:
    """Records commands instead of spawning processes.

    `handlers` maps the first command word after the program (e.g.
    "install", "run", "test") to a callable invoked with the working
    directory; a handler may raise to simulate a failing command.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable[[Path], Optional[str]]]] = None):
        self.handlers = handlers or {}
        self.calls: List[tuple] = []

    async def run(self, command, cwd, timeout=None):
        command = list(command)
        self.calls.append((command, Path(cwd)))
        handler = self.handlers.get(command[1] if len(command) > 1 else command[0])
        if handler is not None:
            output = handler(Path(cwd))
            return output or ""
        return ""


def failing(returncode: int = 1, output: str = "npm ERR! failed"):
    def handler(cwd: Path):
        raise CommandExecutionError(["npm"], returncode, output)
    return handler


@pytest.fixture
def settings(tmp_path):
    workspace = tmp_path / "workspace"
    (workspace / "packages").mkdir(parents=True)
    return Settings(
        workspace_root=workspace,
        recovery=RecoverySettings(retry_delay_seconds=0.0, command_timeout_seconds=5.0),
    )


@pytest.fixture
def backup_settings(tmp_path):
    workspace = tmp_path / "workspace"
    (workspace / "packages").mkdir(parents=True)
    return Settings(
        workspace_root=workspace,
        recovery=RecoverySettings(
            retry_delay_seconds=0.0,
            command_timeout_seconds=5.0,
            backup_directory=tmp_path / "backups",
        ),
    )
