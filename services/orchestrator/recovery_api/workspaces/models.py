from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

MODULE_MARKERS: tuple[str, ...] = (
    "package.json",
    "tsconfig.json",
    "src",
)

INDEX_FILES: tuple[str, ...] = (
    "src/index.ts",
    "src/index.js",
    "index.ts",
    "index.js",
)

BUILD_OUTPUT_DIRECTORY = "dist"
COVERAGE_SUMMARY_FILE = "coverage/coverage-summary.json"

BUILD_TOOL_CONFIGS: tuple[str, ...] = (
    "tsup.config.ts",
    "rollup.config.js",
    "webpack.config.js",
    "vite.config.ts",
)


@dataclass(slots=True, frozen=True)
class WorkspaceModule:
    module_id: str
    path: Path

    @property
    def exists(self) -> bool:
        return self.path.is_dir()

    def file(self, name: str) -> Path:
        return self.path / name

    def markers(self) -> Iterable[Path]:
        yield from (self.path / marker for marker in MODULE_MARKERS)
