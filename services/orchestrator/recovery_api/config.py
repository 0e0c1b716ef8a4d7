from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RecoverySettings(BaseSettings):
    """Controls for module recovery runs."""

    packages_directory: str = "packages"
    manifest_file: str = "package.json"
    build_config_file: str = "tsconfig.json"
    critical_files: list[str] = Field(default_factory=lambda: [
        "package.json", "tsconfig.json", "tsup.config.ts"
    ])
    source_directory: str = "src"
    installer_command: list[str] = Field(default_factory=lambda: ["npm", "install"])
    build_command: list[str] = Field(default_factory=lambda: ["npm", "run", "build"])
    test_command: list[str] = Field(default_factory=lambda: ["npm", "test"])
    command_timeout_seconds: float = 300.0
    max_retries: int = 0
    retry_delay_seconds: float = 1.0
    max_concurrency: int = 4
    backup_directory: Path | None = None
    max_backups: int = 10
    completion_health_threshold: int = 85
    max_retained_sessions: int = Field(default=100, ge=1)
    package_scope: str = "@workspace"
    core_modules: list[str] = Field(default_factory=lambda: ["core", "shell", "logging"])
    foundation_modules: list[str] = Field(default_factory=lambda: ["auth", "i18n"])

    model_config = SettingsConfigDict(env_prefix="MODREC_RECOVERY_", env_file=None)


class Settings(BaseSettings):
    """Application configuration."""

    workspace_root: Path = Path.cwd()
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)

    model_config = SettingsConfigDict(env_prefix="MODREC_", env_file=None)

    @property
    def packages_root(self) -> Path:
        return self.workspace_root.expanduser().resolve() / self.recovery.packages_directory

    def module_path_for(self, module_id: str) -> Path:
        return self.packages_root / module_id


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    if settings.recovery.max_concurrency < 1:
        raise ValueError("MODREC_RECOVERY_MAX_CONCURRENCY must be at least 1")
    return settings
