from __future__ import annotations

import logging
import os
import sys
from datetime import UTC, datetime
from typing import Annotated

import psutil
import uvicorn
from fastapi import Depends, FastAPI

from recovery_api import __version__
from recovery_api.config import Settings, get_settings
from recovery_api.logging import configure_logging
from recovery_api.recovery.router import router as recovery_router
from recovery_api.schemas import HealthResponse

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Module Recovery Orchestrator",
    version=__version__,
    description="Workspace module health assessment and recovery service",
    docs_url="/docs" if os.getenv("MODREC_ENABLE_DOCS", "true").lower() == "true" else None,
    redoc_url="/redoc" if os.getenv("MODREC_ENABLE_DOCS", "true").lower() == "true" else None,
)

app.include_router(recovery_router)

SettingsDep = Annotated[Settings, Depends(get_settings)]


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, timestamp=datetime.now(UTC))


@app.get("/health/detailed")
def detailed_health(settings: SettingsDep) -> dict:
    """Detailed health check for production monitoring."""
    recovery = settings.recovery
    health_info = {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
        "environment": {
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "workspace_root": str(settings.workspace_root),
            "packages_root_exists": settings.packages_root.is_dir(),
            "backups_enabled": recovery.backup_directory is not None,
        },
        "configuration": {
            "max_concurrency": recovery.max_concurrency,
            "command_timeout_seconds": recovery.command_timeout_seconds,
            "max_retries": recovery.max_retries,
            "max_backups": recovery.max_backups,
            "completion_health_threshold": recovery.completion_health_threshold,
        },
    }

    try:
        process = psutil.Process()
        health_info["system"] = {
            "cpu_percent": psutil.cpu_percent(interval=0.1),
            "memory_percent": psutil.virtual_memory().percent,
            "process_memory_mb": round(process.memory_info().rss / 1024 / 1024, 2),
            "open_files": len(process.open_files()),
            "num_threads": process.num_threads(),
        }
    except psutil.Error as e:
        logger.warning(f"System metrics unavailable: {e}")
        health_info["system"] = {"error": str(e)}

    return health_info


def run() -> None:
    """Serve the API with a single uvicorn worker; per-module locks are process-local."""
    uvicorn.run(
        app,
        host=os.getenv("MODREC_HOST", "127.0.0.1"),
        port=int(os.getenv("MODREC_PORT", "8890")),
        workers=1,
    )
