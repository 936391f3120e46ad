"""Health check endpoints.

Provides:
- Basic liveness probe (/health)
- Engine status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.config import get_settings
from handlers.registry import get_handler_registry
from workflow.execution_manager import ExecutionManager, get_execution_manager

router = APIRouter(prefix="/health")

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def health_check() -> dict[str, Any]:
    """
    Liveness probe. Returns app name, version and status.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def engine_status(manager: ExecutionManager = Depends(get_execution_manager)) -> dict[str, Any]:
    """
    Engine status: uptime, executions in flight and registered step types.
    """
    registry = get_handler_registry()
    return {
        "status": "ok",
        "environment": get_settings().ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "python": sys.version.split()[0],
        "platform": platform.platform(),
        "executions": {
            "running": manager.running_count,
            "max_concurrent": manager.max_concurrent,
            "tracked": len(manager.list_executions()),
        },
        "step_types": len(registry.available_types),
    }
