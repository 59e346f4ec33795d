# leadbot/routes/health.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from leadbot import __version__
from leadbot.core.config import settings
from leadbot.core.logging import get_structlog_logger
from leadbot.db.session import health_check as database_health_check
from leadbot.services.redis import health_check as redis_health_check

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])

_STARTED_AT = time.monotonic()


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    version: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, Any]]


@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Database is critical; Redis only degrades deduplication to the ledger checks."""
    checks = {
        "database": await database_health_check(),
        "redis": await redis_health_check(),
    }

    if checks["database"].get("status") != "healthy":
        overall_status = "unhealthy"
    elif checks["redis"].get("status") != "healthy":
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    response = HealthCheckResponse(
        status=overall_status,
        service="leadbot",
        environment=settings.environment,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(time.monotonic() - _STARTED_AT, 3),
        checks=checks,
    )

    log = logger.info if overall_status == "healthy" else logger.warning
    log("health.check", status=overall_status, checks=checks)

    return JSONResponse(
        status_code=(
            status.HTTP_503_SERVICE_UNAVAILABLE
            if overall_status == "unhealthy"
            else status.HTTP_200_OK
        ),
        content=response.model_dump(),
    )


@router.get("/health/live")
async def liveness_probe():
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}
