from __future__ import annotations

import time
from typing import Dict, List

import psutil
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from portal import __version__
from portal.core.config import settings
from portal.core.logging import get_structlog_logger
from portal.db.base import utcnow
from portal.db.session import get_session
from portal.services.redis import health_check as redis_health_check

logger = get_structlog_logger(__name__)

router = APIRouter(tags=["health"])

SERVICE_NAME = "dealer_portal"


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    environment: str
    version: str
    timestamp: str
    uptime: float
    checks: Dict[str, Dict[str, str]]
    dependencies: List[str]


async def check_database(session: AsyncSession) -> Dict[str, str]:
    try:
        start_time = time.perf_counter()
        await session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "response_time_ms": f"{(time.perf_counter() - start_time) * 1000:.2f}",
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


async def check_redis() -> Dict[str, str]:
    if settings.is_testing:
        return {"status": "disabled"}

    result = await redis_health_check()
    if result.get("status") == "healthy":
        return {"status": "healthy", "response_time_ms": f"{result['response_time_ms']:.2f}"}
    return {"status": "unhealthy", "error": str(result.get("error", "unknown error"))}


def check_stripe() -> Dict[str, str]:
    configured = bool(settings.stripe_secret_key and settings.stripe_webhook_secret)
    return {
        "status": "healthy" if configured else "unconfigured",
        "api_version": settings.stripe_api_version,
    }


def process_uptime() -> float:
    return time.time() - psutil.Process().create_time()


@router.get("/health", response_model=HealthCheckResponse, status_code=status.HTTP_200_OK)
async def health_check(session: AsyncSession = Depends(get_session)):
    """Health of the service and its dependencies."""
    checks = {
        "database": await check_database(session),
        "redis": await check_redis(),
        "stripe": check_stripe(),
    }

    overall_status = "healthy"
    if checks["database"]["status"] != "healthy":
        overall_status = "unhealthy"
    elif any(check["status"] not in ("healthy", "disabled") for check in checks.values()):
        overall_status = "degraded"

    dependencies = ["postgresql", "redis", "stripe"]
    if settings.sentry_dsn:
        dependencies.append("sentry")

    log = logger.info if overall_status == "healthy" else logger.warning
    log("health.check", status=overall_status, checks=checks)

    return HealthCheckResponse(
        status=overall_status,
        service=SERVICE_NAME,
        environment=settings.environment,
        version=__version__,
        timestamp=utcnow().isoformat(),
        uptime=process_uptime(),
        checks=checks,
        dependencies=dependencies,
    )


@router.get("/health/live", status_code=status.HTTP_200_OK)
async def liveness_probe():
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@router.get("/health/ready")
async def readiness_probe(session: AsyncSession = Depends(get_session)):
    """Ready once the database answers; Redis is optional."""
    database = await check_database(session)
    is_ready = database["status"] == "healthy"

    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if is_ready else "not_ready",
            "timestamp": utcnow().isoformat(),
            "checks": {"database": database["status"]},
        },
    )


@router.get("/health/metrics")
async def health_metrics():
    """Process metrics in Prometheus text format."""
    process = psutil.Process()
    metrics = [
        "# HELP portal_uptime_seconds Process uptime in seconds",
        "# TYPE portal_uptime_seconds gauge",
        f'portal_uptime_seconds{{service="{SERVICE_NAME}"}} {process_uptime():.0f}',
        "# HELP portal_memory_usage_bytes Resident memory in bytes",
        "# TYPE portal_memory_usage_bytes gauge",
        f'portal_memory_usage_bytes{{service="{SERVICE_NAME}"}} {process.memory_info().rss}',
        "",
    ]
    return Response(content="\n".join(metrics), media_type="text/plain; version=0.0.4")
