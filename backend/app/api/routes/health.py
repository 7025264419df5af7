"""Health check endpoints."""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends

from app.core.config import Settings, get_settings
from app.services.queue_metrics_service import QueueMetricsService, get_queue_metrics_service

router = APIRouter(prefix="/health", tags=["health"])
logger = structlog.get_logger(__name__)


@router.get("")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint.

    Returns:
        Health status with service name.
    """
    return {
        "data": {
            "status": "healthy",
            "service": "geotimeline-backend",
        }
    }


@router.get("/ready")
async def readiness_check(
    settings: Settings = Depends(get_settings),
    metrics: QueueMetricsService = Depends(get_queue_metrics_service),
) -> dict[str, Any]:
    """Readiness check with dependency status.

    The API is ready once Supabase credentials are present and the
    Redis broker (background regeneration) answers.

    Returns:
        Detailed readiness status.
    """
    redis_health = await asyncio.to_thread(metrics.check_health)
    checks: dict[str, bool] = {
        "supabase_configured": settings.is_configured,
        "redis_connected": redis_health["redisConnected"],
    }

    all_healthy = all(checks.values())

    logger.debug("readiness_check", checks=checks, healthy=all_healthy)

    return {
        "data": {
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks,
            "queueDepths": redis_health["queueDepths"],
        }
    }


@router.get("/live")
async def liveness_check() -> dict[str, Any]:
    """Liveness check endpoint.

    Used by orchestration systems to detect crashed processes.
    """
    return {
        "data": {
            "status": "alive",
        }
    }
