"""Health check API endpoints for monitoring and load balancer integration."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from mev_pipeline.cache import health_check as redis_health_check
from mev_pipeline.pipeline.orchestrator import MEVPipeline

logger = logging.getLogger(__name__)

# Create the FastAPI router
router = APIRouter()


def _pipeline(request: Request) -> Optional[MEVPipeline]:
    return getattr(request.app.state, "pipeline", None)


def _uses_redis(request: Request) -> bool:
    app_settings = getattr(request.app.state, "settings", None)
    return app_settings is not None and app_settings.publish_events_to_redis


@router.get("/health")
def basic_health_check(request: Request) -> Dict[str, Any]:
    """Basic health check that returns system status."""
    pipeline = _pipeline(request)
    degraded = pipeline is not None and bool(pipeline.halted_stages)
    return {
        "status": "degraded" if degraded else "healthy",
        "message": "Stages halted" if degraded else "Service is operational",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/health/live")
def liveness_probe() -> Dict[str, Any]:
    """Kubernetes liveness probe."""
    return {
        "status": "alive",
        "message": "Application is responsive"
    }


@router.get("/health/ready")
async def readiness_probe(request: Request):
    """
    Kubernetes readiness probe.

    Not ready while the pipeline is stopped or halted, or while Redis is
    unreachable when events are published there.
    """
    pipeline = _pipeline(request)
    if pipeline is None or not pipeline.is_running:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "message": "Pipeline is not running"}
        )
    if pipeline.halted_stages:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "message": "Pipeline stages halted",
                "halted_stages": dict(pipeline.halted_stages)
            }
        )
    checks = {"redis": "disabled"}
    if _uses_redis(request):
        if not await redis_health_check():
            return JSONResponse(
                status_code=503,
                content={
                    "status": "not_ready",
                    "message": "Redis unavailable",
                    "checks": {"redis": "unhealthy"}
                }
            )
        checks["redis"] = "healthy"

    return {
        "status": "ready",
        "message": "Application is ready to serve traffic",
        "checks": checks
    }


@router.get("/health/pipeline")
def pipeline_status(request: Request):
    """Per-stage statistics and active alerts."""
    pipeline = _pipeline(request)
    if pipeline is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "message": "Pipeline not initialized"}
        )
    return {
        "status": "degraded" if pipeline.halted_stages else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stats": pipeline.get_stats(),
        "alerts": pipeline.alert_manager.get_active_alerts()
    }
