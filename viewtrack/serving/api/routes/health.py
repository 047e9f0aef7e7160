"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems, and the
Prometheus scrape endpoint.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from viewtrack.database.connection import check_database_health
from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.deps import get_pipeline
from viewtrack.serving.cache import check_redis_health

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: ViewPipeline = Depends(get_pipeline)) -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Database connectivity
    - Redis connectivity
    - Background task and queue state
    """
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    checks["database"] = await check_database_health(pipeline.session_factory)
    if checks["database"].get("status") != "healthy":
        overall_status = "unhealthy"

    checks["redis"] = await check_redis_health(pipeline.redis)
    if checks["redis"].get("status") != "healthy" and overall_status == "healthy":
        overall_status = "degraded"

    checks["pipeline"] = {
        "background_tasks": pipeline.running,
        "aggregation_queue": pipeline.aggregator.depth,
        "topics": len(pipeline.hub.topics),
        "subscribers": len(pipeline.hub.subscribers),
    }

    settings = pipeline.settings
    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response, pipeline: ViewPipeline = Depends(get_pipeline)) -> Dict[str, str]:
    """
    Kubernetes readiness probe endpoint.

    Returns 200 once the database and Redis both answer.
    """
    db_health = await check_database_health(pipeline.session_factory)
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}

    redis_health = await check_redis_health(pipeline.redis)
    if redis_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "redis_unavailable"}

    return {"status": "ready"}


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
