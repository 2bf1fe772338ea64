"""Health check endpoints."""

from fastapi import APIRouter, Request

from connector_service.api.dependencies import get_app_settings
from connector_service.utils.clock import utcnow

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Basic health check."""
    settings = get_app_settings(request)
    return {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request):
    """Detailed health check with store, redis and scheduler state."""
    settings = get_app_settings(request)
    state = request.app.state
    health_status = {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
        "checks": {
            "store": {"status": "unknown", "backend": settings.store_backend},
            "redis": {"status": "unknown"},
            "scheduler": {"status": "unknown"},
        }
    }

    # Credential store
    try:
        if await state.store.ping():
            health_status["checks"]["store"]["status"] = "healthy"
        else:
            health_status["checks"]["store"]["status"] = "disconnected"
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["checks"]["store"]["status"] = "unhealthy"
        health_status["checks"]["store"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    # Redis
    redis_client = getattr(state, "redis", None)
    if redis_client is None:
        health_status["checks"]["redis"]["status"] = "disabled"
    else:
        try:
            await redis_client.ping()
            health_status["checks"]["redis"]["status"] = "healthy"
        except Exception as e:
            health_status["checks"]["redis"]["status"] = "unhealthy"
            health_status["checks"]["redis"]["error"] = str(e)
            health_status["status"] = "degraded"

    health_status["checks"]["scheduler"]["status"] = "running" if state.scheduler.running else "stopped"

    return health_status
