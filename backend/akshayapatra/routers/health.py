"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from akshayapatra.config import settings
from akshayapatra.storage.backends import get_backend

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight health check for load balancer (no store check)."""
    return {
        "status": "ok",
        "service": "Akshayapatra",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 only when the local store backend answers."""
    checks = {"service": "ok", "store": "unknown"}
    healthy = True

    try:
        if await get_backend().ping():
            checks["store"] = "ok"
        else:
            checks["store"] = "error: ping failed"
            healthy = False
    except Exception as e:
        checks["store"] = f"error: {str(e)[:100]}"
        healthy = False

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": "Akshayapatra",
            "backend": settings.store_backend,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
