"""
Health check endpoints for monitoring and orchestration.
Provides liveness, readiness, and startup probes.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from mongo_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    """
    Basic health check endpoint.
    Returns current status and version.
    """
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.

    Checks API server connectivity and, on the replica holding leadership,
    that the cluster watch is connected. Standby replicas report ready with
    ``leader: false``.
    """
    k8s = getattr(request.app.state, "k8s", None)
    controllers = getattr(request.app.state, "controllers", None)

    k8s_healthy = bool(k8s) and await k8s.ping()
    leader = bool(controllers) and controllers.running
    watch_healthy = not leader or controllers.watcher.connected

    body = {
        "kubernetes": "healthy" if k8s_healthy else "unhealthy",
        "watch": "connected" if watch_healthy else "disconnected",
        "leader": leader,
        "timestamp": _now(),
    }
    if not k8s_healthy or not watch_healthy:
        body["status"] = "not_ready"
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)

    body["status"] = "ready"
    return body


@router.get("/startup")
async def startup(request: Request):
    """
    Kubernetes startup probe.
    Indicates whether the operator has finished starting.
    """
    if getattr(request.app.state, "controllers", None) is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting", "timestamp": _now()},
        )
    return {"status": "started", "timestamp": _now()}
