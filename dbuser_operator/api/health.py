"""
Health check endpoints for the operator process.
Provides liveness, readiness, and startup checks.
"""
from datetime import datetime

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from dbuser_operator.config.settings import settings


class OperatorState:
    """Process-wide flags flipped by the operator lifecycle handlers."""

    def __init__(self) -> None:
        self.started = False
        self.ready = False

    def mark_ready(self) -> None:
        self.started = True
        self.ready = True

    def mark_stopping(self) -> None:
        self.ready = False

    def reset(self) -> None:
        self.started = False
        self.ready = False


# Global instance
operator_state = OperatorState()

router = APIRouter()


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
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness check.
    Indicates whether the process should be restarted.
    """
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/ready")
async def readiness():
    """
    Kubernetes readiness check.
    Ready once the Kubernetes client is initialized and handlers are registered.
    """
    if not operator_state.ready:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "timestamp": datetime.utcnow().isoformat(),
            },
        )

    return {"status": "ready", "timestamp": datetime.utcnow().isoformat()}


@router.get("/startup")
async def startup():
    """
    Kubernetes startup check.
    """
    if not operator_state.started:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "starting",
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
    return {"status": "started", "timestamp": datetime.utcnow().isoformat()}
