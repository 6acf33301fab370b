"""
Health check endpoints.
"""

import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from database import engine
from services.pipeline_errors import QueueUnavailableError

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Reports database and pipeline queue connectivity.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "queue": "unknown",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    task_queue = getattr(request.app.state, "task_queue", None)
    if task_queue is None or not task_queue.is_open:
        health_status["queue"] = "down: not connected"
        health_status["status"] = "degraded"
    else:
        try:
            await asyncio.to_thread(task_queue.ping)
            health_status["queue"] = "up"
        except QueueUnavailableError as e:
            health_status["queue"] = f"down: {e.message}"
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness check."""
    if getattr(request.app.state, "orchestrator", None) is None:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": ["queue"]},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
