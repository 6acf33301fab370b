"""
Operator view and control of the pipeline queue.
"""

import asyncio
from typing import Any

from fastapi import APIRouter, Depends, Request

from config import settings
from routers.audit_units import get_orchestrator
from routers.auth_scope import AuthContext, get_auth_context
from services.orchestrator import AuditOrchestrator
from services.pipeline_errors import ForbiddenError, QueueUnavailableError, UnitNotFoundError

router = APIRouter()


def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if auth.user_id not in settings.ADMIN_USER_IDS:
        raise ForbiddenError("Queue administration is restricted to administrators")
    return auth


def _open_queue(request: Request) -> Any:
    task_queue = getattr(request.app.state, "task_queue", None)
    if task_queue is None or not task_queue.is_open:
        raise QueueUnavailableError("Pipeline queue unavailable. Check Redis/worker availability and retry.")
    return task_queue


@router.get("/queue/stats")
async def queue_stats(
    request: Request,
    _admin: AuthContext = Depends(require_admin),
):
    """RQ registry counts for the pipeline queue."""
    task_queue = _open_queue(request)
    return await asyncio.to_thread(task_queue.stats)


@router.post("/queue/pause")
async def pause_queue(
    request: Request,
    _admin: AuthContext = Depends(require_admin),
):
    """Suspend workers; queued tasks stay queued."""
    task_queue = _open_queue(request)
    await asyncio.to_thread(task_queue.pause)
    return {"success": True, "message": f"Queue {task_queue.queue_name} paused"}


@router.post("/queue/resume")
async def resume_queue(
    request: Request,
    _admin: AuthContext = Depends(require_admin),
):
    task_queue = _open_queue(request)
    await asyncio.to_thread(task_queue.resume)
    return {"success": True, "message": f"Queue {task_queue.queue_name} resumed"}


@router.post("/queue/clear")
async def clear_queue(
    _admin: AuthContext = Depends(require_admin),
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
):
    """Drop every waiting task; their units end as failed."""
    removed = await orchestrator.clear_queue()
    return {"success": True, "removed": removed}


@router.post("/queue/jobs/{task_id}/cancel")
async def cancel_queue_job(
    task_id: str,
    _admin: AuthContext = Depends(require_admin),
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
):
    task = await orchestrator.cancel_task(task_id)
    if task is None:
        raise UnitNotFoundError(f"No waiting or running task {task_id}")
    return {
        "success": True,
        "task_id": task.task_id,
        "unit_kind": task.unit_kind.value,
        "unit_id": task.unit_id,
        "stage": task.stage.value,
    }
