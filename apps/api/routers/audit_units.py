"""
Audit trigger and status routers for audit projects and audit sessions.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.orchestrator import AuditOrchestrator
from services.pipeline_errors import QueueUnavailableError
from services.pipeline_state import UnitKind

logger = logging.getLogger(__name__)


class StartAuditRequest(BaseModel):
    config: Optional[Dict[str, Any]] = None


class StartAuditResponse(BaseModel):
    unit_id: str
    status: str
    task_id: str


class StopAuditResponse(BaseModel):
    unit_id: str
    status: str
    previous_status: str
    message: str


class AuditStatusResponse(BaseModel):
    unit_id: str
    status: str
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    updated_at: Optional[str] = None
    progress: int = 0


class CrawlStatusResponse(BaseModel):
    unit_id: str
    status: str
    pages_crawled: int
    total_pages: int
    progress: int


class AuditResultsResponse(BaseModel):
    unit_id: str
    status: str
    crawl_result: Optional[Any] = None
    analysis_result: Optional[Any] = None
    completed_at: Optional[str] = None


def get_orchestrator(request: Request) -> AuditOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise QueueUnavailableError("Pipeline queue unavailable. Check Redis/worker availability and retry.")
    return orchestrator


def build_unit_router(kind: UnitKind) -> APIRouter:
    """Trigger/status routes for one unit kind; mounted per kind in main."""
    router = APIRouter()

    @router.get("/background-status")
    async def background_status(
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        """List the caller's audits that are still crawling or analyzing."""
        units = await orchestrator.list_in_flight(kind, auth.user_id)
        return {
            "count": len(units),
            "items": [
                {
                    **unit.to_status_payload(),
                    "current_stage": unit.current_stage.value if unit.current_stage else None,
                    "attempt": unit.attempt,
                }
                for unit in units
            ],
        }

    @router.post("/{unit_id}/start", response_model=StartAuditResponse)
    async def start_audit(
        unit_id: str,
        body: Optional[StartAuditRequest] = None,
        _rate_limit: None = Depends(rate_limit(f"{kind.value}_start", limit=30, window_seconds=600)),
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        """Start the crawl/analyze pipeline for an audit."""
        stage_config = body.config if body is not None else None
        task = await orchestrator.start(kind, unit_id, auth.user_id, stage_config)
        return StartAuditResponse(unit_id=unit_id, status=task.expected_status.value, task_id=task.task_id)

    @router.post("/{unit_id}/stop", response_model=StopAuditResponse)
    async def stop_audit(
        unit_id: str,
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        """Stop a running audit; it ends as failed."""
        previous = await orchestrator.stop(kind, unit_id, auth.user_id)
        return StopAuditResponse(
            unit_id=unit_id,
            status="failed",
            previous_status=previous.status.value,
            message=f"{previous.status.value} stopped successfully",
        )

    @router.get("/{unit_id}/status", response_model=AuditStatusResponse)
    async def get_audit_status(
        unit_id: str,
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        unit = await orchestrator.status(kind, unit_id, auth.user_id)
        return AuditStatusResponse(**unit.to_status_payload(), progress=unit.crawl_progress())

    @router.get("/{unit_id}/crawl-status", response_model=CrawlStatusResponse)
    async def get_crawl_status(
        unit_id: str,
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        """Pages fetched so far by the crawl stage."""
        unit = await orchestrator.status(kind, unit_id, auth.user_id)
        return CrawlStatusResponse(
            unit_id=unit.id,
            status=unit.status.value,
            pages_crawled=unit.pages_crawled,
            total_pages=unit.total_pages,
            progress=unit.crawl_progress(),
        )

    @router.get("/{unit_id}/results", response_model=AuditResultsResponse)
    async def get_audit_results(
        unit_id: str,
        auth: AuthContext = Depends(get_auth_context),
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ):
        unit = await orchestrator.status(kind, unit_id, auth.user_id)
        return AuditResultsResponse(
            unit_id=unit.id,
            status=unit.status.value,
            crawl_result=unit.crawl_result,
            analysis_result=unit.analysis_result,
            completed_at=unit.completed_at.isoformat() if unit.completed_at else None,
        )

    return router


project_router = build_unit_router(UnitKind.PROJECT)
session_router = build_unit_router(UnitKind.SESSION)
