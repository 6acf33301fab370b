"""
Site Audit Pipeline - FastAPI Backend
Trigger, stop and status endpoints for queued crawl/analyze audits.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import audit_units, health, queue_admin
from services.orchestrator import AuditOrchestrator
from services.pipeline_errors import PipelineError
from services.pipeline_state import UnitKind
from services.status_store import StatusStore
from services.task_queue import RedisTaskQueue

logger = logging.getLogger(__name__)


async def _recover_stalled_units(orchestrator: AuditOrchestrator) -> int:
    recovered = 0
    for kind in UnitKind:
        recovered += await orchestrator.redeliver_stalled(kind, settings.STALLED_UNIT_MAX_AGE_MINUTES)
    return recovered


async def _periodic_stalled_recovery(orchestrator: AuditOrchestrator) -> None:
    interval_minutes = max(int(settings.STALLED_RECOVERY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            recovered = await _recover_stalled_units(orchestrator)
            if recovered:
                print(f"♻️ Redelivered {recovered} stalled audit tasks.")
        except Exception as exc:
            print(f"⚠️ Stalled audit recovery tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Site Audit Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    task_queue = RedisTaskQueue.from_settings()
    app.state.task_queue = task_queue
    app.state.orchestrator = None
    try:
        await asyncio.to_thread(task_queue.open)
        app.state.orchestrator = AuditOrchestrator(StatusStore(async_session_maker), task_queue)
        print(f"📬 Pipeline queue '{task_queue.queue_name}' connected.")
    except PipelineError as exc:
        print(f"⚠️ Pipeline queue unavailable, audits cannot be triggered: {exc.message}")

    recovery_task = None
    if app.state.orchestrator is not None:
        try:
            recovered = await _recover_stalled_units(app.state.orchestrator)
            if recovered:
                print(f"♻️ Redelivered {recovered} stalled audit tasks after startup.")
        except Exception as exc:
            print(f"⚠️ Stalled audit recovery skipped: {exc}")
        if int(settings.STALLED_RECOVERY_INTERVAL_MINUTES) > 0:
            recovery_task = asyncio.create_task(_periodic_stalled_recovery(app.state.orchestrator))
            print(
                "📅 Stalled audit recovery loop enabled "
                f"(every {int(settings.STALLED_RECOVERY_INTERVAL_MINUTES)} min)."
            )
    yield
    # Shutdown
    if recovery_task is not None:
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
    task_queue.close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Site Audit Pipeline API",
    description="Queue crawl and analysis runs for audit projects and sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(audit_units.project_router, prefix="/audit-projects", tags=["Audit Projects"])
app.include_router(audit_units.session_router, prefix="/audit-sessions", tags=["Audit Sessions"])
app.include_router(queue_admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Site Audit Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT)
