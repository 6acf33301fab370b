"""Queue-worker side of the pipeline: runs one stage task and reports its outcome."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from config import settings
from database import create_job_session_maker
from services.orchestrator import AuditOrchestrator
from services.pipeline_errors import QueueUnavailableError, StageFailure
from services.pipeline_state import StageOutcome, Stage, Task
from services.stage_handlers import CANCELLED_MESSAGE, StageHandler, load_stage_handlers
from services.status_store import StatusStore
from services.task_queue import RedisTaskQueue

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int], Awaitable[Any]]


class CancellationToken:
    """Handed to stage collaborators as ``is_cancelled``.

    Polls the queue's cancel flag at most once per ``poll_interval``. Once a
    cancellation is seen it stays set. Calling the token polls inline; async
    collaborators await ``poll()`` instead so the Redis round trip runs in a
    worker thread.
    """

    def __init__(
        self,
        queue: Any,
        task: Task,
        poll_interval: float = 0.5,
        progress_sink: Optional[ProgressSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._task = task
        self._poll_interval = poll_interval
        self._progress_sink = progress_sink
        self._clock = clock
        self._cancelled = task.cancel_requested
        self._last_poll: Optional[float] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __call__(self) -> bool:
        return self.check()

    def _poll_due(self, force: bool) -> bool:
        now = self._clock()
        if force or self._last_poll is None or now - self._last_poll >= self._poll_interval:
            self._last_poll = now
            return True
        return False

    def _read_flag(self) -> bool:
        try:
            self._cancelled = self._queue.is_cancel_requested(self._task.task_id)
        except QueueUnavailableError:
            logger.warning("Could not poll cancellation for task %s", self._task.task_id)
        return self._cancelled

    def check(self, force: bool = False) -> bool:
        if self._cancelled:
            return True
        if self._poll_due(force):
            self._read_flag()
        return self._cancelled

    async def poll(self, force: bool = False) -> bool:
        if self._cancelled:
            return True
        if self._poll_due(force):
            await asyncio.to_thread(self._read_flag)
        return self._cancelled

    async def report_progress(self, pages_crawled: int, total_pages: int) -> None:
        if self._progress_sink is not None:
            await self._progress_sink(pages_crawled, total_pages)


@dataclass(frozen=True)
class TaskReport:
    task_id: str
    stage: str
    action: str  # skipped, cancelled, advanced, superseded
    status: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"task_id": self.task_id, "stage": self.stage, "action": self.action, "status": self.status}


class StageRunner:
    """Executes one delivered task against the configured stage collaborator.

    While the collaborator runs, a background task extends the worker's claim
    every ``heartbeat_interval`` seconds, independent of how often the
    collaborator checks for cancellation.
    """

    def __init__(
        self,
        orchestrator: AuditOrchestrator,
        handlers: Mapping[Stage, StageHandler],
        poll_interval: float = 0.5,
        heartbeat_interval: float = 15.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.queue = orchestrator.queue
        self.handlers = handlers
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval

    async def run(self, task: Task) -> TaskReport:
        unit = await self.store.get(task.unit_kind, task.unit_id)
        if unit is None or unit.status != task.expected_status or unit.active_task_id != task.task_id:
            logger.info(
                "Skipping stale %s task %s for %s %s (unit status %s)",
                task.stage.value, task.task_id, task.unit_kind.value, task.unit_id,
                unit.status.value if unit else "missing",
            )
            # Claim and live marker may still belong to another delivery of this task.
            return TaskReport(task.task_id, task.stage.value, "skipped", unit.status.value if unit else None)

        await asyncio.to_thread(self.queue.claim, task)
        heartbeat = asyncio.create_task(self._keep_claim(task))
        token = CancellationToken(self.queue, task, self.poll_interval, self._progress_sink(task))
        try:
            if await token.poll(force=True):
                logger.info("Task %s was cancelled before it started", task.task_id)
                outcome = StageOutcome.failure(CANCELLED_MESSAGE)
            else:
                config = dict(task.config)
                if task.stage == Stage.ANALYZE:
                    config["crawl_result"] = unit.crawl_result
                outcome = await self._invoke(task, config, token)
                if outcome.success and await token.poll(force=True):
                    logger.info("Discarding %s result of task %s: stopped by user", task.stage.value, task.task_id)
                    outcome = StageOutcome.failure(CANCELLED_MESSAGE)

            new_status = await self.orchestrator.advance(task, outcome)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await asyncio.to_thread(self._release, task)

        if new_status is None:
            action = "cancelled" if token.cancelled else "superseded"
            return TaskReport(task.task_id, task.stage.value, action)
        return TaskReport(task.task_id, task.stage.value, "advanced", new_status.value)

    async def _keep_claim(self, task: Task) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await asyncio.to_thread(self.queue.heartbeat, task)
            except QueueUnavailableError:
                logger.warning("Could not extend claim for task %s", task.task_id)

    def _progress_sink(self, task: Task) -> Optional[ProgressSink]:
        if task.stage != Stage.CRAWL:
            return None

        async def record(pages_crawled: int, total_pages: int) -> None:
            await self.store.record_progress(task.unit_kind, task.unit_id, task.task_id, pages_crawled, total_pages)

        return record

    async def _invoke(self, task: Task, config: Dict[str, Any], token: CancellationToken) -> StageOutcome:
        handler = self.handlers[task.stage]
        logger.info(
            "Running %s for %s %s (task %s, attempt %s)",
            task.stage.value, task.unit_kind.value, task.unit_id, task.task_id, task.attempt,
        )
        try:
            if inspect.iscoroutinefunction(handler):
                result = await handler(task.unit_id, config, token)
            else:
                # Blocking collaborators must not stall the claim heartbeat.
                result = await asyncio.to_thread(handler, task.unit_id, config, token)
            if inspect.isawaitable(result):
                result = await result
            return StageOutcome.from_envelope(result)
        except StageFailure as exc:
            return StageOutcome.failure(str(exc) or f"{task.stage.value} failed", retryable=exc.retryable)
        except Exception:
            logger.exception("Unexpected error in %s stage for %s %s", task.stage.value, task.unit_kind.value, task.unit_id)
            return StageOutcome.failure(f"{task.stage.value} stage failed unexpectedly")

    def _release(self, task: Task) -> None:
        try:
            self.queue.release(task)
        except QueueUnavailableError:
            logger.warning("Could not release claim for task %s", task.task_id)


async def run_task_payload(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Build a per-job runtime (queue client, DB engine, orchestrator) and run one task."""
    task = Task.from_payload(payload)
    job_engine, session_maker = create_job_session_maker()
    queue = RedisTaskQueue.from_settings()
    try:
        await asyncio.to_thread(queue.open)
        orchestrator = AuditOrchestrator(StatusStore(session_maker), queue)
        runner = StageRunner(
            orchestrator,
            load_stage_handlers(),
            poll_interval=settings.CANCEL_POLL_INTERVAL_SECONDS,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
        )
        report = await runner.run(task)
        return report.as_dict()
    finally:
        queue.close()
        await job_engine.dispose()


def execute_task(payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """RQ worker entrypoint for pipeline stage tasks."""
    return asyncio.run(run_task_payload(payload))
