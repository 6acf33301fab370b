"""Audit pipeline orchestrator: the only component allowed to move a unit between statuses."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from config import settings
from services.pipeline_errors import (
    AlreadyRunningError,
    ForbiddenError,
    NotRunningError,
    QueueUnavailableError,
    UnitNotFoundError,
)
from services.pipeline_state import (
    RUNNING_STATUSES,
    STARTABLE_STATUSES,
    ErrorKind,
    PipelineEvent,
    RetryPolicy,
    Stage,
    StageOutcome,
    Task,
    UnitError,
    UnitKind,
    UnitStatus,
    sources_for,
    stage_events,
    transition,
)
from services.status_store import StatusStore, UnitSnapshot

logger = logging.getLogger(__name__)

STOP_RACE_ATTEMPTS = 3


def retry_policy_from_settings() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(int(settings.TASK_MAX_ATTEMPTS), 1),
        base_delay_seconds=max(int(settings.RETRY_BASE_DELAY_SECONDS), 0),
        max_delay_seconds=max(int(settings.RETRY_MAX_DELAY_SECONDS), 0),
    )


class AuditOrchestrator:
    """Owns legal transitions and task creation for audit projects and sessions.

    Every status write goes through ``StatusStore.conditional_update`` guarded
    by the statuses the transition table allows as sources and, for
    worker-reported outcomes, by the task id that currently owns the unit. A
    write whose guard no longer holds is a no-op: some other transition (a
    stop, a duplicate delivery) already won.
    """

    def __init__(self, store: StatusStore, queue: Any, policy: Optional[RetryPolicy] = None) -> None:
        self.store = store
        self.queue = queue
        self.policy = policy or retry_policy_from_settings()

    async def _queue_call(self, func: Callable[..., Any], *args: Any) -> Any:
        # Redis/RQ clients are blocking.
        return await asyncio.to_thread(func, *args)

    # -- request-time operations -----------------------------------------

    async def start(
        self,
        kind: UnitKind,
        unit_id: str,
        owner_id: str,
        stage_config: Optional[Dict[str, Any]] = None,
    ) -> Task:
        unit = await self.store.get(kind, unit_id, owner_id)
        if unit is None:
            raise UnitNotFoundError(f"Audit {kind.value} not found")
        if unit.status not in STARTABLE_STATUSES:
            raise AlreadyRunningError(
                f"Audit {kind.value} is already running (current status: {unit.status.value})",
                details={"status": unit.status.value},
            )
        if await self._queue_call(self.queue.has_live_task, kind, unit_id):
            raise AlreadyRunningError(
                f"Audit {kind.value} still has an active task; wait for it to stop",
                details={"status": unit.status.value},
            )

        config = dict(stage_config) if stage_config is not None else dict(unit.config)
        task = Task(unit_kind=kind, unit_id=unit_id, stage=Stage.CRAWL, attempt=0, config=config)
        new_status = transition(unit.status, PipelineEvent.START)
        won = await self.store.conditional_update(
            kind,
            unit_id,
            {unit.status},
            new_status,
            active_task_id=task.task_id,
            stage=Stage.CRAWL,
            attempt=0,
            config=config if stage_config is not None else None,
            progress=(0, 0),
            crawl_result=None,
            analysis_result=None,
            completed_at=None,
        )
        if not won:
            raise AlreadyRunningError(f"Audit {kind.value} was started concurrently")

        try:
            await self._queue_call(self.queue.enqueue, task)
        except QueueUnavailableError:
            restored = await self.store.conditional_update(
                kind,
                unit_id,
                {new_status},
                unit.status,
                error=unit.error,
                expected_task_id=task.task_id,
                active_task_id=unit.active_task_id,
                stage=unit.current_stage,
                attempt=unit.attempt,
                progress=(unit.pages_crawled, unit.total_pages),
                crawl_result=unit.crawl_result,
                analysis_result=unit.analysis_result,
                completed_at=unit.completed_at,
            )
            logger.error(
                "Could not enqueue crawl for %s %s; status %s",
                kind.value, unit_id, "restored" if restored else "left to concurrent writer",
            )
            raise

        logger.info("Started %s %s with crawl task %s", kind.value, unit_id, task.task_id)
        return task

    async def stop(self, kind: UnitKind, unit_id: str, owner_id: str) -> UnitSnapshot:
        """Force a running unit to failed; returns the snapshot observed before the stop."""
        unit = await self._get_owned(kind, unit_id, owner_id)
        for _ in range(STOP_RACE_ATTEMPTS):
            if unit.status not in sources_for(PipelineEvent.STOP):
                raise NotRunningError(
                    f"Audit {kind.value} is not running (current status: {unit.status.value})",
                    details={"status": unit.status.value},
                )
            await self._signal_cancel(unit)
            won = await self.store.conditional_update(
                kind,
                unit_id,
                {unit.status},
                transition(unit.status, PipelineEvent.STOP),
                error=UnitError(ErrorKind.STOPPED, f"{unit.status.value} stopped by user"),
                active_task_id=None,
            )
            if won:
                logger.info("Stopped %s %s (was %s)", kind.value, unit_id, unit.status.value)
                return unit
            # A worker moved the unit between our read and write; re-evaluate.
            refreshed = await self.store.get(kind, unit_id)
            if refreshed is None:
                raise UnitNotFoundError(f"Audit {kind.value} not found")
            unit = refreshed
        raise NotRunningError(
            f"Audit {kind.value} changed state while stopping (current status: {unit.status.value})",
            details={"status": unit.status.value},
        )

    async def status(self, kind: UnitKind, unit_id: str, owner_id: str) -> UnitSnapshot:
        return await self._get_owned(kind, unit_id, owner_id)

    async def list_in_flight(self, kind: UnitKind, owner_id: str) -> List[UnitSnapshot]:
        return await self.store.list_running(kind, owner_id=owner_id)

    # -- worker-reported outcomes ------------------------------------------

    async def advance(self, task: Task, outcome: StageOutcome) -> Optional[UnitStatus]:
        """Apply a stage outcome; returns the new status or None when superseded."""
        success_event, retry_event, failure_event = stage_events(task.stage)
        current = task.expected_status

        if outcome.success:
            target = transition(current, success_event)
            if task.stage == Stage.CRAWL:
                return await self._advance_to_analyze(task, target, outcome.result)
            won = await self.store.conditional_update(
                task.unit_kind,
                task.unit_id,
                sources_for(success_event),
                target,
                expected_task_id=task.task_id,
                active_task_id=None,
                analysis_result=outcome.result,
            )
            return self._report(task, won, target)

        message = outcome.error_message or f"{task.stage.value} failed"
        if outcome.retryable and self.policy.should_retry(task.attempt):
            return await self._schedule_retry(task, transition(current, retry_event), message)

        kind = ErrorKind.RETRIES_EXHAUSTED if outcome.retryable else ErrorKind.STAGE_FAILED
        target = transition(current, failure_event)
        won = await self.store.conditional_update(
            task.unit_kind,
            task.unit_id,
            sources_for(failure_event),
            target,
            error=UnitError(kind, message),
            expected_task_id=task.task_id,
            active_task_id=None,
        )
        return self._report(task, won, target, message)

    async def _advance_to_analyze(
        self,
        task: Task,
        target: UnitStatus,
        crawl_result: Any,
    ) -> Optional[UnitStatus]:
        next_task = task.next_stage()
        won = await self.store.conditional_update(
            task.unit_kind,
            task.unit_id,
            {task.expected_status},
            target,
            expected_task_id=task.task_id,
            active_task_id=next_task.task_id,
            stage=next_task.stage,
            attempt=0,
            crawl_result=crawl_result,
        )
        if not won:
            return self._report(task, won, target)
        await self._enqueue_or_fail(next_task, target)
        return self._report(task, won, target)

    async def _schedule_retry(self, task: Task, target: UnitStatus, message: str) -> Optional[UnitStatus]:
        retry_task = task.retry()
        delay = self.policy.backoff_seconds(task.attempt)
        won = await self.store.conditional_update(
            task.unit_kind,
            task.unit_id,
            {task.expected_status},
            target,
            expected_task_id=task.task_id,
            active_task_id=retry_task.task_id,
            attempt=retry_task.attempt,
        )
        if not won:
            return self._report(task, won, target)
        logger.warning(
            "%s task %s for %s %s failed (attempt %s): %s; retrying in %ss",
            task.stage.value, task.task_id, task.unit_kind.value, task.unit_id, task.attempt, message, delay,
        )
        await self._enqueue_or_fail(retry_task, target, delay=delay)
        return target

    async def _enqueue_or_fail(self, task: Task, current: UnitStatus, delay: Optional[int] = None) -> None:
        try:
            if delay is None:
                await self._queue_call(self.queue.enqueue, task)
            else:
                await self._queue_call(self.queue.delay, task, delay)
        except QueueUnavailableError:
            await self.store.conditional_update(
                task.unit_kind,
                task.unit_id,
                {current},
                UnitStatus.FAILED,
                error=UnitError(ErrorKind.QUEUE_UNAVAILABLE, f"{task.stage.value} could not be queued"),
                expected_task_id=task.task_id,
                active_task_id=None,
            )
            raise

    def _report(
        self,
        task: Task,
        won: bool,
        target: UnitStatus,
        message: Optional[str] = None,
    ) -> Optional[UnitStatus]:
        if not won:
            logger.info(
                "Ignoring %s outcome of superseded task %s for %s %s",
                task.stage.value, task.task_id, task.unit_kind.value, task.unit_id,
            )
            return None
        if target == UnitStatus.FAILED:
            logger.warning("%s %s failed during %s: %s", task.unit_kind.value, task.unit_id, task.stage.value, message)
        else:
            logger.info("%s %s moved to %s", task.unit_kind.value, task.unit_id, target.value)
        return target

    # -- cancellation and recovery -------------------------------------------

    async def _signal_cancel(self, unit: UnitSnapshot) -> None:
        try:
            if unit.active_task_id:
                await self._queue_call(self.queue.request_cancel, unit.active_task_id)
            await self._queue_call(self.queue.remove_if_queued, unit.kind, unit.id)
        except QueueUnavailableError:
            # Workers re-check the status row before running, so the stop still converges.
            logger.warning("Queue unavailable while stopping %s %s; relying on status check", unit.kind.value, unit.id)

    async def redeliver_stalled(self, kind: UnitKind, max_age_minutes: int) -> int:
        """Re-enqueue running units whose task is neither queued nor held by a live worker."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
        redelivered = 0
        for unit in await self.store.list_running(kind, updated_before=cutoff):
            if not unit.active_task_id or unit.status not in RUNNING_STATUSES:
                continue
            if await self._queue_call(self.queue.has_live_task, kind, unit.id):
                continue
            stage = unit.current_stage or (Stage.CRAWL if unit.status == UnitStatus.CRAWLING else Stage.ANALYZE)
            task = Task(
                unit_kind=kind,
                unit_id=unit.id,
                stage=stage,
                attempt=unit.attempt,
                config=unit.config,
                task_id=unit.active_task_id,
            )
            await self._queue_call(self.queue.enqueue, task)
            redelivered += 1
            logger.warning("Redelivered stalled %s task %s for %s %s", stage.value, task.task_id, kind.value, unit.id)
        return redelivered

    # -- administration ------------------------------------------------------

    async def cancel_task(self, task_id: str) -> Optional[Task]:
        """Administrator cancel of one task; the owning unit fails as stopped."""
        task = await self._queue_call(self.queue.cancel_job, task_id)
        if task is not None:
            await self._fail_cancelled(task)
        return task

    async def clear_queue(self) -> int:
        """Drop every waiting task and fail the units they belonged to."""
        removed = await self._queue_call(self.queue.clear)
        for task in removed:
            await self._fail_cancelled(task)
        return len(removed)

    async def _fail_cancelled(self, task: Task) -> None:
        current = task.expected_status
        won = await self.store.conditional_update(
            task.unit_kind,
            task.unit_id,
            {current},
            transition(current, PipelineEvent.STOP),
            error=UnitError(ErrorKind.STOPPED, f"{current.value} cancelled by administrator"),
            expected_task_id=task.task_id,
            active_task_id=None,
        )
        self._report(task, won, UnitStatus.FAILED, "cancelled by administrator")

    async def _get_owned(self, kind: UnitKind, unit_id: str, owner_id: str) -> UnitSnapshot:
        unit = await self.store.get(kind, unit_id)
        if unit is None:
            raise UnitNotFoundError(f"Audit {kind.value} not found")
        if unit.owner_id != owner_id:
            raise ForbiddenError(f"Audit {kind.value} belongs to another user")
        return unit
