"""Durable audit pipeline task queue (Redis/RQ)."""

from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, Iterator, List, Optional

from redis import Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry as RedisRetry
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus
from rq.suspension import is_suspended
from rq.suspension import resume as resume_workers
from rq.suspension import suspend as suspend_workers

from config import settings
from services.pipeline_errors import QueueUnavailableError
from services.pipeline_state import Task, UnitKind

logger = logging.getLogger(__name__)

TASK_ENTRYPOINT = "services.worker_pool.execute_task"
QUEUED_JOB_STATES = (JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.DEFERRED)

# Delete KEYS[1] only while it still names the releasing task.
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _worker_identity() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class RedisTaskQueue:
    """At-least-once hand-off of pipeline tasks between the API and queue workers.

    Besides the RQ job itself, three small keys are kept per task:

    * ``<prefix>:live:<kind>:<unit_id>`` names the unit's current task,
    * ``<prefix>:cancel:<task_id>`` is the cooperative cancellation flag,
    * ``<prefix>:claim:<task_id>`` is the worker claim, kept alive by heartbeats.

    A started job whose claim expired is no longer live and may be redelivered.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        queue_name: str = "audit_pipeline",
        job_timeout: int = 1800,
        result_ttl: int = 86400,
        connect_timeout: float = 30.0,
        command_timeout: float = 15.0,
        connect_attempts: int = 3,
        retry_backoff: float = 0.5,
        claim_timeout: int = 120,
        cancel_ttl: int = 86400,
        key_prefix: str = "audit",
    ) -> None:
        self.redis_url = redis_url
        self.queue_name = queue_name
        self.job_timeout = job_timeout
        self.result_ttl = result_ttl
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.connect_attempts = max(int(connect_attempts), 1)
        self.retry_backoff = retry_backoff
        self.claim_timeout = claim_timeout
        self.cancel_ttl = cancel_ttl
        self.key_prefix = key_prefix
        self._redis: Optional[Redis] = None
        self._queue: Optional[Queue] = None

    @classmethod
    def from_settings(cls) -> "RedisTaskQueue":
        return cls(
            settings.REDIS_URL,
            queue_name=settings.PIPELINE_QUEUE_NAME,
            job_timeout=settings.STAGE_JOB_TIMEOUT_SECONDS,
            result_ttl=settings.JOB_RESULT_TTL_SECONDS,
            connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
            command_timeout=settings.REDIS_COMMAND_TIMEOUT_SECONDS,
            connect_attempts=settings.REDIS_CONNECT_ATTEMPTS,
            retry_backoff=settings.REDIS_RETRY_BACKOFF_SECONDS,
            claim_timeout=settings.TASK_CLAIM_TIMEOUT_SECONDS,
            cancel_ttl=settings.CANCEL_FLAG_TTL_SECONDS,
        )

    # -- lifecycle -----------------------------------------------------

    def open(self) -> "RedisTaskQueue":
        """Connect and verify the broker; raise QueueUnavailableError after bounded retries."""
        if self._redis is not None:
            return self
        client = Redis.from_url(
            self.redis_url,
            socket_connect_timeout=self.connect_timeout,
            socket_timeout=self.command_timeout,
            retry=RedisRetry(ExponentialBackoff(cap=self.retry_backoff * 8, base=self.retry_backoff), self.connect_attempts - 1),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            health_check_interval=30,
        )
        try:
            with self._broker_call("connect"):
                client.ping()
        except QueueUnavailableError:
            client.close()
            raise
        self._redis = client
        self._queue = Queue(name=self.queue_name, connection=client, default_timeout=self.job_timeout)
        logger.info("Pipeline queue '%s' connected", self.queue_name)
        return self

    def close(self) -> None:
        if self._redis is None:
            return
        try:
            self._redis.close()
        finally:
            self._redis = None
            self._queue = None
        logger.info("Pipeline queue '%s' closed", self.queue_name)

    def __enter__(self) -> "RedisTaskQueue":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._redis is not None

    @property
    def connection(self) -> Redis:
        if self._redis is None:
            raise QueueUnavailableError("Pipeline queue is not connected.")
        return self._redis

    # -- task operations -----------------------------------------------

    def enqueue(self, task: Task) -> str:
        """Persist ``task`` for immediate delivery; a still-live copy is not enqueued twice."""
        queue = self._require_queue()
        with self._broker_call("enqueue"):
            existing = self._fetch_job(task.job_id)
            if existing is not None and self._job_is_live(existing, task.task_id):
                logger.info("Task %s already live as job %s; skipping duplicate enqueue", task.task_id, existing.id)
                self._mark_live(task)
                return existing.id
            job = queue.enqueue(
                TASK_ENTRYPOINT,
                task.to_payload(),
                job_id=task.job_id,
                job_timeout=self.job_timeout,
                result_ttl=self.result_ttl,
                failure_ttl=self.result_ttl,
                description=self._describe(task),
            )
            self._mark_live(task)
        logger.info(
            "Enqueued %s task %s for %s %s (attempt %s)",
            task.stage.value, task.task_id, task.unit_kind.value, task.unit_id, task.attempt,
        )
        return job.id

    def delay(self, task: Task, seconds: float) -> str:
        """Persist ``task`` with delivery deferred by ``seconds`` (RQ scheduler)."""
        queue = self._require_queue()
        with self._broker_call("delay"):
            job = queue.enqueue_in(
                timedelta(seconds=seconds),
                TASK_ENTRYPOINT,
                task.to_payload(),
                job_id=task.job_id,
                job_timeout=self.job_timeout,
                result_ttl=self.result_ttl,
                failure_ttl=self.result_ttl,
                description=self._describe(task),
            )
            self._mark_live(task)
        logger.info(
            "Scheduled %s task %s for %s %s in %ss (attempt %s)",
            task.stage.value, task.task_id, task.unit_kind.value, task.unit_id, seconds, task.attempt,
        )
        return job.id

    def remove_if_queued(self, kind: UnitKind, unit_id: str) -> bool:
        """Drop the unit's task if no worker has claimed it yet."""
        with self._broker_call("remove"):
            task_id = self._get_text(self._live_key(kind, unit_id))
            if not task_id:
                return False
            job = self._fetch_job(f"audit:{task_id}")
            if job is None:
                self._compare_and_delete(self._live_key(kind, unit_id), task_id)
                return False
            if job.get_status() not in QUEUED_JOB_STATES:
                return False
            job.delete()
            self._compare_and_delete(self._live_key(kind, unit_id), task_id)
        logger.info("Removed queued task %s for %s %s", task_id, kind.value, unit_id)
        return True

    def has_live_task(self, kind: UnitKind, unit_id: str) -> bool:
        """True while the unit's task is queued, scheduled, or held by a heartbeating worker."""
        with self._broker_call("lookup"):
            task_id = self._get_text(self._live_key(kind, unit_id))
            if not task_id:
                return False
            job = self._fetch_job(f"audit:{task_id}")
            if job is None:
                return False
            return self._job_is_live(job, task_id)

    def request_cancel(self, task_id: str) -> None:
        with self._broker_call("cancel"):
            self.connection.set(self._cancel_key(task_id), "1", ex=self.cancel_ttl)
        logger.info("Cancellation requested for task %s", task_id)

    def is_cancel_requested(self, task_id: str) -> bool:
        with self._broker_call("cancel lookup"):
            return bool(self.connection.exists(self._cancel_key(task_id)))

    def claim(self, task: Task) -> None:
        """Record worker ownership of ``task`` for one visibility window."""
        with self._broker_call("claim"):
            self.connection.set(self._claim_key(task.task_id), _worker_identity(), ex=self.claim_timeout)

    def heartbeat(self, task: Task) -> None:
        with self._broker_call("heartbeat"):
            self.connection.expire(self._claim_key(task.task_id), self.claim_timeout)

    def release(self, task: Task) -> None:
        """Drop the claim and, if it still names this task, the unit's live marker."""
        with self._broker_call("release"):
            self.connection.delete(self._claim_key(task.task_id))
            self._compare_and_delete(self._live_key(task.unit_kind, task.unit_id), task.task_id)

    # -- administration -------------------------------------------------

    def cancel_job(self, task_id: str) -> Optional[Task]:
        """Drop a waiting task or flag a running one; returns None when nothing was cancelled."""
        with self._broker_call("admin cancel"):
            job = self._fetch_job(f"audit:{task_id}")
            if job is None:
                return None
            task = Task.from_payload(job.args[0])
            status = job.get_status()
            if status in QUEUED_JOB_STATES:
                job.delete()
                self._compare_and_delete(self._live_key(task.unit_kind, task.unit_id), task_id)
            elif status == JobStatus.STARTED:
                self.connection.set(self._cancel_key(task_id), "1", ex=self.cancel_ttl)
            else:
                return None
        logger.info("Administrator cancelled %s task %s (%s)", task.stage.value, task_id, status)
        return task

    def clear(self) -> List[Task]:
        """Drop every queued and scheduled task; running tasks are left alone."""
        queue = self._require_queue()
        removed: List[Task] = []
        with self._broker_call("clear"):
            job_ids = list(queue.get_job_ids()) + list(queue.scheduled_job_registry.get_job_ids())
            for job_id in job_ids:
                job = self._fetch_job(job_id)
                if job is None or job.get_status() not in QUEUED_JOB_STATES:
                    continue
                task = Task.from_payload(job.args[0])
                job.delete()
                self._compare_and_delete(self._live_key(task.unit_kind, task.unit_id), task.task_id)
                removed.append(task)
        logger.info("Cleared %s waiting tasks from '%s'", len(removed), self.queue_name)
        return removed

    def pause(self) -> None:
        """Suspend all workers; queued tasks wait until ``resume``."""
        with self._broker_call("pause"):
            suspend_workers(self.connection)
        logger.info("Pipeline workers suspended")

    def resume(self) -> None:
        with self._broker_call("resume"):
            resume_workers(self.connection)
        logger.info("Pipeline workers resumed")

    def is_paused(self) -> bool:
        with self._broker_call("pause lookup"):
            return bool(is_suspended(self.connection))

    # -- monitoring -----------------------------------------------------

    def ping(self) -> bool:
        with self._broker_call("ping"):
            return bool(self.connection.ping())

    def stats(self) -> Dict[str, object]:
        queue = self._require_queue()
        with self._broker_call("stats"):
            return {
                "queue": queue.name,
                "queued": queue.count,
                "started": queue.started_job_registry.count,
                "scheduled": queue.scheduled_job_registry.count,
                "deferred": queue.deferred_job_registry.count,
                "failed": queue.failed_job_registry.count,
                "finished": queue.finished_job_registry.count,
                "canceled": queue.canceled_job_registry.count,
                "paused": bool(is_suspended(self.connection)),
            }

    # -- internals -----------------------------------------------------

    @contextmanager
    def _broker_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("Pipeline queue %s failed: %s", operation, exc)
            raise QueueUnavailableError(
                "Pipeline queue unavailable. Check Redis/worker availability and retry.",
                details={"operation": operation},
            ) from exc

    def _require_queue(self) -> Queue:
        if self._queue is None:
            raise QueueUnavailableError("Pipeline queue is not connected.")
        return self._queue

    def _fetch_job(self, job_id: str) -> Optional[Job]:
        try:
            return Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None

    def _job_is_live(self, job: Job, task_id: str) -> bool:
        status = job.get_status()
        if status in QUEUED_JOB_STATES:
            return True
        if status == JobStatus.STARTED:
            return bool(self.connection.exists(self._claim_key(task_id)))
        return False

    def _mark_live(self, task: Task) -> None:
        self.connection.set(self._live_key(task.unit_kind, task.unit_id), task.task_id, ex=self.cancel_ttl)

    def _compare_and_delete(self, key: str, value: str) -> None:
        self.connection.eval(_COMPARE_AND_DELETE, 1, key, value)

    def _get_text(self, key: str) -> Optional[str]:
        raw = self.connection.get(key)
        if raw is None:
            return None
        return raw.decode() if isinstance(raw, bytes) else str(raw)

    def _live_key(self, kind: UnitKind, unit_id: str) -> str:
        return f"{self.key_prefix}:live:{kind.value}:{unit_id}"

    def _cancel_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:cancel:{task_id}"

    def _claim_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:claim:{task_id}"

    @staticmethod
    def _describe(task: Task) -> str:
        return f"{task.stage.value} {task.unit_kind.value}:{task.unit_id} attempt {task.attempt}"
