"""Audit unit lifecycle: statuses, stages, transition table and task envelopes."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


class UnitKind(str, Enum):
    PROJECT = "project"
    SESSION = "session"


class UnitStatus(str, Enum):
    PENDING = "pending"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class Stage(str, Enum):
    CRAWL = "crawl"
    ANALYZE = "analyze"


class PipelineEvent(str, Enum):
    START = "start"
    CRAWL_SUCCEEDED = "crawl_succeeded"
    CRAWL_RETRY = "crawl_retry"
    CRAWL_FAILED = "crawl_failed"
    ANALYZE_SUCCEEDED = "analyze_succeeded"
    ANALYZE_RETRY = "analyze_retry"
    ANALYZE_FAILED = "analyze_failed"
    STOP = "stop"


class ErrorKind(str, Enum):
    STOPPED = "stopped"
    STAGE_FAILED = "stage_failed"
    RETRIES_EXHAUSTED = "retries_exhausted"
    QUEUE_UNAVAILABLE = "queue_unavailable"


TERMINAL_STATUSES: FrozenSet[UnitStatus] = frozenset({UnitStatus.COMPLETED, UnitStatus.FAILED})
RUNNING_STATUSES: FrozenSet[UnitStatus] = frozenset({UnitStatus.CRAWLING, UnitStatus.ANALYZING})
STARTABLE_STATUSES: FrozenSet[UnitStatus] = frozenset(
    {UnitStatus.PENDING, UnitStatus.COMPLETED, UnitStatus.FAILED}
)

STAGE_STATUS: Mapping[Stage, UnitStatus] = {
    Stage.CRAWL: UnitStatus.CRAWLING,
    Stage.ANALYZE: UnitStatus.ANALYZING,
}

TRANSITIONS: Mapping[Tuple[UnitStatus, PipelineEvent], UnitStatus] = {
    (UnitStatus.PENDING, PipelineEvent.START): UnitStatus.CRAWLING,
    (UnitStatus.COMPLETED, PipelineEvent.START): UnitStatus.CRAWLING,
    (UnitStatus.FAILED, PipelineEvent.START): UnitStatus.CRAWLING,
    (UnitStatus.CRAWLING, PipelineEvent.CRAWL_SUCCEEDED): UnitStatus.ANALYZING,
    (UnitStatus.CRAWLING, PipelineEvent.CRAWL_RETRY): UnitStatus.CRAWLING,
    (UnitStatus.CRAWLING, PipelineEvent.CRAWL_FAILED): UnitStatus.FAILED,
    (UnitStatus.ANALYZING, PipelineEvent.ANALYZE_SUCCEEDED): UnitStatus.COMPLETED,
    (UnitStatus.ANALYZING, PipelineEvent.ANALYZE_RETRY): UnitStatus.ANALYZING,
    (UnitStatus.ANALYZING, PipelineEvent.ANALYZE_FAILED): UnitStatus.FAILED,
    (UnitStatus.CRAWLING, PipelineEvent.STOP): UnitStatus.FAILED,
    (UnitStatus.ANALYZING, PipelineEvent.STOP): UnitStatus.FAILED,
}

_STAGE_EVENTS: Mapping[Stage, Tuple[PipelineEvent, PipelineEvent, PipelineEvent]] = {
    Stage.CRAWL: (PipelineEvent.CRAWL_SUCCEEDED, PipelineEvent.CRAWL_RETRY, PipelineEvent.CRAWL_FAILED),
    Stage.ANALYZE: (PipelineEvent.ANALYZE_SUCCEEDED, PipelineEvent.ANALYZE_RETRY, PipelineEvent.ANALYZE_FAILED),
}


class IllegalTransitionError(ValueError):
    """Raised when an event has no entry in the transition table for a status."""


def transition(status: UnitStatus, event: PipelineEvent) -> UnitStatus:
    """Return the status reached from ``status`` on ``event``."""
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise IllegalTransitionError(f"No transition from {status.value} on {event.value}") from None


def sources_for(event: PipelineEvent) -> FrozenSet[UnitStatus]:
    """Statuses from which ``event`` is legal; used as the conditional-update guard."""
    return frozenset(status for (status, evt) in TRANSITIONS if evt == event)


def stage_events(stage: Stage) -> Tuple[PipelineEvent, PipelineEvent, PipelineEvent]:
    """(success, retry, failure) events for a stage."""
    return _STAGE_EVENTS[stage]


@dataclass(frozen=True)
class UnitError:
    """Structured failure detail persisted next to a failed status."""

    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: int = 5
    max_delay_seconds: int = 300

    def should_retry(self, attempt: int) -> bool:
        """True when a failed ``attempt`` still leaves room for another run."""
        # max_attempts counts total runs of a stage, the first one included.
        return attempt + 1 < self.max_attempts

    def backoff_seconds(self, attempt: int) -> int:
        """Delay before re-running after ``attempt`` failed: 5s, 10s, 20s ... capped."""
        delay = self.base_delay_seconds * (2 ** max(attempt, 0))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class StageOutcome:
    """Envelope returned by a stage collaborator."""

    success: bool
    result: Any = None
    retryable: bool = False
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, result: Any = None) -> "StageOutcome":
        return cls(success=True, result=result)

    @classmethod
    def failure(cls, error_message: str, retryable: bool = False) -> "StageOutcome":
        return cls(success=False, retryable=retryable, error_message=error_message)

    @classmethod
    def from_envelope(cls, value: Any) -> "StageOutcome":
        """Accept a StageOutcome or the dict forms ``{success, result}`` / ``{failure, retryable, error_message}``."""
        if isinstance(value, StageOutcome):
            return value
        if not isinstance(value, Mapping):
            raise TypeError(f"Stage collaborator returned unsupported envelope: {type(value).__name__}")
        if value.get("failure"):
            message = str(value.get("error_message") or value.get("error") or "stage failed")
            return cls.failure(message, retryable=bool(value.get("retryable", False)))
        if value.get("success"):
            return cls.ok(value.get("result"))
        raise ValueError("Stage envelope must set either 'success' or 'failure'")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Task:
    """One stage-attempt for one audit unit."""

    unit_kind: UnitKind
    unit_id: str
    stage: Stage
    attempt: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: datetime = field(default_factory=_utcnow)
    cancel_requested: bool = False

    @property
    def job_id(self) -> str:
        return f"audit:{self.task_id}"

    @property
    def expected_status(self) -> UnitStatus:
        return STAGE_STATUS[self.stage]

    def retry(self) -> "Task":
        """Same stage, next attempt, fresh identity."""
        return replace(
            self,
            attempt=self.attempt + 1,
            task_id=str(uuid.uuid4()),
            enqueued_at=_utcnow(),
            cancel_requested=False,
        )

    def next_stage(self) -> "Task":
        return Task(
            unit_kind=self.unit_kind,
            unit_id=self.unit_id,
            stage=Stage.ANALYZE,
            attempt=0,
            config=dict(self.config),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "unit_kind": self.unit_kind.value,
            "unit_id": self.unit_id,
            "stage": self.stage.value,
            "attempt": self.attempt,
            "config": dict(self.config),
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], cancel_requested: bool = False) -> "Task":
        enqueued_raw = payload.get("enqueued_at")
        enqueued_at = datetime.fromisoformat(enqueued_raw) if enqueued_raw else _utcnow()
        return cls(
            unit_kind=UnitKind(payload["unit_kind"]),
            unit_id=str(payload["unit_id"]),
            stage=Stage(payload["stage"]),
            attempt=int(payload.get("attempt", 0) or 0),
            config=dict(payload.get("config") or {}),
            task_id=str(payload["task_id"]),
            enqueued_at=enqueued_at,
            cancel_requested=cancel_requested,
        )
