from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.audit_unit import AuditProject, AuditSession
from models.user import User
from routers import rate_limit
from services.orchestrator import AuditOrchestrator
from services.pipeline_errors import QueueUnavailableError
from services.pipeline_state import RetryPolicy, Task, UnitKind
from services.status_store import StatusStore


class FakeTaskQueue:
    """In-memory stand-in for RedisTaskQueue with the same method surface."""

    queue_name = "audit_pipeline_test"

    def __init__(self):
        self.jobs: Dict[str, Tuple[str, Task]] = {}
        self.order: List[str] = []
        self.live: Dict[Tuple[UnitKind, str], str] = {}
        self.cancelled: Set[str] = set()
        self.claims: Set[str] = set()
        self.enqueued: List[Task] = []
        self.delays: List[Tuple[Task, float]] = []
        self.heartbeats: List[str] = []
        self.paused = False
        self.unavailable = False
        self.fail_enqueue = False
        self.is_open = True

    def _check(self):
        if self.unavailable:
            raise QueueUnavailableError("Pipeline queue unavailable. Check Redis/worker availability and retry.")

    def _is_live(self, task_id: str) -> bool:
        entry = self.jobs.get(task_id)
        if entry is None:
            return False
        state, _ = entry
        return state in ("queued", "scheduled") or (state == "started" and task_id in self.claims)

    def enqueue(self, task: Task) -> str:
        self._check()
        if self.fail_enqueue:
            raise QueueUnavailableError("Pipeline queue unavailable. Check Redis/worker availability and retry.")
        if not self._is_live(task.task_id):
            self.jobs[task.task_id] = ("queued", task)
            self.order.append(task.task_id)
            self.enqueued.append(task)
        self.live[(task.unit_kind, task.unit_id)] = task.task_id
        return task.job_id

    def delay(self, task: Task, seconds: float) -> str:
        self._check()
        if self.fail_enqueue:
            raise QueueUnavailableError("Pipeline queue unavailable. Check Redis/worker availability and retry.")
        self.jobs[task.task_id] = ("scheduled", task)
        self.order.append(task.task_id)
        self.delays.append((task, seconds))
        self.live[(task.unit_kind, task.unit_id)] = task.task_id
        return task.job_id

    def remove_if_queued(self, kind: UnitKind, unit_id: str) -> bool:
        self._check()
        task_id = self.live.get((kind, unit_id))
        if not task_id or task_id not in self.jobs:
            return False
        state, _ = self.jobs[task_id]
        if state not in ("queued", "scheduled"):
            return False
        del self.jobs[task_id]
        self.live.pop((kind, unit_id), None)
        return True

    def has_live_task(self, kind: UnitKind, unit_id: str) -> bool:
        self._check()
        task_id = self.live.get((kind, unit_id))
        return bool(task_id) and self._is_live(task_id)

    def request_cancel(self, task_id: str) -> None:
        self._check()
        self.cancelled.add(task_id)

    def is_cancel_requested(self, task_id: str) -> bool:
        self._check()
        return task_id in self.cancelled

    def claim(self, task: Task) -> None:
        self._check()
        self.claims.add(task.task_id)
        if task.task_id in self.jobs:
            self.jobs[task.task_id] = ("started", task)

    def heartbeat(self, task: Task) -> None:
        self._check()
        self.heartbeats.append(task.task_id)

    def release(self, task: Task) -> None:
        self._check()
        self.claims.discard(task.task_id)
        self.jobs.pop(task.task_id, None)
        if self.live.get((task.unit_kind, task.unit_id)) == task.task_id:
            del self.live[(task.unit_kind, task.unit_id)]

    def ping(self) -> bool:
        self._check()
        return True

    def stats(self) -> Dict[str, object]:
        self._check()
        states = [state for state, _ in self.jobs.values()]
        return {
            "queue": self.queue_name,
            "queued": states.count("queued"),
            "started": states.count("started"),
            "scheduled": states.count("scheduled"),
            "paused": self.paused,
        }

    def cancel_job(self, task_id: str) -> Optional[Task]:
        self._check()
        entry = self.jobs.get(task_id)
        if entry is None:
            return None
        state, task = entry
        if state in ("queued", "scheduled"):
            del self.jobs[task_id]
            if self.live.get((task.unit_kind, task.unit_id)) == task_id:
                del self.live[(task.unit_kind, task.unit_id)]
        elif state == "started":
            self.cancelled.add(task_id)
        else:
            return None
        return task

    def clear(self) -> List[Task]:
        self._check()
        removed = [task for state, task in self.jobs.values() if state in ("queued", "scheduled")]
        for task in removed:
            del self.jobs[task.task_id]
            if self.live.get((task.unit_kind, task.unit_id)) == task.task_id:
                del self.live[(task.unit_kind, task.unit_id)]
        return removed

    def pause(self) -> None:
        self._check()
        self.paused = True

    def resume(self) -> None:
        self._check()
        self.paused = False

    def next_task(self) -> Optional[Task]:
        """Deliver the oldest pending job the way a worker would pick it up."""
        while self.order:
            task_id = self.order.pop(0)
            entry = self.jobs.get(task_id)
            if entry and entry[0] in ("queued", "scheduled"):
                return entry[1]
        return None


async def seed_unit(
    session_maker,
    kind: UnitKind,
    unit_id: str,
    owner_id: str,
    status: str = "pending",
    **fields,
):
    model = AuditProject if kind == UnitKind.PROJECT else AuditSession
    async with session_maker() as db:
        if await db.get(User, owner_id) is None:
            db.add(User(id=owner_id, email=f"{owner_id}@example.com"))
        if kind == UnitKind.PROJECT:
            fields.setdefault("base_url", "https://example.com")
        db.add(model(id=unit_id, user_id=owner_id, status=status, **fields))
        await db.commit()


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def fake_queue():
    return FakeTaskQueue()


@pytest.fixture
def store(session_maker):
    return StatusStore(session_maker)


@pytest.fixture
def orchestrator(store, fake_queue):
    return AuditOrchestrator(store, fake_queue, RetryPolicy(max_attempts=3, base_delay_seconds=5, max_delay_seconds=300))
