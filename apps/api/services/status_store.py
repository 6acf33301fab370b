"""Status store: reads and compare-and-swap writes of audit unit lifecycle rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy import update
from sqlalchemy.future import select

from models.audit_unit import AuditProject, AuditSession
from services.pipeline_state import (
    RUNNING_STATUSES,
    ErrorKind,
    Stage,
    UnitError,
    UnitKind,
    UnitStatus,
)


UNIT_MODELS: Dict[UnitKind, Type] = {
    UnitKind.PROJECT: AuditProject,
    UnitKind.SESSION: AuditSession,
}

_UNSET: Any = object()


@dataclass(frozen=True)
class UnitSnapshot:
    """Immutable view of one audit unit row."""

    kind: UnitKind
    id: str
    owner_id: str
    status: UnitStatus
    error: Optional[UnitError]
    config: Dict[str, Any]
    current_stage: Optional[Stage]
    attempt: int
    active_task_id: Optional[str]
    pages_crawled: int
    total_pages: int
    crawl_result: Optional[Dict[str, Any]]
    analysis_result: Optional[Dict[str, Any]]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]

    def to_status_payload(self) -> Dict[str, Any]:
        return {
            "unit_id": self.id,
            "status": self.status.value,
            "error_kind": self.error.kind.value if self.error else None,
            "error_message": self.error.message if self.error else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def crawl_progress(self) -> int:
        if self.status == UnitStatus.COMPLETED:
            return 100
        if self.status == UnitStatus.CRAWLING and self.total_pages > 0:
            return min(100, round(self.pages_crawled / self.total_pages * 100))
        if self.status == UnitStatus.ANALYZING:
            return 100
        return 0


def _snapshot(kind: UnitKind, row: Any) -> UnitSnapshot:
    error = None
    if row.error_message is not None or row.error_kind is not None:
        try:
            error_kind = ErrorKind(row.error_kind)
        except ValueError:
            error_kind = ErrorKind.STAGE_FAILED
        error = UnitError(kind=error_kind, message=row.error_message or "")
    return UnitSnapshot(
        kind=kind,
        id=row.id,
        owner_id=row.user_id,
        status=UnitStatus(row.status or UnitStatus.PENDING.value),
        error=error,
        config=dict(row.config or {}),
        current_stage=Stage(row.current_stage) if row.current_stage else None,
        attempt=int(row.attempt or 0),
        active_task_id=row.active_task_id,
        pages_crawled=int(row.pages_crawled or 0),
        total_pages=int(row.total_pages or 0),
        crawl_result=row.crawl_result,
        analysis_result=row.analysis_result,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


class StatusStore:
    """Single source of truth for unit status; every write is conditional on the prior status."""

    def __init__(self, session_maker) -> None:
        self._session_maker = session_maker

    async def get(
        self,
        kind: UnitKind,
        unit_id: str,
        owner_id: Optional[str] = None,
    ) -> Optional[UnitSnapshot]:
        model = UNIT_MODELS[kind]
        stmt = select(model).where(model.id == unit_id)
        if owner_id is not None:
            stmt = stmt.where(model.user_id == owner_id)
        async with self._session_maker() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return _snapshot(kind, row) if row else None

    async def list_running(
        self,
        kind: UnitKind,
        owner_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[UnitSnapshot]:
        model = UNIT_MODELS[kind]
        stmt = select(model).where(model.status.in_([s.value for s in RUNNING_STATUSES]))
        if owner_id is not None:
            stmt = stmt.where(model.user_id == owner_id)
        if updated_before is not None:
            stmt = stmt.where(model.updated_at < updated_before)
        stmt = stmt.order_by(model.updated_at.desc())
        async with self._session_maker() as db:
            result = await db.execute(stmt)
            return [_snapshot(kind, row) for row in result.scalars().all()]

    async def conditional_update(
        self,
        kind: UnitKind,
        unit_id: str,
        expected_statuses: Iterable[UnitStatus],
        new_status: UnitStatus,
        *,
        error: Optional[UnitError] = None,
        expected_task_id: Any = _UNSET,
        active_task_id: Any = _UNSET,
        stage: Any = _UNSET,
        attempt: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
        progress: Optional[Tuple[int, int]] = None,
        crawl_result: Any = _UNSET,
        analysis_result: Any = _UNSET,
        completed_at: Any = _UNSET,
    ) -> bool:
        """Apply the transition only if the row still holds an expected status.

        ``expected_task_id`` additionally binds the write to the task that owns
        the unit, so a redelivered or superseded task cannot move it. Returns
        False when the guard did not match; the caller treats that as "another
        transition already won".
        """
        expected = [UnitStatus(s).value for s in expected_statuses]
        if not expected:
            return False

        model = UNIT_MODELS[kind]
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {
            "status": new_status.value,
            "updated_at": now,
            "error_kind": error.kind.value if error and new_status == UnitStatus.FAILED else None,
            "error_message": error.message[:1000] if error and new_status == UnitStatus.FAILED else None,
        }
        if active_task_id is not _UNSET:
            values["active_task_id"] = active_task_id
        if stage is not _UNSET:
            values["current_stage"] = stage.value if stage is not None else None
        if attempt is not None:
            values["attempt"] = attempt
        if config is not None:
            values["config"] = config
        if progress is not None:
            values["pages_crawled"], values["total_pages"] = progress
        if crawl_result is not _UNSET:
            values["crawl_result"] = crawl_result
        if analysis_result is not _UNSET:
            values["analysis_result"] = analysis_result
        if completed_at is not _UNSET:
            values["completed_at"] = completed_at
        elif new_status == UnitStatus.COMPLETED:
            values["completed_at"] = now

        stmt = update(model).where(model.id == unit_id, model.status.in_(expected))
        if expected_task_id is not _UNSET:
            if expected_task_id is None:
                stmt = stmt.where(model.active_task_id.is_(None))
            else:
                stmt = stmt.where(model.active_task_id == expected_task_id)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self._session_maker() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1

    async def record_progress(
        self,
        kind: UnitKind,
        unit_id: str,
        task_id: str,
        pages_crawled: int,
        total_pages: int,
    ) -> bool:
        """Store crawl progress reported by the task that currently owns the unit."""
        model = UNIT_MODELS[kind]
        stmt = (
            update(model)
            .where(
                model.id == unit_id,
                model.status == UnitStatus.CRAWLING.value,
                model.active_task_id == task_id,
            )
            .values(
                pages_crawled=max(int(pages_crawled), 0),
                total_pages=max(int(total_pages), 0),
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_maker() as db:
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount == 1
