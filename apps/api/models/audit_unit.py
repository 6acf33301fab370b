"""Audit project and session models sharing one pipeline lifecycle."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import declared_attr, relationship
from sqlalchemy.sql import func

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditUnitMixin:
    """Columns tracked by the crawl/analyze pipeline."""

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    status = Column(String, nullable=False, default="pending", index=True)  # pending, crawling, analyzing, completed, failed
    error_kind = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    config = Column(JSON, nullable=True)  # Stage input passed through to workers
    current_stage = Column(String, nullable=True)  # crawl, analyze
    attempt = Column(Integer, nullable=False, default=0)
    active_task_id = Column(String, nullable=True, index=True)
    pages_crawled = Column(Integer, nullable=False, default=0)
    total_pages = Column(Integer, nullable=False, default=0)
    crawl_result = Column(JSON, nullable=True)
    analysis_result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @declared_attr
    def user_id(cls):
        return Column(String, ForeignKey("users.id"), nullable=False, index=True)


class AuditProject(AuditUnitMixin, Base):
    """Site-wide audit of a base URL."""

    __tablename__ = "audit_projects"

    base_url = Column(String, nullable=True)

    user = relationship("User", back_populates="audit_projects")


class AuditSession(AuditUnitMixin, Base):
    """Ad-hoc audit of a hand-picked URL set."""

    __tablename__ = "audit_sessions"

    name = Column(String, nullable=True)

    user = relationship("User", back_populates="audit_sessions")
