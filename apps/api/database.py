"""Async SQLAlchemy engine, session factory and declarative base."""

from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings


Base = declarative_base()

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_job_session_maker(
    database_url: Optional[str] = None,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Build a pool-less engine for one worker job; the caller disposes it."""
    job_engine = create_async_engine(database_url or settings.DATABASE_URL, poolclass=NullPool)
    return job_engine, async_sessionmaker(job_engine, class_=AsyncSession, expire_on_commit=False)
