from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from netrecon.config import settings

_engine_kwargs: dict = dict(
    pool_pre_ping=True,
    future=True,
)

if settings.database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=300,
        pool_timeout=settings.db_pool_timeout,
    )

engine = create_engine(settings.database_url, **_engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

# Shared Redis client for reconciliation locks, trigger guards and the RQ queue
_redis: redis.Redis | None = None


def get_redis() -> redis.Redis:
    """Get the shared Redis client, creating it if necessary."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url)
    return _redis


def init_db() -> None:
    """Create registry and control-plane tables that do not exist yet."""
    from netrecon import models

    models.Base.metadata.create_all(bind=engine)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context manager for worker and monitor code paths.

    Uncommitted work is rolled back before the session is closed so a failed
    reconciliation never leaks a half-written transaction to the pool.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        try:
            session.rollback()
        finally:
            session.close()
