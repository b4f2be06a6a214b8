"""Database session configuration."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from realtime_channels.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import realtime_channels.models  # noqa: E402,F401


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine for ``url`` with the options the pipeline expects.

    SQLite connections are shared with worker threads (database calls are
    offloaded from the event loop), so the same-thread check is disabled.
    """
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, pool_pre_ping=True, echo=echo, connect_args=connect_args)


engine = build_engine(settings.effective_database_url, echo=settings.sql_debug)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_connection(session_factory: sessionmaker[Session] = SessionLocal) -> bool:
    """Run ``SELECT 1`` against the store; raise if it is unreachable."""
    with session_factory() as db:
        db.execute(text("SELECT 1"))
    return True


def create_tables(bind: Engine = engine) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=bind)


def drop_tables(bind: Engine = engine) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=bind)
