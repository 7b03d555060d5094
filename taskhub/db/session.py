"""
TaskHub Database Session Management.

Single entry point for database initialisation plus the commit/rollback
context manager used by every service.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from taskhub.db.base import Base

_engine: Optional[Engine] = None


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> sessionmaker:
    """
    Build the engine and return a ``sessionmaker`` bound to it.

    Sessions are created with ``expire_on_commit=False`` so rows returned by
    a service stay readable after its transaction has committed.

    Args:
        db_url:        SQLAlchemy URL. PostgreSQL in production; SQLite
                       (file or memory) is accepted for tests and local runs.
        create_tables: When True, run Base.metadata.create_all(). Use for
                       ``taskhub init`` and tests only.

    Returns:
        A plain ``sessionmaker``.
    """
    global _engine

    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    else:
        engine = create_engine(
            db_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            pool_pre_ping=pool_pre_ping,
        )

    if create_tables:
        Base.metadata.create_all(engine)

    _engine = engine
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for DB sessions with auto-commit/rollback.

    Usage:
        with session_scope(factory) as session:
            task = session.get(Task, task_id)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_db() -> None:
    """Dispose the engine's connection pool. Used during shutdown."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
