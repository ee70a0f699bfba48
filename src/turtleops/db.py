# src/turtleops/db.py
"""
SQLAlchemy database helpers for turtleops.

- SQLite file under TURTLEOPS_DATA_DIR unless TURTLEOPS_DB_URL says otherwise.
- One lazily built engine + sessionmaker per process; reset_db_state() drops them.
- get_db() is the request-scoped session for the web layer.

Environment:
- TURTLEOPS_DB_URL: override the database URL
  default: sqlite:////data/turtleops.sqlite
- TURTLEOPS_SQLITE_BUSY_TIMEOUT_MS: how long SQLite writers wait on a lock
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from turtleops.config import db_path, ensure_dirs, env_int, env_str


# Built on first use so tests can point TURTLEOPS_DB_URL elsewhere first.
_ENGINE: Optional[Engine] = None
_SessionLocal: Optional[Callable[..., Session]] = None


def get_db_url() -> str:
    """
    Choose DB URL from env, else default sqlite file in TURTLEOPS_DATA_DIR.
    """
    url = env_str("TURTLEOPS_DB_URL", "")
    if url:
        return url

    ensure_dirs()
    p = db_path()
    # absolute path: sqlite:////abs/path
    return f"sqlite:////{p.as_posix().lstrip('/')}"


def _set_sqlite_pragmas(busy_timeout_ms: int) -> Callable[..., None]:
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        # Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the outer
        # transaction instead of pysqlite's implicit one.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return _on_connect


def _emit_begin(conn) -> None:  # type: ignore[no-untyped-def]
    conn.exec_driver_sql("BEGIN")


def get_engine() -> Engine:
    global _ENGINE, _SessionLocal

    if _ENGINE is not None:
        return _ENGINE

    url = get_db_url()

    busy_timeout_ms = env_int("TURTLEOPS_SQLITE_BUSY_TIMEOUT_MS", 5000)
    connect_args = {}
    if url.startswith("sqlite:"):
        # Sessions hop between the event loop and worker threads.
        connect_args = {
            "check_same_thread": False,
            "timeout": max(1.0, float(busy_timeout_ms) / 1000.0),
        }

    _ENGINE = create_engine(
        url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if url.startswith("sqlite:"):
        event.listen(_ENGINE, "connect", _set_sqlite_pragmas(busy_timeout_ms))
        event.listen(_ENGINE, "begin", _emit_begin)

    _SessionLocal = sessionmaker(
        bind=_ENGINE,
        autoflush=False,
        expire_on_commit=False,
    )
    return _ENGINE


def get_session_factory() -> Callable[..., Session]:
    if _SessionLocal is None:
        get_engine()
    assert _SessionLocal is not None
    return _SessionLocal


def reset_db_state() -> None:
    """
    Drop the cached engine/session factory so the next call re-reads env.
    Used by tests that point TURTLEOPS_DB_URL at a temp file.
    """
    global _ENGINE, _SessionLocal
    if _ENGINE is not None:
        _ENGINE.dispose()
    _ENGINE = None
    _SessionLocal = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One unit of work outside a request (scripts, tests).
    Commit when the block exits cleanly, roll back on any exception.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """create_all for every turtleops table (no-op for tables that exist)."""
    # Importing models fills Base.metadata.
    from turtleops.models import Base

    Base.metadata.create_all(bind=get_engine())


# FastAPI dependency
def get_db() -> Iterator[Session]:
    """
    FastAPI dependency: yields a Session.  Route handlers commit explicitly;
    anything left uncommitted is rolled back on close.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
