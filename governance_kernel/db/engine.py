"""
Module: governance_kernel.db.engine
Responsibility: Builds the one process-wide SQLAlchemy engine and session
    factory, and provides ``session_scope``, the unit of work around a
    governance operation.
Architecture position: Kernel > DB.  May import from db/base.py.
    create_tables/drop_tables import models/ to register every table.

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED; the decision path serializes on
      the approval instance row with SELECT ... FOR UPDATE.
    - On SQLite the driver's implicit transactions are turned off and
      SQLAlchemy emits BEGIN itself, so ``session.begin_nested`` savepoints
      roll back what they should.  ``sqlite://`` shares one connection.
    - Services flush only.  ``session_scope`` commits or rolls back.

Failure modes:
    - RuntimeError from get_engine/get_session before init_engine_from_url().
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from governance_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "Engine not initialized. Call init_engine_from_url() first."


def _sqlite_engine(database_url: str, echo: bool) -> tuple[Engine, dict[str, Any]]:
    url = make_url(database_url)
    in_memory = url.database in (None, "", ":memory:")
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        **({"poolclass": StaticPool} if in_memory else {}),
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine, {"in_memory": in_memory}


def _server_engine(
    database_url: str,
    echo: bool,
    pool_size: int,
    max_overflow: int,
) -> tuple[Engine, dict[str, Any]]:
    engine = create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        isolation_level="READ COMMITTED",
    )
    return engine, {"pool_size": pool_size, "max_overflow": max_overflow}


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> Engine:
    """
    Create the process-wide engine and session factory.

    A second call replaces the first; call reset_engine() in between to
    release the old pool.

    Args:
        database_url: ``postgresql://...`` or ``sqlite://`` / ``sqlite:///path``.
        echo: Log every SQL statement.
        pool_size: Pooled connections (server databases only).
        max_overflow: Connections allowed beyond pool_size (server databases only).
    """
    global _engine, _SessionFactory

    if make_url(database_url).get_backend_name() == "sqlite":
        _engine, details = _sqlite_engine(database_url, echo)
    else:
        _engine, details = _server_engine(database_url, echo, pool_size, max_overflow)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo, **details},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session() -> Session:
    """A new session; the caller closes it (or uses session_scope)."""
    if _SessionFactory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _SessionFactory()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One transaction around a governance operation.

    Commits on normal exit; rolls back and re-raises on any exception.

        with session_scope() as session:
            services = build_governance_services(session)
            services.approvals.make_decision(task_id, "approve", ctx)
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def _metadata():
    from governance_kernel.db.base import Base
    import governance_kernel.models  # noqa: F401  registers all tables

    return Base.metadata


def create_tables() -> None:
    _metadata().create_all(get_engine())


def drop_tables() -> None:
    """Drop every governance table (tests and local tooling)."""
    _metadata().drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_at_exit() -> None:
    if _engine is not None:
        _engine.dispose()
