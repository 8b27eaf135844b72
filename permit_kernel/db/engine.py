"""
Engine and session factory for the permit store.

One process-wide engine is built from a URL by ``init_engine_from_url``;
the orchestrator and the CLI take sessions from ``get_session_factory()``.

PostgreSQL
    READ COMMITTED.  Stronger guarantees come from explicit row locks
    (``SELECT ... FOR UPDATE``) and the atomic counter UPDATE.
    ``statement_timeout`` and ``lock_timeout`` are set per connection.

SQLite
    The driver's own transaction handling is switched off and every
    transaction starts with ``BEGIN IMMEDIATE``, so SAVEPOINTs behave and
    concurrent writers queue on the database lock (up to the busy timeout)
    instead of failing on lock upgrade.  Foreign keys are enforced.

Raises RuntimeError when the factory is requested before initialization.
A timeout surfaces as OperationalError, which the orchestrator turns into
PersistenceTimeoutError.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from permit_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    statement_timeout_ms: int | None = None,
    lock_timeout_ms: int | None = None,
    sqlite_busy_timeout_seconds: float = 30.0,
) -> Engine:
    """
    Build the process-wide engine and session factory.

    Replaces any engine from an earlier call without disposing it.
    ``statement_timeout_ms`` and ``lock_timeout_ms`` apply to PostgreSQL
    only; ``sqlite_busy_timeout_seconds`` bounds how long a SQLite writer
    waits for the database lock.
    """
    global _engine, _SessionFactory

    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        engine = _sqlite_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            busy_timeout=sqlite_busy_timeout_seconds,
            in_memory=url.database in (None, "", ":memory:"),
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
            connect_args=_postgres_connect_args(statement_timeout_ms, lock_timeout_ms),
        )

    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={
            "dialect": dialect,
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "statement_timeout_ms": statement_timeout_ms,
            "lock_timeout_ms": lock_timeout_ms,
        },
    )
    return engine


def _postgres_connect_args(
    statement_timeout_ms: int | None, lock_timeout_ms: int | None,
) -> dict[str, str]:
    settings = []
    if statement_timeout_ms:
        settings.append(f"-c statement_timeout={int(statement_timeout_ms)}")
    if lock_timeout_ms:
        settings.append(f"-c lock_timeout={int(lock_timeout_ms)}")
    return {"options": " ".join(settings)} if settings else {}


def _sqlite_engine(
    database_url: str,
    *,
    echo: bool,
    pool_size: int,
    max_overflow: int,
    pool_timeout: int,
    busy_timeout: float,
    in_memory: bool,
) -> Engine:
    connect_args = {"timeout": busy_timeout, "check_same_thread": False}
    if in_memory:
        # One shared connection, otherwise every checkout sees an empty db
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args=connect_args,
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            connect_args=connect_args,
        )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _require_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_engine() -> Engine:
    return _require_engine()


def get_session_factory() -> sessionmaker[Session]:
    """Session factory bound to the current engine; one session per unit of work."""
    _require_engine()
    return _SessionFactory


def get_session() -> Session:
    _require_engine()
    return _SessionFactory()


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Commit on normal exit, roll back and re-raise otherwise.

    For scripts and maintenance tasks; permit operations go through
    PermitOrchestrator, which owns its own transactions.
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


def _import_schema():
    from permit_kernel.db.base import Base
    import permit_kernel.models  # noqa: F401
    import permit_kernel.services.sequence_service  # noqa: F401  (counter table)

    return Base


def create_tables() -> None:
    """
    Create every table, the action history and counter tables included.

    Lifecycle operations fail if the history table is missing, so it is
    never optional.
    """
    Base = _import_schema()
    Base.metadata.create_all(_require_engine())
    logger.info("tables_created", extra={"tables": sorted(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every table. Test and development databases only."""
    _import_schema().metadata.drop_all(_require_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
