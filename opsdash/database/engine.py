"""
opsdash.database.engine — Database Connection, Bootstrap & Async Helper
========================================================================

**Why this file exists:**
FastAPI handlers run on an ``asyncio`` event loop.  SQLAlchemy + psycopg2 is
**synchronous**, so every store call is shipped to a worker thread through
:func:`run_db` and awaited back, bounded by the configured database timeout.

The schema is owned by :func:`bootstrap_schema`: an idempotent script
(``CREATE TABLE IF NOT EXISTS`` + add-missing-columns) that runs on startup
and again, once, whenever a store operation discovers the table is gone.

Usage::

    from opsdash.database.engine import bootstrap_schema, create_db_engine, run_db

    engine = create_db_engine(cfg)
    bootstrap_schema(engine)

    # Inside an async handler:
    users = await run_db(store.list_all)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, inspect, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from opsdash.config import DashboardConfig
from opsdash.database.models import Base
from opsdash.errors import StorageUnavailable

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

UNDEFINED_TABLE_SQLSTATE = "42P01"

# Set once at startup by configure_db_timeout(); None means unbounded.
_operation_timeout: float | None = None


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(cfg: DashboardConfig) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from the resolved config.

    The PostgreSQL pool is bounded:
    * ``pool_size`` — ``DB_POOL_SIZE`` persistent connections.
    * ``max_overflow=5`` — a few extra connections under load.
    * ``pool_timeout`` — give up acquiring after ``DB_TIMEOUT_SECONDS``.
    * ``statement_timeout`` — the server aborts runaway statements too.

    SQLite URLs (local development) get a single shared connection.
    """
    url = cfg.database_url
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        logger.info("Database engine created → sqlite")
        return engine

    timeout_ms = int(cfg.db_timeout_seconds * 1000)
    engine = create_engine(
        url,
        echo=False,
        pool_size=cfg.db_pool_size,
        max_overflow=5,
        pool_pre_ping=True,
        pool_timeout=cfg.db_timeout_seconds,
        pool_recycle=3600,
        connect_args={
            "connect_timeout": max(1, int(cfg.db_timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms}",
        },
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


def configure_db_timeout(seconds: float | None) -> None:
    """Bound every :func:`run_db` call to *seconds* (``None`` disables)."""
    global _operation_timeout
    _operation_timeout = seconds


# ---------------------------------------------------------------------------
# Schema bootstrap
# ---------------------------------------------------------------------------
def _column_ddl(column, dialect) -> str:
    ddl = f"{column.name} {column.type.compile(dialect=dialect)}"
    default = column.default.arg if column.default is not None else None
    if isinstance(default, bool):
        ddl += f" DEFAULT {'TRUE' if default else 'FALSE'} NOT NULL"
    elif isinstance(default, str):
        ddl += f" DEFAULT '{default}'"
        if not column.nullable:
            ddl += " NOT NULL"
    return ddl


def bootstrap_schema(engine: Engine) -> None:
    """Create missing tables and columns.  Safe to run any number of times.

    ``create_all`` issues ``CREATE TABLE IF NOT EXISTS`` semantics; columns
    added to the models after a table was first created are appended with
    ``ALTER TABLE … ADD COLUMN`` (``IF NOT EXISTS`` on PostgreSQL, where two
    replicas may bootstrap concurrently).
    """
    Base.metadata.create_all(engine)

    is_pg = engine.dialect.name == "postgresql"
    inspector = inspect(engine)
    missing = []
    for table in Base.metadata.sorted_tables:
        present = {c["name"] for c in inspector.get_columns(table.name)}
        missing.extend((table, c) for c in table.columns if c.name not in present)
    if not missing:
        logger.info("Database schema verified / created.")
        return

    guard = "IF NOT EXISTS " if is_pg else ""
    with engine.begin() as conn:
        for table, column in missing:
            conn.execute(text(
                f"ALTER TABLE {table.name} ADD COLUMN {guard}"
                f"{_column_ddl(column, engine.dialect)}"
            ))
            if column.unique:
                conn.execute(text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS "
                    f"ix_{table.name}_{column.name}_unique "
                    f"ON {table.name} ({column.name})"
                ))
            logger.warning("Added missing column %s.%s", table.name, column.name)
    logger.info("Database schema verified / created.")


def is_missing_table(exc: BaseException) -> bool:
    """True when *exc* means the table does not exist (UndefinedTable)."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code == UNDEFINED_TABLE_SQLSTATE:
        return True
    return "no such table" in str(orig).lower()


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.  The connection returns to the pool on every exit path.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def ping(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call made from a request handler goes through this wrapper::

        user = await run_db(store.lookup_by_email, email)

    When a timeout is configured and exceeded the awaiting handler gets
    :class:`StorageUnavailable` (HTTP 503); the worker thread finishes on
    its own and releases its connection.
    """
    call = asyncio.to_thread(func, *args, **kwargs)
    if _operation_timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=_operation_timeout)
    except TimeoutError:
        logger.warning("Database operation %s timed out after %.1fs",
                       getattr(func, "__name__", func), _operation_timeout)
        raise StorageUnavailable("Database operation timed out") from None
