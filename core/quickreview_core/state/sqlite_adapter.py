"""SQLite adapter for local QuickReview operation.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend, so the
API can run without a database server during development.

Key differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).
* Tables are created on demand via :func:`create_local_tables`.
* Timestamps are stored without offsets and re-tagged as UTC on read.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def get_local_engine(
    db_path: Path | str = ".quickreview/state.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for ephemeral
        in-memory databases (useful for testing).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    db_path = Path(db_path) if db_path != ":memory:" else db_path

    options: dict[str, Any] = {}
    if isinstance(db_path, Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{db_path}"
    else:
        url = "sqlite+aiosqlite:///:memory:"
        # One shared connection, so every session sees the same database.
        options["poolclass"] = StaticPool

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False},
        **options,
    )

    # Enable WAL mode and foreign keys for every connection.
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables directly from the metadata.

    Used for SQLite and dev databases in place of Alembic migrations.
    Idempotent and safe to call on every startup.
    """
    from quickreview_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Tables created/verified on %s", engine.url.render_as_string(hide_password=True))

