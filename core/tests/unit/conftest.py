"""Shared fixtures for quickreview_core unit tests."""

from __future__ import annotations

import pytest_asyncio
from quickreview_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import async_sessionmaker


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file-backed SQLite database.

    Each session gets its own connection, so concurrent sessions contend
    for the database the way separate requests do.
    """
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()
