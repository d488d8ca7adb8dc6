"""Fixtures for integration tests against a real SQLite database."""

from typing import AsyncGenerator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from licsync.db import create_tables, make_session_factory
from licsync.stores import Stores
from licsync.stores.sql import create_sql_stores


# =========================
# Database Fixtures
# =========================


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the schema created.

    A file is used instead of ``:memory:`` so every pooled connection sees
    the same database.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'licsync.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_stores(engine) -> Stores:
    return create_sql_stores(make_session_factory(engine))
