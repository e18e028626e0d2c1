"""Pytest fixtures for integration tests.

These tests need a disposable PostgreSQL database, passed as
TEST_DATABASE_URL (postgresql+asyncpg://...). The schema is dropped and
recreated for every test.
"""
import os
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from catalog_import.db.base import Base
from catalog_import.db.repository import SqlCatalogRepository
from catalog_import.db.storage_backend import lock_catalog_writes

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


def pytest_collection_modifyitems(config, items):
    if TEST_DATABASE_URL:
        return
    skip = pytest.mark.skip(reason="TEST_DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
async def pg_engine():
    """Engine bound to a freshly created schema."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def pg_session_maker(pg_engine):
    return async_sessionmaker(pg_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def pg_transaction(pg_session_maker):
    """Transaction factory for ImportPipeline / BatchPersistenceEngine."""

    @asynccontextmanager
    async def transaction():
        async with pg_session_maker() as session:
            async with session.begin():
                await lock_catalog_writes(session)
                yield SqlCatalogRepository(session)

    return transaction
