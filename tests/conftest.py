"""Shared pytest fixtures for handoff tests.

Unit tests use the in-memory fakes from tests/fakes.py (same contracts as
RecordStore, SharedStore and StreamingTransport). Integration tests get
PostgreSQL in two modes:
1. TEST_DATABASE_* env vars present → connect to external PG (CI scenario)
2. Otherwise → testcontainers auto-starts a temporary PG container (local dev)

If neither works (no Docker), integration tests are skipped.
Safety: refuses to run against any database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.constants import DB_SCHEMA
from src.store.models import Base
from tests.fakes import FakeRecordStore, FakeSharedStore, RecordingStatusSink


@pytest.fixture
def record_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def shared_store() -> FakeSharedStore:
    return FakeSharedStore()


@pytest.fixture
def status_sink() -> RecordingStatusSink:
    return RecordingStatusSink()


# ── PostgreSQL (integration) ──


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to truncate a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    """Build async PG URL from TEST_DATABASE_* env vars, or return None."""
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "handoff_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def _pg_container():
    """Yields (url, container); container is None when using external PG."""
    url = _build_pg_url_from_env()
    if url is not None:
        yield url, None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="handoff_test")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL unavailable (no TEST_DATABASE_HOST, Docker failed: {e})")

    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    _validate_test_db_name(container.dbname)
    url = (
        f"postgresql+asyncpg://{container.username}:{container.password}"
        f"@{host}:{port}/{container.dbname}"
    )

    yield url, container

    container.stop()


@pytest.fixture(scope="session")
def pg_url(_pg_container) -> str:
    url, _ = _pg_container
    return url


@pytest_asyncio.fixture
async def db_engine(pg_url: str):
    """Engine with schema + tables; everything is dropped after the test."""
    engine = create_async_engine(pg_url, echo=False)

    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA}"))
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.execute(text(f"DROP SCHEMA IF EXISTS {DB_SCHEMA} CASCADE"))

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session_factory(db_engine) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    yield async_sessionmaker(db_engine, expire_on_commit=False)
