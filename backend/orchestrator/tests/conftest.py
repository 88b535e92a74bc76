"""Common test fixtures for orchestrator unit tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.sql.elements import TextClause

from backend.orchestrator.app.config import SchedulerSettings, Settings, StorageSettings
from backend.orchestrator.app.main import create_app
from backend.orchestrator.app.services import ServiceContainer, build_services
from backend.orchestrator.app.storage import MemoryCache
from backend.orchestrator.db import models as db_models  # noqa: F401  registers the tables
from backend.orchestrator.db.base import Base, create_engine, create_session, dispose_engine


def _patch_jsonb(metadata: sa.MetaData) -> None:
    for table in metadata.tables.values():
        for column in table.columns:
            if column.type.__class__.__name__ == "JSONB":
                column.type = sa.JSON(none_as_null=column.type.none_as_null)


def _normalise_defaults(metadata: sa.MetaData) -> None:
    for table in metadata.tables.values():
        for column in table.columns:
            default = column.server_default
            if default is None:
                continue
            clause = getattr(default, "arg", None)
            if isinstance(clause, TextClause) and "::jsonb" in clause.text:
                default.arg = sa.text(clause.text.replace("::jsonb", ""))


_normalise_defaults(Base.metadata)
_patch_jsonb(Base.metadata)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.sqlite3'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Initialise the global async engine with a fresh schema for each test."""

    engine = create_engine(db_url, echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await dispose_engine()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def test_settings(db_url: str) -> Settings:
    return Settings(
        storage=StorageSettings(database_url=db_url, redis_url=None),
        scheduler=SchedulerSettings(enabled=False, boot_grace_seconds=0),
    )


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest_asyncio.fixture
async def services(
    db_engine: AsyncEngine, test_settings: Settings, cache: MemoryCache
) -> AsyncIterator[ServiceContainer]:
    container = build_services(test_settings, cache=cache)
    try:
        yield container
    finally:
        await container.shutdown()


@pytest.fixture
def app(services: ServiceContainer):
    """Create a FastAPI application wired to the per-test services."""

    return create_app(services=services)


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client
