"""Declarative base and the async engine shared by the API, the workers and recovery."""
from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# Constraint names must match the ones in the alembic revisions.
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

DEFAULT_SCHEMA = "public"


class Base(DeclarativeBase):
    """Base class for the orchestrator tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str, *, schema: str | None = None) -> Dict[str, Any]:
    """Return driver specific keyword arguments for :func:`create_async_engine`.

    SQLite gets none. PostgreSQL connections are pinged on checkout and, for a
    non-default schema on asyncpg, open with ``search_path`` set to it so the
    services see the tables the migrations created there.
    """

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        return {}
    options: Dict[str, Any] = {"pool_pre_ping": True}
    if schema and schema != DEFAULT_SCHEMA and url.get_driver_name() == "asyncpg":
        options["connect_args"] = {"server_settings": {"search_path": schema}}
    return options


def create_engine(database_url: str, *, echo: bool = False, schema: str | None = None) -> AsyncEngine:
    """Create the process-wide engine and its session factory.

    Later calls return the existing engine until :func:`dispose_engine` runs.
    Sessions keep loaded attributes after commit because services hand ORM
    rows to serializers once their session is closed.
    """

    global _engine, _session_factory

    if _engine is None:
        _engine = create_async_engine(database_url, echo=echo, **engine_options(database_url, schema=schema))
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database engine has not been initialised")
    return _session_factory


def create_session() -> AsyncSession:
    return get_session_factory()()


async def dispose_engine() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "Base",
    "DEFAULT_SCHEMA",
    "create_engine",
    "create_session",
    "dispose_engine",
    "engine_options",
    "get_session_factory",
]
