"""Alembic environment configuration for the orchestrator service."""
from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backend.orchestrator.app.config import settings
from backend.orchestrator.db import models  # noqa: F401  registers the tables
from backend.orchestrator.db.base import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata
SCHEMA = settings.database_schema
VERSION_TABLE = "alembic_version"


def _get_database_url() -> str:
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    return settings.database_url


def _is_postgres(url: str) -> bool:
    return url.startswith("postgresql")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""

    url = _get_database_url()
    configure_kwargs: dict[str, object] = {
        "url": url,
        "target_metadata": target_metadata,
        "literal_binds": True,
        "dialect_opts": {"paramstyle": "named"},
        "compare_type": True,
        "compare_server_default": True,
        "version_table": VERSION_TABLE,
    }

    if SCHEMA and _is_postgres(url):
        configure_kwargs["version_table_schema"] = SCHEMA
        configure_kwargs["include_schemas"] = True

    context.configure(**configure_kwargs)

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""

    url = _get_database_url()
    connectable: AsyncEngine = create_async_engine(url, poolclass=pool.NullPool)

    async def _run_async_migrations() -> None:
        async with connectable.connect() as connection:
            await connection.run_sync(_run_sync_migrations)
            await connection.commit()
        await connectable.dispose()

    asyncio.run(_run_async_migrations())


def _run_sync_migrations(sync_conn) -> None:
    postgres = sync_conn.dialect.name == "postgresql"

    if SCHEMA and postgres:
        escaped_schema = SCHEMA.replace('"', '""')
        sync_conn.exec_driver_sql(f'CREATE SCHEMA IF NOT EXISTS "{escaped_schema}"')
        sync_conn.exec_driver_sql(f'SET search_path TO "{escaped_schema}"')

    configure_kwargs: dict[str, object] = {
        "connection": sync_conn,
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "version_table": VERSION_TABLE,
    }

    if SCHEMA and postgres:
        configure_kwargs["version_table_schema"] = SCHEMA
        configure_kwargs["include_schemas"] = True

    context.configure(**configure_kwargs)

    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
