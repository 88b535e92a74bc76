"""Session helpers for request handlers and background services."""
from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .base import create_session, get_session_factory


SessionFactoryProvider = Callable[[], async_sessionmaker[AsyncSession]]


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session that is closed once the request has been served."""

    async with create_session() as session:
        yield session


class SessionScope:
    """Resolve the session factory on first use and open sessions from it.

    Services are constructed before the engine exists, so the factory is
    looked up lazily through *provider*.
    """

    def __init__(self, provider: SessionFactoryProvider = get_session_factory) -> None:
        self._provider = provider
        self._factory: Optional[async_sessionmaker[AsyncSession]] = None

    def factory(self) -> async_sessionmaker[AsyncSession]:
        if self._factory is None:
            self._factory = self._provider()
        return self._factory

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[AsyncSession]:
        async with self.factory()() as session:
            yield session


__all__ = ["SessionFactoryProvider", "SessionScope", "get_session"]
