"""Key/value cache backends shared by pause flags and the status stream."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis


LOGGER = logging.getLogger("orchestrator.storage")


class CacheBackend:
    """Minimal cache interface used by the orchestrator."""

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def publish(self, channel: str, message: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """In-memory cache used when Redis isn't configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self.published: list[tuple[str, str]] = []

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at < asyncio.get_running_loop().time():
                self._store.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = asyncio.get_running_loop().time() + ttl
            self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def publish(self, channel: str, message: str) -> None:
        async with self._lock:
            self.published.append((channel, message))


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``."""

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    async def publish(self, channel: str, message: str) -> None:
        await self._client.publish(channel, message)

    async def close(self) -> None:
        await self._client.aclose()


def build_cache(redis_url: str | None) -> CacheBackend:
    if redis_url:
        try:
            return RedisCache(redis_url)
        except Exception:  # pragma: no cover - fallback when redis unavailable
            LOGGER.warning("redis cache initialisation failed", exc_info=True)
    return MemoryCache()


__all__ = ["CacheBackend", "MemoryCache", "RedisCache", "build_cache"]
