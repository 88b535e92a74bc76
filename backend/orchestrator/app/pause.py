"""Out-of-band pause requests for live replay runs."""
from __future__ import annotations

from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("orchestrator.pause")

PAUSE_KEY_TEMPLATE = "backtest:pause:{run_id}"


class PauseFlagService:
    """Store pause requests that workers poll at checkpoint boundaries."""

    def __init__(self, cache: CacheBackend, *, ttl_seconds: int = 3600) -> None:
        self._cache = cache
        self._ttl = ttl_seconds

    @staticmethod
    def key_for(run_id: str) -> str:
        return PAUSE_KEY_TEMPLATE.format(run_id=run_id)

    async def set_pause_flag(self, run_id: str) -> None:
        """Raise when the flag cannot be stored so the caller can report it."""

        try:
            await self._cache.set(self.key_for(run_id), b"1", ttl=self._ttl)
        except Exception:
            logger.error("pause_flag_set_failed", run_id=run_id, exc_info=True)
            raise

    async def is_pause_requested(self, run_id: str) -> bool:
        try:
            return await self._cache.exists(self.key_for(run_id))
        except Exception:
            logger.warning("pause_flag_check_failed", run_id=run_id, exc_info=True)
            return False

    async def clear_pause_flag(self, run_id: str) -> None:
        try:
            await self._cache.delete(self.key_for(run_id))
        except Exception:
            logger.warning("pause_flag_clear_failed", run_id=run_id, exc_info=True)


__all__ = ["PAUSE_KEY_TEMPLATE", "PauseFlagService"]
