"""Status and log publication for backtest runs."""
from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from .logging import get_logger
from .storage import CacheBackend


logger = get_logger("orchestrator.stream")


class BacktestStream:
    """Publish run events to ``backtest:{id}:status`` and ``backtest:{id}:log`` channels.

    The most recent events are also kept in a bounded buffer so that callers
    without a subscription can inspect what was emitted.
    """

    def __init__(self, cache: CacheBackend, *, buffer_size: int = 500) -> None:
        self._cache = cache
        self._events: Deque[Dict[str, Any]] = deque(maxlen=buffer_size)

    @property
    def events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    def events_for(self, run_id: str) -> List[Dict[str, Any]]:
        return [event for event in self._events if event["runId"] == run_id]

    async def publish_status(
        self,
        run_id: str,
        status: str,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._publish(
            f"backtest:{run_id}:status",
            {
                "kind": "status",
                "runId": run_id,
                "status": status,
                "message": message,
                "metadata": metadata or {},
            },
        )

    async def publish_log(
        self,
        run_id: str,
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._publish(
            f"backtest:{run_id}:log",
            {
                "kind": "log",
                "runId": run_id,
                "level": level,
                "message": message,
                "context": context or {},
            },
        )

    async def try_publish_status(self, run_id: str, status: str, **kwargs: Any) -> bool:
        """Publish a status event, logging instead of raising on failure."""

        try:
            await self.publish_status(run_id, status, **kwargs)
        except Exception as exc:
            logger.warning("backtest_stream_status_failed", run_id=run_id, status=status, error=str(exc))
            return False
        return True

    async def try_publish_log(self, run_id: str, level: str, message: str, **kwargs: Any) -> bool:
        try:
            await self.publish_log(run_id, level, message, **kwargs)
        except Exception as exc:
            logger.warning("backtest_stream_log_failed", run_id=run_id, error=str(exc))
            return False
        return True

    async def _publish(self, channel: str, event: Dict[str, Any]) -> None:
        event["timestamp"] = datetime.now(timezone.utc).isoformat()
        self._events.append(event)
        await self._cache.publish(channel, json.dumps(event, default=str))
        logger.debug("backtest_stream_published", channel=channel, kind=event["kind"])


__all__ = ["BacktestStream"]
