"""Periodic sweep that fails runs which stopped reporting progress."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_, select

from ..db.models import BacktestRun, BacktestStatus, BacktestType
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import utcnow
from .results import RunRecorder


LOGGER = logging.getLogger("orchestrator.watchdog")

DEFAULT_THRESHOLDS: Dict[BacktestType, int] = {
    BacktestType.HISTORICAL: 90,
    BacktestType.LIVE_REPLAY: 120,
}


def stale_message(threshold_minutes: int, checkpoint_state: Optional[dict]) -> str:
    index = (checkpoint_state or {}).get("lastProcessedIndex")
    return (
        f"Stale: no heartbeat progress for {threshold_minutes} min. "
        f"Last index: {index if index is not None else 'unknown'}"
    )


class StaleRunWatchdog:
    """Fail RUNNING runs whose heartbeat is older than the threshold for their type."""

    def __init__(
        self,
        *,
        recorder: RunRecorder,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        thresholds_minutes: Optional[Dict[BacktestType, int]] = None,
        boot_grace_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._recorder = recorder
        self._session = SessionScope(session_factory_provider)
        self._thresholds = dict(thresholds_minutes or DEFAULT_THRESHOLDS)
        self._boot_grace = boot_grace_seconds
        self._clock = clock
        self._booted_at = clock()

    def in_boot_grace(self) -> bool:
        return self._clock() - self._booted_at < self._boot_grace

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        summary = {"checked": 0, "failed": 0, "errors": 0}
        if self.in_boot_grace():
            LOGGER.debug(
                "stale_watchdog_boot_grace",
                extra={"uptime_seconds": round(self._clock() - self._booted_at)},
            )
            return summary

        current = now or utcnow()
        stale: List[Tuple[BacktestRun, int]] = []
        for run_type, minutes in self._thresholds.items():
            try:
                runs = await self._find_stale(run_type, current - timedelta(minutes=minutes))
            except Exception:
                LOGGER.error(
                    "stale_watchdog_query_failed",
                    extra={"run_type": run_type.value},
                    exc_info=True,
                )
                summary["errors"] += 1
                continue
            stale.extend((run, minutes) for run in runs)
        summary["checked"] = len(stale)

        for run, minutes in stale:
            LOGGER.warning(
                "stale_backtest_detected",
                extra={
                    "run_id": run.id,
                    "run_type": run.type.value,
                    "last_checkpoint_at": str(run.last_checkpoint_at),
                    "processed": run.processed_timestamp_count,
                    "total": run.total_timestamp_count,
                },
            )
            try:
                if await self._recorder.mark_failed(
                    run.id,
                    stale_message(minutes, run.checkpoint_state),
                    expected_status=BacktestStatus.RUNNING,
                ):
                    summary["failed"] += 1
            except Exception:
                LOGGER.error("stale_backtest_mark_failed_error", extra={"run_id": run.id}, exc_info=True)
                summary["errors"] += 1

        if stale or summary["errors"]:
            LOGGER.info("stale_watchdog_completed", extra=summary)
        return summary

    async def _find_stale(self, run_type: BacktestType, cutoff: datetime) -> List[BacktestRun]:
        async with self._session() as session:
            result = await session.execute(
                select(BacktestRun).where(
                    BacktestRun.status == BacktestStatus.RUNNING,
                    BacktestRun.type == run_type,
                    or_(
                        BacktestRun.last_checkpoint_at < cutoff,
                        and_(BacktestRun.last_checkpoint_at.is_(None), BacktestRun.updated_at < cutoff),
                    ),
                )
            )
            return list(result.scalars())


__all__ = ["DEFAULT_THRESHOLDS", "StaleRunWatchdog", "stale_message"]
