"""Worker-side state transitions and result persistence for backtest runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import update

from ..db.models import (
    BacktestPerformanceSnapshot,
    BacktestRun,
    BacktestSignal,
    BacktestStatus,
    SimulatedOrderFill,
)
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import CheckpointState, utcnow
from .logging import get_logger
from .stream import BacktestStream


logger = get_logger("orchestrator.results")

TERMINAL_STATUSES = (BacktestStatus.COMPLETED, BacktestStatus.CANCELLED)


@dataclass
class FinalMetrics:
    final_value: Optional[float] = None
    total_return: Optional[float] = None
    annualized_return: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    total_trades: Optional[int] = None
    winning_trades: Optional[int] = None
    win_rate: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def column_values(self) -> Dict[str, Any]:
        return {
            "final_value": self.final_value,
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "win_rate": self.win_rate,
            "performance_metrics": dict(self.extra),
        }


@dataclass
class RunResults:
    """Artifacts produced by a completed simulation.

    Signals, fills and snapshots are mappings of column name to value for the
    corresponding ORM model; ``backtest_id`` is filled in on persistence.
    """

    metrics: FinalMetrics = field(default_factory=FinalMetrics)
    signals: List[Mapping[str, Any]] = field(default_factory=list)
    fills: List[Mapping[str, Any]] = field(default_factory=list)
    snapshots: List[Mapping[str, Any]] = field(default_factory=list)


class RunRecorder:
    """Apply status changes that originate from workers and the watchdog."""

    def __init__(
        self,
        stream: BacktestStream,
        *,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
    ) -> None:
        self._stream = stream
        self._session = SessionScope(session_factory_provider)

    async def start(self, run_id: str) -> bool:
        """Claim a pending run. Returns ``False`` if it is no longer pending."""

        async with self._session() as session:
            result = await session.execute(
                update(BacktestRun)
                .where(BacktestRun.id == run_id, BacktestRun.status == BacktestStatus.PENDING)
                .values(status=BacktestStatus.RUNNING, error_message=None)
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        await self._stream.try_publish_status(run_id, "running")
        return True

    async def save_checkpoint(
        self,
        run_id: str,
        state: CheckpointState | Mapping[str, Any],
        processed: int,
        total: int,
    ) -> None:
        payload = state.to_dict() if isinstance(state, CheckpointState) else dict(state)
        async with self._session() as session:
            await session.execute(
                update(BacktestRun)
                .where(BacktestRun.id == run_id)
                .values(
                    checkpoint_state=payload,
                    processed_timestamp_count=processed,
                    total_timestamp_count=total,
                    last_checkpoint_at=utcnow(),
                )
            )
            await session.commit()

    async def heartbeat(self, run_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(BacktestRun).where(BacktestRun.id == run_id).values(last_checkpoint_at=utcnow())
            )
            await session.commit()

    async def persist_success(self, run_id: str, results: RunResults) -> bool:
        """Persist artifacts and metrics and mark the run completed in one transaction.

        Returns ``False`` without writing anything when the run left the
        RUNNING state in the meantime, e.g. because it was cancelled.
        """

        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    update(BacktestRun)
                    .where(BacktestRun.id == run_id, BacktestRun.status == BacktestStatus.RUNNING)
                    .values(
                        status=BacktestStatus.COMPLETED,
                        completed_at=utcnow(),
                        error_message=None,
                        **results.metrics.column_values(),
                    )
                )
                if result.rowcount != 1:
                    logger.warning("backtest_results_discarded", run_id=run_id)
                    return False
                session.add_all(BacktestSignal(backtest_id=run_id, **item) for item in results.signals)
                session.add_all(SimulatedOrderFill(backtest_id=run_id, **item) for item in results.fills)
                session.add_all(
                    BacktestPerformanceSnapshot(backtest_id=run_id, **item) for item in results.snapshots
                )
        logger.info("backtest_completed", run_id=run_id)
        await self._stream.try_publish_status(
            run_id,
            "completed",
            metadata={"totalReturn": results.metrics.total_return},
        )
        return True

    async def mark_failed(
        self,
        run_id: str,
        message: str,
        *,
        expected_status: Optional[BacktestStatus] = None,
    ) -> bool:
        """Fail the run unless it already finished.

        With ``expected_status`` the run is only failed while it is still in
        that state.
        """

        condition = (
            BacktestRun.status == expected_status
            if expected_status is not None
            else BacktestRun.status.not_in(TERMINAL_STATUSES)
        )
        async with self._session() as session:
            result = await session.execute(
                update(BacktestRun)
                .where(BacktestRun.id == run_id, condition)
                .values(status=BacktestStatus.FAILED, error_message=message)
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        logger.warning("backtest_failed", run_id=run_id, error=message)
        await self._stream.try_publish_status(run_id, "failed", message=message)
        return True

    async def mark_cancelled(self, run_id: str, reason: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(BacktestRun)
                .where(BacktestRun.id == run_id)
                .values(status=BacktestStatus.CANCELLED, error_message=reason)
            )
            await session.commit()
        await self._stream.try_publish_status(run_id, "cancelled", message=reason)

    async def mark_paused(
        self,
        run_id: str,
        checkpoint: Optional[CheckpointState] = None,
        *,
        processed: Optional[int] = None,
        total: Optional[int] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": BacktestStatus.PAUSED}
        if checkpoint is not None:
            values["checkpoint_state"] = checkpoint.to_dict()
            values["last_checkpoint_at"] = utcnow()
        if processed is not None:
            values["processed_timestamp_count"] = processed
        if total is not None:
            values["total_timestamp_count"] = total
        async with self._session() as session:
            result = await session.execute(
                update(BacktestRun)
                .where(BacktestRun.id == run_id, BacktestRun.status == BacktestStatus.RUNNING)
                .values(**values)
            )
            await session.commit()
        if result.rowcount != 1:
            return False
        await self._stream.try_publish_status(run_id, "paused")
        return True


__all__ = ["FinalMetrics", "RunRecorder", "RunResults", "TERMINAL_STATUSES"]
