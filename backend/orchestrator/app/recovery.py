"""Re-queue runs orphaned by a restart."""
from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import select, update

from ..db.models import BacktestRun, BacktestStatus, BacktestType
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .config import settings
from .cursor import is_checkpoint_stale
from .dispatcher import JobDispatcher
from .logging import bind_contextvars, clear_contextvars, get_logger
from .queue import JobOptions


logger = get_logger("orchestrator.recovery")

AUTO_RESUME_KEY = "autoResumeCount"
ORPHANED_STATUSES = (BacktestStatus.RUNNING, BacktestStatus.PAUSED)
RECOVERABLE_TYPES = (BacktestType.HISTORICAL, BacktestType.LIVE_REPLAY)


class BacktestRecoveryService:
    """Move RUNNING and PAUSED runs back to PENDING after the process restarts."""

    def __init__(
        self,
        *,
        dispatcher: JobDispatcher,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        max_auto_resume: Optional[int] = None,
        max_checkpoint_age: Optional[timedelta] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._session = SessionScope(session_factory_provider)
        self._max_auto_resume = (
            settings.lifecycle.max_auto_resume_attempts if max_auto_resume is None else max_auto_resume
        )
        self._max_checkpoint_age = max_checkpoint_age or timedelta(
            seconds=settings.lifecycle.max_checkpoint_age_seconds
        )

    async def recover_orphaned_runs(self) -> Dict[str, int]:
        async with self._session() as session:
            result = await session.execute(
                select(BacktestRun.id).where(
                    BacktestRun.status.in_(ORPHANED_STATUSES),
                    BacktestRun.type.in_(RECOVERABLE_TYPES),
                )
            )
            run_ids = list(result.scalars())

        summary = {"recovered": 0, "failed": 0}
        if not run_ids:
            logger.info("backtest_recovery_nothing_to_do")
            return summary

        logger.info("backtest_recovery_started", orphaned=len(run_ids))
        for run_id in run_ids:
            bind_contextvars(run_id=run_id)
            try:
                recovered = await self._recover(run_id)
            except Exception as exc:
                logger.exception("backtest_recovery_failed")
                await self._mark_failed(run_id, f"Recovery failed: {exc}")
                summary["failed"] += 1
                continue
            finally:
                clear_contextvars()
            summary["recovered" if recovered else "failed"] += 1

        logger.info("backtest_recovery_completed", **summary)
        return summary

    async def _recover(self, run_id: str) -> bool:
        async with self._session() as session:
            run = await session.get(BacktestRun, run_id)
            if run is None:
                return False
            snapshot = dict(run.config_snapshot or {})
            attempts = int(snapshot.get(AUTO_RESUME_KEY) or 0)
            if attempts >= self._max_auto_resume:
                logger.warning("backtest_recovery_exhausted", attempts=attempts)
                run.status = BacktestStatus.FAILED
                run.error_message = (
                    f"Exceeded maximum automatic recovery attempts ({self._max_auto_resume})"
                )
                await session.commit()
                return False

            if run.checkpoint_state is not None and is_checkpoint_stale(
                run.last_checkpoint_at, self._max_checkpoint_age
            ):
                logger.warning("backtest_recovery_checkpoint_cleared")
                run.checkpoint_state = None
                run.last_checkpoint_at = None
                run.processed_timestamp_count = 0

            snapshot[AUTO_RESUME_KEY] = attempts + 1
            run.config_snapshot = snapshot
            run.status = BacktestStatus.PENDING
            # Payload is validated before the new status is committed.
            self._dispatcher.build_payload(run)
            await session.commit()
            await session.refresh(run)

        # No consumer is running yet, so a job still marked active belongs to a dead process.
        if await self._dispatcher.discard(run, force=True):
            logger.info("backtest_recovery_removed_stale_job")
        queued = await self._dispatcher.dispatch(
            run, JobOptions(remove_on_complete=True, remove_on_fail=False)
        )
        if not queued:
            raise RuntimeError(f"Backtest {run.id} could not be re-enqueued")
        logger.info(
            "backtest_recovery_requeued",
            attempt=attempts + 1,
            has_checkpoint=run.checkpoint_state is not None,
        )
        return True

    async def _mark_failed(self, run_id: str, message: str) -> None:
        try:
            async with self._session() as session:
                await session.execute(
                    update(BacktestRun)
                    .where(BacktestRun.id == run_id)
                    .values(status=BacktestStatus.FAILED, error_message=message)
                )
                await session.commit()
        except Exception:
            logger.error("backtest_recovery_mark_failed_error", run_id=run_id, exc_info=True)


__all__ = ["AUTO_RESUME_KEY", "BacktestRecoveryService"]
