"""Daily orchestration scheduling and the periodic task runner."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cursor import ensure_utc, utcnow
from .default_dataset import DefaultDatasetProvider
from .orchestration import BacktestOrchestrationService
from .queue import JobOptions, QueueJob, TaskQueue
from .risk_levels import DEFAULT_RISK_LEVEL, STAGGER_INTERVAL_SECONDS


LOGGER = logging.getLogger("orchestrator.scheduler")

ORCHESTRATE_ACCOUNT_JOB = "orchestrate-user"
ORCHESTRATION_ATTEMPTS = 3
ORCHESTRATION_BACKOFF_SECONDS = 60.0
ORCHESTRATION_KEEP_FAILED = 50

PeriodicJob = Callable[[], Awaitable[Any]]


def seconds_until_daily(hour: int, minute: int, now: Optional[datetime] = None) -> float:
    """Seconds from *now* until the next ``hour:minute`` UTC."""

    current = ensure_utc(now) or utcnow()
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return (target - current).total_seconds()


@dataclass
class _Schedule:
    name: str
    job: PeriodicJob
    interval: Optional[float] = None
    daily_at: Optional[tuple[int, int]] = None
    initial_delay: float = 0.0

    def next_delay(self, first: bool) -> float:
        if self.daily_at is not None:
            return seconds_until_daily(*self.daily_at)
        if first:
            return self.initial_delay
        return float(self.interval or 0)


class PeriodicRunner:
    """Run coroutines on fixed intervals or at a daily wall-clock time."""

    def __init__(self) -> None:
        self._schedules: List[_Schedule] = []
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def add_interval(self, name: str, seconds: float, job: PeriodicJob, *, initial_delay: Optional[float] = None) -> None:
        self._schedules.append(
            _Schedule(
                name=name,
                job=job,
                interval=seconds,
                initial_delay=seconds if initial_delay is None else initial_delay,
            )
        )

    def add_daily(self, name: str, hour: int, minute: int, job: PeriodicJob) -> None:
        self._schedules.append(_Schedule(name=name, job=job, daily_at=(hour, minute)))

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(schedule), name=f"periodic-{schedule.name}")
            for schedule in self._schedules
        ]
        LOGGER.info("periodic_runner_started", extra={"jobs": [item.name for item in self._schedules]})

    async def close(self) -> None:
        if not self._tasks:
            return
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _loop(self, schedule: _Schedule) -> None:
        first = True
        while True:
            await asyncio.sleep(schedule.next_delay(first))
            first = False
            try:
                await schedule.job()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("periodic_job_failed", extra={"job": schedule.name})


class OrchestrationScheduler:
    """Queue per-account orchestration jobs and process them on the worker side."""

    def __init__(
        self,
        *,
        orchestration: BacktestOrchestrationService,
        queue: TaskQueue,
        default_datasets: Optional[DefaultDatasetProvider] = None,
        stagger_seconds: float = STAGGER_INTERVAL_SECONDS,
    ) -> None:
        self._orchestration = orchestration
        self._queue = queue
        self._default_datasets = default_datasets
        self._stagger = stagger_seconds

    @staticmethod
    def _job_options(delay: float = 0.0) -> JobOptions:
        return JobOptions(
            delay=delay,
            attempts=ORCHESTRATION_ATTEMPTS,
            backoff_delay=ORCHESTRATION_BACKOFF_SECONDS,
            remove_on_complete=True,
            remove_on_fail=ORCHESTRATION_KEEP_FAILED,
        )

    async def _enqueue(self, account_id: str, risk_level: int, delay: float) -> bool:
        scheduled_at = utcnow().isoformat()
        return await self._queue.enqueue(
            f"{ORCHESTRATE_ACCOUNT_JOB}:{account_id}:{scheduled_at}",
            ORCHESTRATE_ACCOUNT_JOB,
            {"accountId": account_id, "scheduledAt": scheduled_at, "riskLevel": risk_level},
            self._job_options(delay),
        )

    async def schedule_orchestration(self) -> int:
        """Queue one staggered job per eligible account. Returns the number queued."""

        LOGGER.info("orchestration_schedule_started")
        if self._default_datasets is not None:
            try:
                await self._default_datasets.ensure_default_dataset()
            except Exception:
                LOGGER.exception("orchestration_default_dataset_failed")

        queued = 0
        try:
            accounts = await self._orchestration.get_eligible_accounts()
            if not accounts:
                LOGGER.info("orchestration_schedule_empty")
                return 0
            for index, account in enumerate(accounts):
                risk_level = account.risk_level if account.risk_level is not None else DEFAULT_RISK_LEVEL
                if await self._enqueue(account.id, risk_level, index * self._stagger):
                    queued += 1
            LOGGER.info("orchestration_schedule_queued", extra={"queued": queued})
        except Exception:
            LOGGER.exception("orchestration_schedule_failed")
        return queued

    async def trigger_manual_orchestration(self, account_id: Optional[str] = None) -> Dict[str, int]:
        LOGGER.info("orchestration_manual_trigger", extra={"account_id": account_id})
        if account_id:
            # The account's own level is resolved when the job runs.
            await self._enqueue(account_id, DEFAULT_RISK_LEVEL, 0.0)
            return {"queued": 1}
        queued = await self.schedule_orchestration()
        return {"queued": queued}

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self._queue.counts()

    async def process_orchestration_job(self, job: QueueJob) -> Dict[str, Any]:
        return await self._orchestration.process_orchestration_job(job.payload)


__all__ = [
    "ORCHESTRATE_ACCOUNT_JOB",
    "OrchestrationScheduler",
    "PeriodicRunner",
    "seconds_until_daily",
]
