"""Routing of backtest runs onto execution queues and shutdown draining."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..db.models import BacktestRun, BacktestType
from .errors import UnroutableRunType
from .queue import JobOptions, JobState, TaskQueue


LOGGER = logging.getLogger("orchestrator.dispatcher")

EXECUTE_BACKTEST_JOB = "execute-backtest"
DRAIN_LOG_EVERY = 5


class JobDispatcher:
    """Send runs to the queue matching their type."""

    def __init__(
        self,
        routes: Mapping[BacktestType, TaskQueue],
        *,
        extra_queues: Iterable[TaskQueue] = (),
        drain_timeout: float = 25.0,
        poll_interval: float = 1.0,
    ) -> None:
        self._routes: Dict[BacktestType, TaskQueue] = dict(routes)
        self._queues: Dict[str, TaskQueue] = {}
        for queue in [*self._routes.values(), *extra_queues]:
            self._queues.setdefault(queue.name, queue)
        self._drain_timeout = drain_timeout
        self._poll_interval = poll_interval

    @property
    def queues(self) -> List[TaskQueue]:
        return list(self._queues.values())

    def get_queue(self, name: str) -> TaskQueue:
        try:
            return self._queues[name]
        except KeyError as exc:
            raise KeyError(f"Unknown queue '{name}'") from exc

    def can_route(self, run_type: BacktestType | str) -> bool:
        try:
            return BacktestType(run_type) in self._routes
        except ValueError:
            return False

    def queue_for(self, run_type: BacktestType | str) -> TaskQueue:
        try:
            return self._routes[BacktestType(run_type)]
        except (KeyError, ValueError) as exc:
            raise UnroutableRunType(f"No execution queue for backtest type {run_type}") from exc

    @staticmethod
    def build_payload(run: BacktestRun) -> Dict[str, Any]:
        snapshot = run.config_snapshot or {}
        dataset_id = run.market_data_set_id or (snapshot.get("dataset") or {}).get("id")
        algorithm_id = run.algorithm_id or (snapshot.get("algorithm") or {}).get("id")
        if not dataset_id:
            raise ValueError(f"Backtest {run.id} is missing a dataset reference")
        if not algorithm_id:
            raise ValueError(f"Backtest {run.id} is missing an algorithm reference")
        return {
            "runId": run.id,
            "accountId": run.account_id,
            "datasetId": dataset_id,
            "algorithmId": algorithm_id,
            "deterministicSeed": run.deterministic_seed,
            "mode": BacktestType(run.type).value,
        }

    async def dispatch(self, run: BacktestRun, options: Optional[JobOptions] = None) -> bool:
        """Enqueue *run* using its id as the job id.

        Returns ``False`` when the queue already holds a job for the run.
        """

        queue = self.queue_for(run.type)
        payload = self.build_payload(run)
        added = await queue.enqueue(
            run.id,
            EXECUTE_BACKTEST_JOB,
            payload,
            options or JobOptions(remove_on_complete=True),
        )
        if not added:
            LOGGER.info("backtest_job_already_queued", extra={"run_id": run.id, "queue": queue.name})
        return added

    async def discard(self, run: BacktestRun, *, force: bool = False) -> bool:
        queue = self.queue_for(run.type)
        return await queue.remove(run.id, force=force)

    async def in_flight(self, run: BacktestRun) -> bool:
        """Return whether a consumer is still processing the job for *run*."""

        job = await self.queue_for(run.type).get(run.id)
        return job is not None and job.state is JobState.ACTIVE

    async def start(self) -> Dict[str, int]:
        """Undo the shutdown pause and hand stalled jobs back to the queues.

        Must run before this process starts consuming. Returns the number of
        released jobs per queue.
        """

        released: Dict[str, int] = {}
        for queue in self.queues:
            await queue.resume()
            stalled = await queue.release_stalled()
            released[queue.name] = len(stalled)
            if stalled:
                LOGGER.warning("queue_stalled_jobs_released", extra={"queue": queue.name, "jobs": stalled})
        LOGGER.info("queues_started", extra={"released": released})
        return released

    async def queue_stats(self, name: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        queues = [self.get_queue(name)] if name else self.queues
        return {queue.name: await queue.counts() for queue in queues}

    async def drain(
        self,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Dict[str, int]:
        """Pause every queue and wait for in-flight jobs to finish.

        Returns the active job count per queue when draining stopped.
        """

        deadline_after = self._drain_timeout if timeout is None else timeout
        interval = self._poll_interval if poll_interval is None else poll_interval

        for queue in self.queues:
            try:
                await queue.pause()
            except Exception:
                LOGGER.warning("queue_pause_failed", extra={"queue": queue.name}, exc_info=True)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + deadline_after
        iteration = 0
        while True:
            active = await self._active_counts()
            if not any(active.values()):
                LOGGER.info("queue_drain_completed", extra={"iterations": iteration})
                return active
            if loop.time() >= deadline:
                busy = ", ".join(f"{name}: {count}" for name, count in active.items() if count)
                LOGGER.warning("queue_drain_timeout", extra={"remaining": busy})
                return active
            if iteration % DRAIN_LOG_EVERY == 0:
                LOGGER.info("queue_drain_waiting", extra={"active": dict(active)})
            iteration += 1
            await asyncio.sleep(interval)

    async def _active_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for queue in self.queues:
            try:
                counts[queue.name] = await queue.active_count()
            except Exception:
                LOGGER.warning("queue_active_count_failed", extra={"queue": queue.name}, exc_info=True)
                counts[queue.name] = 0
        return counts


__all__ = ["EXECUTE_BACKTEST_JOB", "JobDispatcher"]
