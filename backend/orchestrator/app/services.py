"""Construction and teardown of the orchestrator service graph."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from ..db.models import BacktestType
from .config import Settings, settings as default_settings
from .dataset_validator import DatasetValidator
from .default_dataset import DefaultDatasetCache, DefaultDatasetProvider
from .dispatcher import JobDispatcher
from .lifecycle import BacktestLifecycleService
from .orchestration import BacktestOrchestrationService
from .pause import PauseFlagService
from .processor import BacktestJobProcessor, SimulationEngine
from .promotion import PromotionEngine
from .queue import TaskQueue, build_queue
from .recovery import BacktestRecoveryService
from .results import RunRecorder
from .scheduler import OrchestrationScheduler, PeriodicRunner
from .storage import CacheBackend, build_cache
from .stream import BacktestStream
from .watchdog import StaleRunWatchdog
from .worker import QueueWorker


LOGGER = logging.getLogger("orchestrator.services")


@dataclass
class ServiceContainer:
    """Every long-lived collaborator the HTTP layer and background jobs share."""

    config: Settings
    cache: CacheBackend
    historical_queue: TaskQueue
    replay_queue: TaskQueue
    orchestration_queue: TaskQueue
    evaluation_queue: TaskQueue
    dispatcher: JobDispatcher
    stream: BacktestStream
    pause_flags: PauseFlagService
    recorder: RunRecorder
    lifecycle: BacktestLifecycleService
    recovery: BacktestRecoveryService
    default_datasets: DefaultDatasetProvider
    orchestration: BacktestOrchestrationService
    scheduler: OrchestrationScheduler
    watchdog: StaleRunWatchdog
    promotion: PromotionEngine
    processor: Optional[BacktestJobProcessor] = None
    runner: PeriodicRunner = field(default_factory=PeriodicRunner)
    workers: List[QueueWorker] = field(default_factory=list)

    def build_workers(self) -> List[QueueWorker]:
        """Create consumers for every queue that has a handler in this process."""

        poll = self.config.queues.worker_poll_interval_seconds
        workers = [
            QueueWorker(self.orchestration_queue, self.scheduler.process_orchestration_job, poll_interval=poll),
            QueueWorker(self.evaluation_queue, self.promotion.handle_evaluation_job, poll_interval=poll),
        ]
        if self.processor is not None:
            workers.extend(
                QueueWorker(queue, self.processor.handle, poll_interval=poll)
                for queue in (self.historical_queue, self.replay_queue)
            )
        return workers

    def schedule_periodic_jobs(self) -> PeriodicRunner:
        scheduler_config = self.config.scheduler
        self.runner.add_daily(
            "daily-orchestration",
            scheduler_config.daily_hour_utc,
            scheduler_config.daily_minute_utc,
            self.scheduler.schedule_orchestration,
        )
        self.runner.add_interval(
            "stale-watchdog", scheduler_config.watchdog_interval_seconds, self.watchdog.sweep
        )
        self.runner.add_interval(
            "strategy-evaluation",
            scheduler_config.evaluation_interval_seconds,
            self.promotion.schedule_evaluations,
        )
        return self.runner

    async def start_background(self) -> None:
        self.schedule_periodic_jobs().start()
        self.workers = self.build_workers()
        for worker in self.workers:
            worker.start()

    async def startup(self, *, background: bool = False) -> Dict[str, int]:
        """Reopen the queues paused by the previous shutdown, then recover orphaned runs."""

        await self.dispatcher.start()
        await self.promotion.ensure_risk_pools()
        summary = await self.recovery.recover_orphaned_runs()
        LOGGER.info("startup_recovery_completed", extra=summary)
        if background:
            await self.start_background()
        return summary

    async def shutdown(self) -> None:
        """Drain the queues, then stop consumers and release connections."""

        await self.dispatcher.drain()
        for worker in self.workers:
            await worker.close()
        self.workers.clear()
        await self.runner.close()
        for queue in self.dispatcher.queues:
            try:
                await queue.close()
            except Exception:
                LOGGER.warning("queue_close_failed", extra={"queue": queue.name}, exc_info=True)
        await self.cache.close()


def build_services(
    config: Optional[Settings] = None,
    *,
    cache: Optional[CacheBackend] = None,
    simulation_engine: Optional[SimulationEngine] = None,
) -> ServiceContainer:
    config = config or default_settings
    redis_url = config.redis_url
    cache = cache or build_cache(redis_url)
    queue_config = config.queues

    def _queue(name: str) -> TaskQueue:
        return build_queue(name, redis_url, prefix=queue_config.key_prefix)

    historical = _queue(queue_config.historical_queue)
    replay = _queue(queue_config.replay_queue)
    orchestration_queue = _queue(queue_config.orchestration_queue)
    evaluation_queue = _queue(queue_config.evaluation_queue)

    dispatcher = JobDispatcher(
        {BacktestType.HISTORICAL: historical, BacktestType.LIVE_REPLAY: replay},
        extra_queues=(orchestration_queue, evaluation_queue),
        drain_timeout=queue_config.drain_timeout_seconds,
        poll_interval=queue_config.drain_poll_interval_seconds,
    )
    lifecycle_config = config.lifecycle
    max_checkpoint_age = timedelta(seconds=lifecycle_config.max_checkpoint_age_seconds)
    stream = BacktestStream(cache, buffer_size=lifecycle_config.stream_buffer_size)
    pause_flags = PauseFlagService(cache, ttl_seconds=lifecycle_config.pause_flag_ttl_seconds)
    recorder = RunRecorder(stream)
    lifecycle = BacktestLifecycleService(
        dispatcher=dispatcher,
        stream=stream,
        pause_flags=pause_flags,
        recorder=recorder,
        validator=DatasetValidator(),
        max_checkpoint_age=max_checkpoint_age,
    )
    recovery = BacktestRecoveryService(
        dispatcher=dispatcher,
        max_auto_resume=lifecycle_config.max_auto_resume_attempts,
        max_checkpoint_age=max_checkpoint_age,
    )

    scheduler_config = config.scheduler
    default_datasets = DefaultDatasetProvider(
        cache=DefaultDatasetCache(ttl_seconds=scheduler_config.default_dataset_cache_ttl_seconds)
    )
    orchestration = BacktestOrchestrationService(lifecycle=lifecycle)
    scheduler = OrchestrationScheduler(
        orchestration=orchestration,
        queue=orchestration_queue,
        default_datasets=default_datasets,
        stagger_seconds=scheduler_config.stagger_interval_seconds,
    )
    watchdog = StaleRunWatchdog(
        recorder=recorder,
        thresholds_minutes={
            BacktestType.HISTORICAL: scheduler_config.historical_stale_minutes,
            BacktestType.LIVE_REPLAY: scheduler_config.replay_stale_minutes,
        },
        boot_grace_seconds=scheduler_config.boot_grace_seconds,
    )
    promotion = PromotionEngine(queue=evaluation_queue, default_capacity=config.promotion.pool_capacity)
    processor = None
    if simulation_engine is not None:
        processor = BacktestJobProcessor(recorder=recorder, pause_flags=pause_flags, engine=simulation_engine)

    return ServiceContainer(
        config=config,
        cache=cache,
        historical_queue=historical,
        replay_queue=replay,
        orchestration_queue=orchestration_queue,
        evaluation_queue=evaluation_queue,
        dispatcher=dispatcher,
        stream=stream,
        pause_flags=pause_flags,
        recorder=recorder,
        lifecycle=lifecycle,
        recovery=recovery,
        default_datasets=default_datasets,
        orchestration=orchestration,
        scheduler=scheduler,
        watchdog=watchdog,
        promotion=promotion,
        processor=processor,
    )


__all__ = ["ServiceContainer", "build_services"]
