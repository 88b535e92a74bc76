"""Worker-side execution of ``execute-backtest`` jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from ..db.models import BacktestRun, BacktestStatus, BacktestType
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import CheckpointState
from .logging import bind_contextvars, clear_contextvars, get_logger
from .pause import PauseFlagService
from .queue import QueueJob
from .results import RunRecorder, RunResults
from .slippage import SlippageConfig


logger = get_logger("orchestrator.processor")


@dataclass
class SimulationContext:
    """Everything the simulation engine receives for one run."""

    run_id: str
    run_type: BacktestType
    deterministic_seed: str
    config_snapshot: Dict[str, Any]
    slippage: SlippageConfig
    checkpoint: Optional[CheckpointState]
    report_checkpoint: Callable[[CheckpointState, int, int], Awaitable[None]]
    should_pause: Callable[[], Awaitable[bool]]
    heartbeat: Callable[[], Awaitable[None]]


@dataclass
class SimulationResult:
    """Outcome of :meth:`SimulationEngine.run`.

    A paused simulation carries the checkpoint to resume from; a finished one
    carries its artifacts and final metrics.
    """

    paused: bool = False
    checkpoint: Optional[CheckpointState] = None
    processed: Optional[int] = None
    total: Optional[int] = None
    results: RunResults = field(default_factory=RunResults)


class SimulationEngine(Protocol):
    async def run(self, context: SimulationContext) -> SimulationResult:  # pragma: no cover - protocol
        ...


class BacktestJobProcessor:
    """Drive a queued run through the simulation engine and record the outcome."""

    def __init__(
        self,
        *,
        recorder: RunRecorder,
        pause_flags: PauseFlagService,
        engine: SimulationEngine,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
    ) -> None:
        self._recorder = recorder
        self._pause_flags = pause_flags
        self._engine = engine
        self._session = SessionScope(session_factory_provider)

    async def handle(self, job: QueueJob) -> None:
        bind_contextvars(run_id=job.payload.get("runId"), job_id=job.id)
        try:
            await self.process(job.payload)
        finally:
            clear_contextvars()

    async def process(self, payload: Mapping[str, Any]) -> str:
        """Run the job and return ``completed``, ``paused``, ``discarded`` or ``skipped``."""

        run_id = payload.get("runId")
        if not run_id:
            raise ValueError("Backtest job payload is missing runId")

        async with self._session() as session:
            run = await session.get(BacktestRun, run_id)
        if run is None:
            logger.warning("backtest_job_run_missing", run_id=run_id)
            return "skipped"
        if run.status != BacktestStatus.PENDING:
            logger.warning("backtest_job_skipped", run_id=run_id, status=run.status.value)
            return "skipped"
        if not await self._recorder.start(run_id):
            logger.warning("backtest_job_claim_lost", run_id=run_id)
            return "skipped"

        context = self._build_context(run, payload)
        logger.info(
            "backtest_job_started",
            run_id=run_id,
            run_type=run.type.value,
            resume_index=context.checkpoint.last_processed_index if context.checkpoint else None,
        )
        try:
            outcome = await self._engine.run(context)
        except Exception as exc:
            logger.exception("backtest_job_failed", run_id=run_id)
            await self._recorder.mark_failed(run_id, str(exc) or exc.__class__.__name__)
            raise

        if outcome.paused:
            paused = await self._recorder.mark_paused(
                run_id, outcome.checkpoint, processed=outcome.processed, total=outcome.total
            )
            await self._pause_flags.clear_pause_flag(run_id)
            return "paused" if paused else "discarded"

        stored = await self._recorder.persist_success(run_id, outcome.results)
        return "completed" if stored else "discarded"

    def _build_context(self, run: BacktestRun, payload: Mapping[str, Any]) -> SimulationContext:
        run_id = run.id
        snapshot = dict(run.config_snapshot or {})
        seed = payload.get("deterministicSeed") or run.deterministic_seed

        async def report_checkpoint(state: CheckpointState, processed: int, total: int) -> None:
            await self._recorder.save_checkpoint(run_id, state, processed, total)

        async def should_pause() -> bool:
            if run.type != BacktestType.LIVE_REPLAY:
                return False
            return await self._pause_flags.is_pause_requested(run_id)

        async def heartbeat() -> None:
            await self._recorder.heartbeat(run_id)

        return SimulationContext(
            run_id=run_id,
            run_type=run.type,
            deterministic_seed=seed,
            config_snapshot=snapshot,
            slippage=SlippageConfig.from_snapshot(snapshot.get("slippage")),
            checkpoint=CheckpointState.from_dict(run.checkpoint_state),
            report_checkpoint=report_checkpoint,
            should_pause=should_pause,
            heartbeat=heartbeat,
        )


__all__ = [
    "BacktestJobProcessor",
    "SimulationContext",
    "SimulationEngine",
    "SimulationResult",
]
