"""User-facing lifecycle operations for backtest runs."""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import (
    Account,
    Algorithm,
    BacktestPerformanceSnapshot,
    BacktestRun,
    BacktestSignal,
    BacktestStatus,
    BacktestType,
    ComparisonReport,
    ComparisonReportRun,
    FillStatus,
    MarketDataSet,
    OrderType,
    SignalDirection,
    SignalType,
    SimulatedOrderFill,
)
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .config import settings
from .cursor import (
    CREATED_AT_FIELD,
    TIMESTAMP_FIELD,
    CheckpointState,
    cursor_position,
    encode_cursor,
    ensure_utc,
    is_checkpoint_stale,
    utcnow,
)
from .dataset_validator import DatasetValidator
from .dispatcher import JobDispatcher
from .errors import InternalFailure, NotFound, OrchestratorError, ValidationFailed
from .pause import PauseFlagService
from .queue import JobOptions
from .results import RunRecorder
from .slippage import (
    DEFAULT_BASE_SLIPPAGE_BPS,
    DEFAULT_FIXED_BPS,
    DEFAULT_VOLUME_IMPACT_FACTOR,
    SlippageModelType,
)
from .stream import BacktestStream


LOGGER = logging.getLogger("orchestrator.lifecycle")

DEFAULT_TRADING_FEE = 0.001
LOW_INTEGRITY_THRESHOLD = 80
LOW_INTEGRITY_FLAG = "dataset_integrity_low"
NOT_REPLAY_CAPABLE_FLAG = "dataset_not_replay_capable"

DEFAULT_RUN_PAGE_SIZE = 50
MAX_RUN_PAGE_SIZE = 200
DEFAULT_ARTIFACT_PAGE_SIZE = 100
MIN_ARTIFACT_PAGE_SIZE = 10
MAX_ARTIFACT_PAGE_SIZE = 500
RECENT_TRADES_LIMIT = 50
RESUME_KEEP_FAILED = 50

CANCELLABLE_STATUSES = (BacktestStatus.RUNNING, BacktestStatus.PENDING)
RESUMABLE_STATUSES = (BacktestStatus.PAUSED, BacktestStatus.CANCELLED, BacktestStatus.FAILED)
USER_CANCEL_REASON = "User requested cancellation"
ENQUEUE_FAILED_MESSAGE = "Failed to enqueue backtest for execution"
DEFAULT_COMPARISON_NAME = "Ad-hoc Comparison"

_PROGRESS_ESTIMATES: Dict[BacktestStatus, Tuple[float, str]] = {
    BacktestStatus.PENDING: (0.0, "Backtest queued for processing"),
    BacktestStatus.RUNNING: (50.0, "Backtest in progress..."),
    BacktestStatus.PAUSED: (50.0, "Backtest paused. Resume when ready."),
    BacktestStatus.COMPLETED: (100.0, "Backtest completed successfully"),
    BacktestStatus.CANCELLED: (0.0, "Backtest was cancelled"),
}


@dataclass
class BacktestCreateParams:
    """Validated input for :meth:`BacktestLifecycleService.create`."""

    name: str
    algorithm_id: str
    market_data_set_id: str
    start_date: datetime
    end_date: datetime
    initial_capital: float
    type: BacktestType = BacktestType.HISTORICAL
    description: Optional[str] = None
    trading_fee: Optional[float] = None
    strategy_params: Dict[str, Any] = field(default_factory=dict)
    slippage_model: Optional[str] = None
    fixed_slippage_bps: Optional[float] = None
    base_slippage_bps: Optional[float] = None
    volume_impact_factor: Optional[float] = None
    deterministic_seed: Optional[str] = None
    instruments: Optional[List[str]] = None
    snapshot_extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BacktestListFilters:
    type: Optional[BacktestType] = None
    algorithm_id: Optional[str] = None
    status: Optional[BacktestStatus] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    cursor: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class ArtifactQuery:
    """Paging and filters shared by the signal and trade listings."""

    cursor: Optional[str] = None
    page_size: Optional[int] = None
    instrument: Optional[str] = None
    signal_type: Optional[SignalType] = None
    direction: Optional[SignalDirection] = None
    order_type: Optional[OrderType] = None
    status: Optional[FillStatus] = None


def _clamp(value: Optional[int], default: int, lower: int, upper: int) -> int:
    if value is None:
        return default
    return max(lower, min(upper, int(value)))


def _number(value: Any) -> float:
    return float(value) if value is not None else 0.0


def dataset_warning_flags(dataset: MarketDataSet, run_type: BacktestType) -> List[str]:
    """Return the warning flags a dataset earns for *run_type*.

    Raises :class:`ValidationFailed` when a live replay is requested on a
    dataset that cannot be replayed.
    """

    flags: List[str] = []
    if dataset.integrity_score < LOW_INTEGRITY_THRESHOLD:
        flags.append(LOW_INTEGRITY_FLAG)
    if not dataset.replay_capable:
        if run_type == BacktestType.LIVE_REPLAY:
            raise ValidationFailed("Selected dataset is not replay capable")
        if run_type != BacktestType.HISTORICAL:
            flags.append(NOT_REPLAY_CAPABLE_FLAG)
    return flags


def build_config_snapshot(
    params: BacktestCreateParams, algorithm: Algorithm, dataset: MarketDataSet
) -> Dict[str, Any]:
    """Freeze everything a worker needs to reproduce the run."""

    def _or_default(value: Optional[float], default: float) -> float:
        return default if value is None else value

    return {
        "algorithm": {"id": algorithm.id, "name": algorithm.name},
        "dataset": {
            "id": dataset.id,
            "source": dataset.source.value,
            "timeframe": dataset.timeframe.value,
            "startAt": ensure_utc(dataset.start_at).isoformat(),
            "endAt": ensure_utc(dataset.end_at).isoformat(),
        },
        "run": {
            "type": params.type.value,
            "initialCapital": params.initial_capital,
            "tradingFee": _or_default(params.trading_fee, DEFAULT_TRADING_FEE),
            "startDate": ensure_utc(params.start_date).isoformat(),
            "endDate": ensure_utc(params.end_date).isoformat(),
        },
        "slippage": {
            "model": params.slippage_model or SlippageModelType.FIXED.value,
            "fixedBps": _or_default(params.fixed_slippage_bps, DEFAULT_FIXED_BPS),
            "baseBps": _or_default(params.base_slippage_bps, DEFAULT_BASE_SLIPPAGE_BPS),
            "volumeImpactFactor": _or_default(params.volume_impact_factor, DEFAULT_VOLUME_IMPACT_FACTOR),
        },
        "parameters": dict(params.strategy_params),
    }


def run_mode(run_type: BacktestType) -> str:
    return "live_replay" if run_type == BacktestType.LIVE_REPLAY else "historical"


def serialize_dataset(dataset: MarketDataSet) -> Dict[str, Any]:
    return {
        "id": dataset.id,
        "label": dataset.label,
        "source": dataset.source.value,
        "instrumentUniverse": list(dataset.instrument_universe or []),
        "timeframe": dataset.timeframe.value,
        "startAt": ensure_utc(dataset.start_at),
        "endAt": ensure_utc(dataset.end_at),
        "integrityScore": dataset.integrity_score,
        "checksum": dataset.checksum,
        "storageLocation": dataset.storage_location,
        "replayCapable": dataset.replay_capable,
        "metadata": dict(dataset.metadata_ or {}),
        "createdAt": ensure_utc(dataset.created_at),
        "updatedAt": ensure_utc(dataset.updated_at),
    }


def _algorithm_ref(algorithm: Optional[Algorithm]) -> Optional[Dict[str, Any]]:
    if algorithm is None:
        return None
    return {"id": algorithm.id, "name": algorithm.name}


def _dataset_ref(dataset: Optional[MarketDataSet]) -> Optional[Dict[str, Any]]:
    if dataset is None:
        return None
    return {"id": dataset.id, "label": dataset.label, "timeframe": dataset.timeframe.value}


def _key_metrics(run: BacktestRun) -> Dict[str, Any]:
    extra = run.performance_metrics or {}

    def _pick(column: Any, key: str) -> Any:
        return column if column is not None else extra.get(key)

    return {
        "totalReturn": _pick(run.total_return, "totalReturn"),
        "annualizedReturn": _pick(run.annualized_return, "annualizedReturn"),
        "sharpeRatio": _pick(run.sharpe_ratio, "sharpeRatio"),
        "maxDrawdown": _pick(run.max_drawdown, "maxDrawdown"),
        "winRate": run.win_rate,
        "totalTrades": run.total_trades,
        "winningTrades": run.winning_trades,
        "profitFactor": extra.get("profitFactor"),
        "volatility": extra.get("volatility"),
    }


def serialize_run(
    run: BacktestRun,
    algorithm: Optional[Algorithm] = None,
    dataset: Optional[MarketDataSet] = None,
) -> Dict[str, Any]:
    created_at = ensure_utc(run.created_at)
    completed_at = ensure_utc(run.completed_at)
    duration_ms = None
    if completed_at is not None and created_at is not None:
        duration_ms = int((completed_at - created_at).total_seconds() * 1000)
    return {
        "id": run.id,
        "name": run.name,
        "description": run.description,
        "type": run.type.value,
        "mode": run_mode(run.type),
        "status": run.status.value,
        "algorithm": _algorithm_ref(algorithm),
        "marketDataSet": _dataset_ref(dataset),
        "initiatedAt": created_at,
        "completedAt": completed_at,
        "durationMs": duration_ms,
        "warningFlags": list(run.warning_flags or []),
        "keyMetrics": _key_metrics(run),
        "createdAt": created_at,
        "updatedAt": ensure_utc(run.updated_at),
    }


def serialize_run_detail(
    run: BacktestRun,
    algorithm: Optional[Algorithm] = None,
    dataset: Optional[MarketDataSet] = None,
    *,
    signals_count: int = 0,
    trades_count: int = 0,
) -> Dict[str, Any]:
    payload = serialize_run(run, algorithm, dataset)
    payload.update(
        {
            "initialCapital": run.initial_capital,
            "tradingFee": run.trading_fee,
            "startDate": ensure_utc(run.start_date),
            "endDate": ensure_utc(run.end_date),
            "strategyParams": dict(run.strategy_params or {}),
            "configSnapshot": dict(run.config_snapshot or {}),
            "deterministicSeed": run.deterministic_seed,
            "checkpoint": run.checkpoint_state,
            "lastCheckpointAt": ensure_utc(run.last_checkpoint_at),
            "processedTimestampCount": run.processed_timestamp_count,
            "totalTimestampCount": run.total_timestamp_count,
            "errorMessage": run.error_message,
            "finalValue": run.final_value,
            "totalReturn": run.total_return,
            "annualizedReturn": run.annualized_return,
            "sharpeRatio": run.sharpe_ratio,
            "maxDrawdown": run.max_drawdown,
            "totalTrades": run.total_trades,
            "winningTrades": run.winning_trades,
            "winRate": run.win_rate,
            "signalsCount": signals_count,
            "tradesCount": trades_count,
        }
    )
    return payload


def serialize_signal(signal: BacktestSignal) -> Dict[str, Any]:
    return {
        "id": signal.id,
        "backtestId": signal.backtest_id,
        "timestamp": ensure_utc(signal.timestamp),
        "signalType": signal.signal_type.value,
        "instrument": signal.instrument,
        "direction": signal.direction.value,
        "quantity": signal.quantity,
        "price": signal.price,
        "reason": signal.reason,
        "confidence": signal.confidence,
        "payload": dict(signal.payload or {}),
    }


def serialize_fill(fill: SimulatedOrderFill) -> Dict[str, Any]:
    return {
        "id": fill.id,
        "backtestId": fill.backtest_id,
        "signalId": fill.signal_id,
        "orderType": fill.order_type.value,
        "status": fill.status.value,
        "instrument": fill.instrument,
        "filledQuantity": fill.filled_quantity,
        "averagePrice": fill.average_price,
        "fees": fill.fees,
        "slippageBps": fill.slippage_bps,
        "executionTimestamp": ensure_utc(fill.execution_timestamp),
        "metadata": dict(fill.metadata_ or {}),
    }


@contextmanager
def _internal_errors(message: str, **context: Any) -> Iterator[None]:
    """Let domain errors through and turn anything else into :class:`InternalFailure`."""

    try:
        yield
    except OrchestratorError:
        raise
    except Exception as exc:
        LOGGER.exception("backtest_operation_failed", extra={**context, "failure": message})
        raise InternalFailure(message) from exc


class BacktestLifecycleService:
    """Owner-scoped operations on backtest runs and comparison reports."""

    def __init__(
        self,
        *,
        dispatcher: JobDispatcher,
        stream: BacktestStream,
        pause_flags: PauseFlagService,
        recorder: RunRecorder,
        validator: Optional[DatasetValidator] = None,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        max_checkpoint_age: Optional[timedelta] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._stream = stream
        self._pause_flags = pause_flags
        self._recorder = recorder
        self._validator = validator or DatasetValidator()
        self._session = SessionScope(session_factory_provider)
        self._max_checkpoint_age = max_checkpoint_age or timedelta(
            seconds=settings.lifecycle.max_checkpoint_age_seconds
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    async def create(self, account_id: str, params: BacktestCreateParams) -> Dict[str, Any]:
        with _internal_errors(
            "Failed to create backtest due to an internal error",
            account_id=account_id,
            algorithm_id=params.algorithm_id,
        ):
            return await self._create(account_id, params)

    async def _create(self, account_id: str, params: BacktestCreateParams) -> Dict[str, Any]:
        async with self._session() as session:
            algorithm = await session.get(Algorithm, params.algorithm_id)
            if algorithm is None:
                raise NotFound("Algorithm", params.algorithm_id)
            dataset = await session.get(MarketDataSet, params.market_data_set_id)
            if dataset is None:
                raise NotFound("MarketDataSet", params.market_data_set_id)
            if not self._dispatcher.can_route(params.type):
                raise ValidationFailed(f"Backtest type {params.type.value} is not executed by this service")

            warning_flags = dataset_warning_flags(dataset, params.type)
            validation = await self._validator.validate(
                dataset, params.start_date, params.end_date, params.instruments
            )
            if not validation.valid:
                raise ValidationFailed(validation.errors[0].message)
            warning_flags.extend(validation.warnings)

            seed = params.deterministic_seed or str(uuid.uuid4())
            snapshot = build_config_snapshot(params, algorithm, dataset)
            snapshot.update(params.snapshot_extras)
            run = BacktestRun(
                name=params.name,
                description=params.description,
                type=params.type,
                status=BacktestStatus.PENDING,
                account_id=account_id,
                algorithm_id=algorithm.id,
                market_data_set_id=dataset.id,
                initial_capital=params.initial_capital,
                trading_fee=snapshot["run"]["tradingFee"],
                start_date=params.start_date,
                end_date=params.end_date,
                strategy_params=dict(params.strategy_params),
                config_snapshot=snapshot,
                deterministic_seed=seed,
                warning_flags=warning_flags,
            )
            session.add(run)
            await session.commit()
            await session.refresh(run)

        LOGGER.info(
            "backtest_created",
            extra={"run_id": run.id, "account_id": account_id, "run_type": run.type.value},
        )
        await self._stream.try_publish_status(
            run.id,
            "queued",
            metadata={"algorithmId": algorithm.id, "marketDataSetId": dataset.id},
        )
        await self._stream.try_publish_log(
            run.id,
            "info",
            "Backtest queued for execution",
            context={"mode": run_mode(run.type), "deterministicSeed": seed, "warningFlags": warning_flags},
        )
        await self._enqueue(run)
        return serialize_run_detail(run, algorithm, dataset)

    async def _enqueue(self, run: BacktestRun, options: Optional[JobOptions] = None) -> None:
        """Dispatch *run*, failing it when no new job could be queued."""

        try:
            queued = await self._dispatcher.dispatch(run, options)
        except Exception:
            await self._recorder.mark_failed(run.id, ENQUEUE_FAILED_MESSAGE)
            raise
        if not queued:
            await self._recorder.mark_failed(run.id, ENQUEUE_FAILED_MESSAGE)
            raise InternalFailure(ENQUEUE_FAILED_MESSAGE)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_runs(self, account_id: str, filters: Optional[BacktestListFilters] = None) -> Dict[str, Any]:
        filters = filters or BacktestListFilters()
        limit = _clamp(filters.limit, DEFAULT_RUN_PAGE_SIZE, 1, MAX_RUN_PAGE_SIZE)

        stmt = select(BacktestRun).where(BacktestRun.account_id == account_id)
        if filters.type is not None:
            stmt = stmt.where(BacktestRun.type == filters.type)
        if filters.algorithm_id:
            stmt = stmt.where(BacktestRun.algorithm_id == filters.algorithm_id)
        if filters.status is not None:
            stmt = stmt.where(BacktestRun.status == filters.status)
        if filters.created_after is not None:
            stmt = stmt.where(BacktestRun.created_at >= ensure_utc(filters.created_after))
        if filters.created_before is not None:
            stmt = stmt.where(BacktestRun.created_at <= ensure_utc(filters.created_before))
        position = cursor_position(filters.cursor, CREATED_AT_FIELD)
        if position is not None:
            created_at, run_id = position
            stmt = stmt.where(
                or_(
                    BacktestRun.created_at < created_at,
                    and_(BacktestRun.created_at == created_at, BacktestRun.id < run_id),
                )
            )
        stmt = stmt.order_by(BacktestRun.created_at.desc(), BacktestRun.id.desc()).limit(limit + 1)

        async with self._session() as session:
            runs = list((await session.execute(stmt)).scalars())
            has_more = len(runs) > limit
            runs = runs[:limit]
            algorithms, datasets = await self._load_references(session, runs)

        items = [
            serialize_run(run, algorithms.get(run.algorithm_id), datasets.get(run.market_data_set_id))
            for run in runs
        ]
        next_cursor = None
        if has_more and runs:
            last = runs[-1]
            next_cursor = encode_cursor(ensure_utc(last.created_at), last.id, CREATED_AT_FIELD)
        return {"items": items, "nextCursor": next_cursor}

    async def list_datasets(self) -> List[Dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(
                select(MarketDataSet).order_by(MarketDataSet.created_at.desc(), MarketDataSet.id.desc())
            )
            return [serialize_dataset(dataset) for dataset in result.scalars()]

    async def get_run(self, account_id: str, run_id: str) -> Dict[str, Any]:
        async with self._session() as session:
            run = await self._get_owned_run(session, account_id, run_id)
            return await self._detail(session, run)

    async def get_progress(self, account_id: str, run_id: str) -> Dict[str, Any]:
        async with self._session() as session:
            run = await self._get_owned_run(session, account_id, run_id)

        if run.status == BacktestStatus.FAILED:
            progress, message = 0.0, f"Backtest failed: {run.error_message or 'Unknown error'}"
        else:
            progress, message = _PROGRESS_ESTIMATES[run.status]
        if run.total_timestamp_count and run.total_timestamp_count > 0 and run.status != BacktestStatus.COMPLETED:
            ratio = run.processed_timestamp_count / run.total_timestamp_count * 100
            progress = round(max(0.0, min(100.0, ratio)), 2)

        return {
            "backtestId": run.id,
            "status": run.status.value,
            "progress": progress,
            "message": message,
            "processedTimestampCount": run.processed_timestamp_count,
            "totalTimestampCount": run.total_timestamp_count,
            "lastCheckpointAt": ensure_utc(run.last_checkpoint_at),
        }

    async def get_performance(self, account_id: str, run_id: str) -> Dict[str, Any]:
        async with self._session() as session:
            run = await self._get_owned_run(session, account_id, run_id)
            if run.status != BacktestStatus.COMPLETED:
                raise ValidationFailed("Backtest must be completed to view performance")
            snapshots = await session.execute(
                select(BacktestPerformanceSnapshot)
                .where(BacktestPerformanceSnapshot.backtest_id == run.id)
                .order_by(BacktestPerformanceSnapshot.timestamp.asc())
            )
            fills = await session.execute(
                select(SimulatedOrderFill)
                .where(SimulatedOrderFill.backtest_id == run.id)
                .order_by(SimulatedOrderFill.execution_timestamp.desc(), SimulatedOrderFill.id.desc())
                .limit(RECENT_TRADES_LIMIT)
            )
            history = [
                {
                    "timestamp": ensure_utc(snapshot.timestamp),
                    "portfolioValue": snapshot.portfolio_value,
                    "cumulativeReturn": snapshot.cumulative_return,
                    "drawdown": snapshot.drawdown,
                }
                for snapshot in snapshots.scalars()
            ]
            recent = [serialize_fill(fill) for fill in fills.scalars()]

        return {
            "backtestId": run.id,
            "name": run.name,
            "initialCapital": run.initial_capital,
            "finalValue": _number(run.final_value),
            "totalReturn": _number(run.total_return),
            "annualizedReturn": _number(run.annualized_return),
            "sharpeRatio": _number(run.sharpe_ratio),
            "maxDrawdown": _number(run.max_drawdown),
            "totalTrades": run.total_trades or 0,
            "winningTrades": run.winning_trades or 0,
            "winRate": _number(run.win_rate),
            "performanceHistory": history,
            "recentTrades": recent,
        }

    async def list_signals(
        self, account_id: str, run_id: str, query: Optional[ArtifactQuery] = None
    ) -> Dict[str, Any]:
        query = query or ArtifactQuery()
        page_size = _clamp(query.page_size, DEFAULT_ARTIFACT_PAGE_SIZE, MIN_ARTIFACT_PAGE_SIZE, MAX_ARTIFACT_PAGE_SIZE)

        stmt = select(BacktestSignal).where(BacktestSignal.backtest_id == run_id)
        if query.instrument:
            stmt = stmt.where(BacktestSignal.instrument == query.instrument)
        if query.signal_type is not None:
            stmt = stmt.where(BacktestSignal.signal_type == query.signal_type)
        if query.direction is not None:
            stmt = stmt.where(BacktestSignal.direction == query.direction)
        stmt = self._after_cursor(stmt, BacktestSignal.timestamp, BacktestSignal.id, query.cursor)
        stmt = stmt.order_by(BacktestSignal.timestamp.asc(), BacktestSignal.id.asc()).limit(page_size + 1)

        async with self._session() as session:
            await self._get_owned_run(session, account_id, run_id)
            rows = list((await session.execute(stmt)).scalars())

        return self._page(rows, page_size, serialize_signal, lambda signal: signal.timestamp)

    async def list_trades(
        self, account_id: str, run_id: str, query: Optional[ArtifactQuery] = None
    ) -> Dict[str, Any]:
        query = query or ArtifactQuery()
        page_size = _clamp(query.page_size, DEFAULT_ARTIFACT_PAGE_SIZE, MIN_ARTIFACT_PAGE_SIZE, MAX_ARTIFACT_PAGE_SIZE)

        stmt = select(SimulatedOrderFill).where(SimulatedOrderFill.backtest_id == run_id)
        if query.instrument:
            stmt = stmt.where(SimulatedOrderFill.instrument == query.instrument)
        if query.order_type is not None:
            stmt = stmt.where(SimulatedOrderFill.order_type == query.order_type)
        if query.status is not None:
            stmt = stmt.where(SimulatedOrderFill.status == query.status)
        stmt = self._after_cursor(
            stmt, SimulatedOrderFill.execution_timestamp, SimulatedOrderFill.id, query.cursor
        )
        stmt = stmt.order_by(
            SimulatedOrderFill.execution_timestamp.asc(), SimulatedOrderFill.id.asc()
        ).limit(page_size + 1)

        async with self._session() as session:
            await self._get_owned_run(session, account_id, run_id)
            rows = list((await session.execute(stmt)).scalars())

        return self._page(rows, page_size, serialize_fill, lambda fill: fill.execution_timestamp)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    async def cancel(self, account_id: str, run_id: str) -> Dict[str, Any]:
        with _internal_errors("Failed to cancel backtest", account_id=account_id, run_id=run_id):
            async with self._session() as session:
                run = await self._get_owned_run(session, account_id, run_id)
                if run.status not in CANCELLABLE_STATUSES:
                    raise ValidationFailed("Can only cancel running or pending backtests")

            removed = await self._dispatcher.discard(run)
            await self._recorder.mark_cancelled(run.id, USER_CANCEL_REASON)
            LOGGER.info("backtest_cancelled", extra={"run_id": run.id, "job_removed": removed})
            return await self.get_run(account_id, run_id)

    async def pause(self, account_id: str, run_id: str) -> Dict[str, Any]:
        with _internal_errors("Failed to pause backtest", account_id=account_id, run_id=run_id):
            async with self._session() as session:
                run = await self._get_owned_run(session, account_id, run_id)
                if run.type != BacktestType.LIVE_REPLAY:
                    raise ValidationFailed("Only live replay backtests can be paused")
                if run.status != BacktestStatus.RUNNING:
                    raise ValidationFailed("Can only pause running backtests")
                detail = await self._detail(session, run)

            await self._pause_flags.set_pause_flag(run.id)
            await self._stream.try_publish_log(
                run.id,
                "info",
                "Pause requested; the run will pause at the next checkpoint",
            )
            LOGGER.info("backtest_pause_requested", extra={"run_id": run.id})
            return detail

    async def resume(self, account_id: str, run_id: str) -> Dict[str, Any]:
        with _internal_errors("Failed to resume backtest", account_id=account_id, run_id=run_id):
            async with self._session() as session:
                run = await self._get_owned_run(session, account_id, run_id)
                if run.status not in RESUMABLE_STATUSES:
                    raise ValidationFailed("Only paused, cancelled or failed backtests can be resumed")
                if await self._dispatcher.in_flight(run):
                    raise ValidationFailed(
                        "Backtest is still stopping; resume it once the current execution has finished"
                    )

                if run.checkpoint_state is not None and is_checkpoint_stale(
                    run.last_checkpoint_at, self._max_checkpoint_age
                ):
                    LOGGER.info(
                        "backtest_checkpoint_discarded",
                        extra={"run_id": run.id, "last_checkpoint_at": str(run.last_checkpoint_at)},
                    )
                    run.checkpoint_state = None
                    run.last_checkpoint_at = None
                    run.processed_timestamp_count = 0
                run.status = BacktestStatus.PENDING
                run.error_message = None
                await session.commit()
                await session.refresh(run)
                detail = await self._detail(session, run)

            checkpoint = CheckpointState.from_dict(run.checkpoint_state)
            await self._pause_flags.clear_pause_flag(run.id)
            await self._dispatcher.discard(run)
            await self._enqueue(run, JobOptions(remove_on_complete=True, remove_on_fail=RESUME_KEEP_FAILED))
            await self._stream.try_publish_status(
                run.id,
                "queued",
                metadata={
                    "resumed": True,
                    "hasCheckpoint": checkpoint is not None,
                    "checkpointIndex": checkpoint.last_processed_index if checkpoint else None,
                },
            )
            LOGGER.info(
                "backtest_resumed",
                extra={"run_id": run.id, "has_checkpoint": checkpoint is not None},
            )
            return detail

    async def update(
        self,
        account_id: str,
        run_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        with _internal_errors("Failed to update backtest", account_id=account_id, run_id=run_id):
            async with self._session() as session:
                run = await self._get_owned_run(session, account_id, run_id)
                if run.status == BacktestStatus.RUNNING:
                    raise ValidationFailed("Cannot update a running backtest")
                if name is not None:
                    run.name = name
                if description is not None:
                    run.description = description
                await session.commit()
                await session.refresh(run)
                return await self._detail(session, run)

    async def delete(self, account_id: str, run_id: str) -> None:
        with _internal_errors("Failed to delete backtest", account_id=account_id, run_id=run_id):
            async with self._session() as session:
                run = await self._get_owned_run(session, account_id, run_id)
                if run.status == BacktestStatus.RUNNING:
                    raise ValidationFailed("Cannot delete a running backtest")
                # Fills reference signals, so they go first.
                await session.execute(delete(SimulatedOrderFill).where(SimulatedOrderFill.backtest_id == run.id))
                await session.execute(delete(BacktestSignal).where(BacktestSignal.backtest_id == run.id))
                await session.execute(
                    delete(BacktestPerformanceSnapshot).where(BacktestPerformanceSnapshot.backtest_id == run.id)
                )
                await session.execute(
                    delete(ComparisonReportRun).where(ComparisonReportRun.backtest_id == run.id)
                )
                await session.execute(delete(BacktestRun).where(BacktestRun.id == run.id))
                await session.commit()
        LOGGER.info("backtest_deleted", extra={"run_id": run_id, "account_id": account_id})

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------
    async def compare(self, account_id: str, run_ids: Sequence[str]) -> Dict[str, Any]:
        ordered = self._distinct_run_ids(run_ids)
        async with self._session() as session:
            account = await session.get(Account, account_id)
            runs = await self._load_comparison_runs(session, account_id, ordered)
            entries = await self._comparison_entries(session, runs)
        return self._comparison_view(None, DEFAULT_COMPARISON_NAME, utcnow(), account, None, entries)

    async def create_comparison_report(
        self,
        account_id: str,
        run_ids: Sequence[str],
        *,
        name: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        ordered = self._distinct_run_ids(run_ids)
        async with self._session() as session:
            account = await session.get(Account, account_id)
            runs = await self._load_comparison_runs(session, account_id, ordered)
            report = ComparisonReport(
                name=name or DEFAULT_COMPARISON_NAME,
                created_by_id=account_id,
                filters=dict(filters or {}),
            )
            session.add(report)
            await session.flush()
            session.add_all(
                ComparisonReportRun(report_id=report.id, backtest_id=run_id, position=index)
                for index, run_id in enumerate(ordered)
            )
            await session.commit()
            await session.refresh(report)
            entries = await self._comparison_entries(session, runs)

        LOGGER.info("comparison_report_created", extra={"report_id": report.id, "runs": len(ordered)})
        return self._comparison_view(
            report.id, report.name, report.created_at, account, report.filters or None, entries
        )

    async def get_comparison_report(self, account_id: str, report_id: str) -> Dict[str, Any]:
        async with self._session() as session:
            result = await session.execute(
                select(ComparisonReport).where(
                    ComparisonReport.id == report_id, ComparisonReport.created_by_id == account_id
                )
            )
            report = result.scalars().first()
            if report is None:
                raise NotFound("ComparisonReport", report_id)
            members = await session.execute(
                select(ComparisonReportRun.backtest_id)
                .where(ComparisonReportRun.report_id == report.id)
                .order_by(ComparisonReportRun.position.asc())
            )
            ordered = list(members.scalars())
            account = await session.get(Account, account_id)
            runs = await self._load_comparison_runs(session, account_id, ordered)
            entries = await self._comparison_entries(session, runs)

        return self._comparison_view(
            report.id, report.name, report.created_at, account, report.filters or None, entries
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _get_owned_run(self, session: AsyncSession, account_id: str, run_id: str) -> BacktestRun:
        result = await session.execute(
            select(BacktestRun).where(BacktestRun.id == run_id, BacktestRun.account_id == account_id)
        )
        run = result.scalars().first()
        if run is None:
            raise NotFound("Backtest", run_id)
        return run

    async def _detail(self, session: AsyncSession, run: BacktestRun) -> Dict[str, Any]:
        algorithm = await session.get(Algorithm, run.algorithm_id)
        dataset = None
        if run.market_data_set_id:
            dataset = await session.get(MarketDataSet, run.market_data_set_id)
        signals = await session.scalar(
            select(func.count(BacktestSignal.id)).where(BacktestSignal.backtest_id == run.id)
        )
        trades = await session.scalar(
            select(func.count(SimulatedOrderFill.id)).where(SimulatedOrderFill.backtest_id == run.id)
        )
        return serialize_run_detail(
            run, algorithm, dataset, signals_count=int(signals or 0), trades_count=int(trades or 0)
        )

    @staticmethod
    async def _load_references(
        session: AsyncSession, runs: Sequence[BacktestRun]
    ) -> Tuple[Dict[str, Algorithm], Dict[str, MarketDataSet]]:
        algorithm_ids = {run.algorithm_id for run in runs}
        dataset_ids = {run.market_data_set_id for run in runs if run.market_data_set_id}
        algorithms: Dict[str, Algorithm] = {}
        datasets: Dict[str, MarketDataSet] = {}
        if algorithm_ids:
            result = await session.execute(select(Algorithm).where(Algorithm.id.in_(algorithm_ids)))
            algorithms = {algorithm.id: algorithm for algorithm in result.scalars()}
        if dataset_ids:
            result = await session.execute(select(MarketDataSet).where(MarketDataSet.id.in_(dataset_ids)))
            datasets = {dataset.id: dataset for dataset in result.scalars()}
        return algorithms, datasets

    @staticmethod
    def _after_cursor(stmt, timestamp_column, id_column, cursor: Optional[str]):
        position = cursor_position(cursor, TIMESTAMP_FIELD)
        if position is None:
            return stmt
        timestamp, record_id = position
        return stmt.where(
            or_(timestamp_column > timestamp, and_(timestamp_column == timestamp, id_column > record_id))
        )

    @staticmethod
    def _page(rows: List[Any], page_size: int, serializer, timestamp_of) -> Dict[str, Any]:
        has_more = len(rows) > page_size
        rows = rows[:page_size]
        next_cursor = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = encode_cursor(ensure_utc(timestamp_of(last)), last.id, TIMESTAMP_FIELD)
        return {"items": [serializer(row) for row in rows], "nextCursor": next_cursor}

    @staticmethod
    def _distinct_run_ids(run_ids: Sequence[str]) -> List[str]:
        ordered = list(dict.fromkeys(run_id for run_id in run_ids if run_id))
        if len(ordered) < 2:
            raise ValidationFailed("Please select at least two runs to compare")
        return ordered

    async def _load_comparison_runs(
        self, session: AsyncSession, account_id: str, run_ids: Sequence[str]
    ) -> List[BacktestRun]:
        if not run_ids:
            return []
        result = await session.execute(
            select(BacktestRun).where(BacktestRun.id.in_(run_ids), BacktestRun.account_id == account_id)
        )
        by_id = {run.id: run for run in result.scalars()}
        missing = [run_id for run_id in run_ids if run_id not in by_id]
        if missing:
            raise NotFound("Backtest", ", ".join(missing))
        return [by_id[run_id] for run_id in run_ids]

    async def _comparison_entries(
        self, session: AsyncSession, runs: Sequence[BacktestRun]
    ) -> List[Dict[str, Any]]:
        if not runs:
            return []
        algorithms, datasets = await self._load_references(session, runs)
        result = await session.execute(
            select(BacktestPerformanceSnapshot)
            .where(BacktestPerformanceSnapshot.backtest_id.in_([run.id for run in runs]))
            .order_by(BacktestPerformanceSnapshot.timestamp.asc())
        )
        snapshots: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for snapshot in result.scalars():
            snapshots[snapshot.backtest_id].append(
                {
                    "timestamp": ensure_utc(snapshot.timestamp),
                    "portfolioValue": snapshot.portfolio_value,
                    "cumulativeReturn": snapshot.cumulative_return,
                }
            )

        entries = []
        for run in runs:
            dataset = datasets.get(run.market_data_set_id)
            entries.append(
                {
                    "run": {
                        "id": run.id,
                        "name": run.name,
                        "description": run.description,
                        "mode": run_mode(run.type),
                        "status": run.status.value,
                        "algorithm": _algorithm_ref(algorithms.get(run.algorithm_id)),
                        "marketDataSet": _dataset_ref(dataset),
                        "initiatedAt": ensure_utc(run.created_at),
                        "completedAt": ensure_utc(run.completed_at),
                    },
                    "metrics": {
                        "totalReturn": _number(run.total_return),
                        "sharpeRatio": _number(run.sharpe_ratio),
                        "maxDrawdown": _number(run.max_drawdown),
                        "winRate": _number(run.win_rate),
                        "totalTrades": run.total_trades or 0,
                        "profitFactor": (run.performance_metrics or {}).get("profitFactor"),
                    },
                    "snapshots": snapshots.get(run.id, []),
                    "benchmark": None,
                }
            )
        return entries

    @staticmethod
    def _comparison_view(
        report_id: Optional[str],
        name: str,
        created_at: datetime,
        account: Optional[Account],
        filters: Optional[Mapping[str, Any]],
        entries: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        metrics = [entry["metrics"] for entry in entries]
        if metrics:
            summary = {
                "bestReturn": max(item["totalReturn"] for item in metrics),
                "bestSharpe": max(item["sharpeRatio"] for item in metrics),
                "lowestDrawdown": min(item["maxDrawdown"] for item in metrics),
            }
        else:
            summary = {"bestReturn": 0.0, "bestSharpe": 0.0, "lowestDrawdown": 0.0}

        created_by = None
        if account is not None:
            created_by = {"id": account.id, "displayName": account.display_name or account.email or account.id}
        return {
            "id": report_id,
            "name": name,
            "createdAt": ensure_utc(created_at),
            "createdBy": created_by,
            "filters": dict(filters) if filters else None,
            "runs": entries,
            "notes": [],
            "summary": summary,
        }


__all__ = [
    "ArtifactQuery",
    "BacktestCreateParams",
    "BacktestLifecycleService",
    "BacktestListFilters",
    "DEFAULT_TRADING_FEE",
    "LOW_INTEGRITY_FLAG",
    "NOT_REPLAY_CAPABLE_FLAG",
    "USER_CANCEL_REASON",
    "build_config_snapshot",
    "dataset_warning_flags",
    "run_mode",
    "serialize_dataset",
    "serialize_fill",
    "serialize_run",
    "serialize_run_detail",
    "serialize_signal",
]
