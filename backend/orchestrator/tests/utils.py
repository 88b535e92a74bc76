"""Testing utilities for orchestrator tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.orchestrator.db.models import (
    Account,
    Algorithm,
    AlgorithmStatus,
    BacktestPerformanceSnapshot,
    BacktestRun,
    BacktestSignal,
    BacktestStatus,
    BacktestType,
    DatasetSource,
    FillStatus,
    MarketDataSet,
    OrderType,
    SignalDirection,
    SignalType,
    SimulatedOrderFill,
    Timeframe,
)


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


async def create_account(
    session: AsyncSession,
    *,
    email: str = "trader@example.com",
    risk_level: Optional[int] = None,
    algo_trading_enabled: bool = False,
    created_at: Optional[datetime] = None,
) -> Account:
    account = Account(
        email=email,
        display_name=email.split("@")[0],
        risk_level=risk_level,
        algo_trading_enabled=algo_trading_enabled,
    )
    if created_at is not None:
        account.created_at = created_at
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


async def create_algorithm(
    session: AsyncSession,
    *,
    name: str = "Mean Reversion",
    evaluate: bool = True,
    status: AlgorithmStatus = AlgorithmStatus.ACTIVE,
    config: Optional[dict[str, Any]] = None,
) -> Algorithm:
    algorithm = Algorithm(name=name, evaluate=evaluate, status=status, config=config or {})
    session.add(algorithm)
    await session.commit()
    await session.refresh(algorithm)
    return algorithm


async def create_dataset(
    session: AsyncSession,
    *,
    label: str = "BTC minute bars",
    timeframe: Timeframe = Timeframe.MINUTE,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    integrity_score: int = 100,
    replay_capable: bool = True,
    instruments: Iterable[str] = ("BTCUSDT", "ETHUSDT"),
) -> MarketDataSet:
    now = datetime.now(timezone.utc)
    dataset = MarketDataSet(
        label=label,
        source=DatasetSource.EXCHANGE_STREAM,
        instrument_universe=list(instruments),
        timeframe=timeframe,
        start_at=start_at or now - timedelta(days=365),
        end_at=end_at or now - timedelta(hours=1),
        integrity_score=integrity_score,
        replay_capable=replay_capable,
    )
    session.add(dataset)
    await session.commit()
    await session.refresh(dataset)
    return dataset


async def create_run(
    session: AsyncSession,
    *,
    account: Account,
    algorithm: Algorithm,
    dataset: Optional[MarketDataSet] = None,
    status: BacktestStatus = BacktestStatus.PENDING,
    run_type: BacktestType = BacktestType.HISTORICAL,
    name: str = "Run",
    created_at: Optional[datetime] = None,
    **fields: Any,
) -> BacktestRun:
    values: dict[str, Any] = {
        "name": name,
        "type": run_type,
        "status": status,
        "account_id": account.id,
        "algorithm_id": algorithm.id,
        "market_data_set_id": dataset.id if dataset is not None else None,
        "initial_capital": 10_000,
        "trading_fee": 0.001,
        "start_date": utc(2024, 1, 1),
        "end_date": utc(2024, 3, 1),
        "deterministic_seed": "seed-1",
        "config_snapshot": {"dataset": {"id": dataset.id}} if dataset is not None else {},
    }
    values.update(fields)
    run = BacktestRun(**values)
    if created_at is not None:
        run.created_at = created_at
    session.add(run)
    await session.commit()
    await session.refresh(run)
    return run


async def add_signals(session: AsyncSession, run: BacktestRun, count: int, *, start: Optional[datetime] = None) -> None:
    base = start or utc(2024, 1, 2)
    session.add_all(
        BacktestSignal(
            backtest_id=run.id,
            timestamp=base + timedelta(minutes=index),
            signal_type=SignalType.ENTRY if index % 2 == 0 else SignalType.EXIT,
            instrument="BTCUSDT",
            direction=SignalDirection.LONG,
            quantity=1.0,
            price=100.0 + index,
        )
        for index in range(count)
    )
    await session.commit()


async def add_fills(session: AsyncSession, run: BacktestRun, count: int, *, start: Optional[datetime] = None) -> None:
    base = start or utc(2024, 1, 2)
    session.add_all(
        SimulatedOrderFill(
            backtest_id=run.id,
            order_type=OrderType.MARKET,
            status=FillStatus.FILLED,
            instrument="BTCUSDT" if index % 2 == 0 else "ETHUSDT",
            filled_quantity=1.0,
            average_price=100.0 + index,
            fees=0.1,
            slippage_bps=5.0,
            execution_timestamp=base + timedelta(minutes=index),
        )
        for index in range(count)
    )
    await session.commit()


async def add_snapshots(session: AsyncSession, run: BacktestRun, values: Iterable[float]) -> None:
    base = utc(2024, 1, 2)
    session.add_all(
        BacktestPerformanceSnapshot(
            backtest_id=run.id,
            timestamp=base + timedelta(days=index),
            portfolio_value=value,
            cumulative_return=(value - 10_000) / 10_000,
            drawdown=0.0,
        )
        for index, value in enumerate(values)
    )
    await session.commit()
