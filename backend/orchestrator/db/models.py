"""SQLAlchemy ORM models for the orchestrator data store."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


JSON_EMPTY_OBJECT = text("'{}'::jsonb")
JSON_EMPTY_ARRAY = text("'[]'::jsonb")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_enum_values)


def _money(**kwargs: Any) -> Numeric:
    return Numeric(precision=24, scale=8, asdecimal=False, **kwargs)


class AlgorithmStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class DatasetSource(str, enum.Enum):
    """Origin of a market data set."""

    EXCHANGE_STREAM = "EXCHANGE_STREAM"
    VENDOR_FEED = "VENDOR_FEED"
    INTERNAL_CAPTURE = "INTERNAL_CAPTURE"


class Timeframe(str, enum.Enum):
    TICK = "TICK"
    SECOND = "SECOND"
    MINUTE = "MINUTE"
    HOUR = "HOUR"
    DAY = "DAY"


class BacktestType(str, enum.Enum):
    """Execution mode of a backtest run."""

    HISTORICAL = "HISTORICAL"
    LIVE_REPLAY = "LIVE_REPLAY"
    PAPER_TRADING = "PAPER_TRADING"
    STRATEGY_OPTIMIZATION = "STRATEGY_OPTIMIZATION"


class BacktestStatus(str, enum.Enum):
    """Lifecycle status of a backtest run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SignalType(str, enum.Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    ADJUSTMENT = "ADJUSTMENT"
    RISK_CONTROL = "RISK_CONTROL"


class SignalDirection(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    FLAT = "FLAT"


class OrderType(str, enum.Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_LIMIT = "STOP_LIMIT"


class FillStatus(str, enum.Enum):
    FILLED = "FILLED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"


class StrategyStatus(str, enum.Enum):
    """Validation state of a strategy configuration."""

    TESTING = "testing"
    VALIDATED = "validated"
    FAILED = "failed"


class ShadowStatus(str, enum.Enum):
    """Deployment state of a strategy inside the risk pools."""

    TESTING = "testing"
    LIVE = "live"
    RETIRED = "retired"


class Account(Base):
    """Trading account owning backtests and comparison reports."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(120))
    algo_trading_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    risk_level: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class Algorithm(Base):
    """Trading algorithm definition that backtests exercise."""

    __tablename__ = "algorithms"
    __table_args__ = (Index("ix_algorithms_status_evaluate", "status", "evaluate"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[AlgorithmStatus] = mapped_column(
        _enum(AlgorithmStatus, "algorithm_status"),
        nullable=False,
        default=AlgorithmStatus.ACTIVE,
        server_default=AlgorithmStatus.ACTIVE.value,
    )
    evaluate: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    config: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class MarketDataSet(Base):
    """Catalogued market data set usable for historical or replayed runs."""

    __tablename__ = "market_data_sets"
    __table_args__ = (
        Index("ix_market_data_sets_end_at", "end_at"),
        Index("ix_market_data_sets_timeframe", "timeframe"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    label: Mapped[str] = mapped_column(String(160), nullable=False)
    source: Mapped[DatasetSource] = mapped_column(
        _enum(DatasetSource, "market_data_source"), nullable=False
    )
    instrument_universe: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=JSON_EMPTY_ARRAY
    )
    timeframe: Mapped[Timeframe] = mapped_column(_enum(Timeframe, "market_data_timeframe"), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    integrity_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    checksum: Mapped[Optional[str]] = mapped_column(String(128))
    storage_location: Mapped[Optional[str]] = mapped_column(String(512))
    replay_capable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class Candle(Base):
    """OHLCV bar captured by the market data collectors."""

    __tablename__ = "candles"
    __table_args__ = (
        UniqueConstraint("instrument", "timeframe", "timestamp", name="uq_candles_instrument_timeframe_timestamp"),
        Index("ix_candles_timestamp", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument: Mapped[str] = mapped_column(String(64), nullable=False)
    timeframe: Mapped[Timeframe] = mapped_column(_enum(Timeframe, "market_data_timeframe"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    open: Mapped[float] = mapped_column(_money(), nullable=False)
    high: Mapped[float] = mapped_column(_money(), nullable=False)
    low: Mapped[float] = mapped_column(_money(), nullable=False)
    close: Mapped[float] = mapped_column(_money(), nullable=False)
    volume: Mapped[float] = mapped_column(_money(), nullable=False, default=0)


class BacktestRun(Base):
    """Single backtest execution with its immutable configuration snapshot."""

    __tablename__ = "backtests"
    __table_args__ = (
        Index("ix_backtests_owner_created", "account_id", "created_at"),
        Index("ix_backtests_status_type", "status", "type"),
        Index("ix_backtests_algorithm_created", "algorithm_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    type: Mapped[BacktestType] = mapped_column(
        _enum(BacktestType, "backtest_type"),
        nullable=False,
        default=BacktestType.HISTORICAL,
        server_default=BacktestType.HISTORICAL.value,
    )
    status: Mapped[BacktestStatus] = mapped_column(
        _enum(BacktestStatus, "backtest_status"),
        nullable=False,
        default=BacktestStatus.PENDING,
        server_default=BacktestStatus.PENDING.value,
    )
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    algorithm_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("algorithms.id", ondelete="CASCADE"), nullable=False
    )
    market_data_set_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("market_data_sets.id", ondelete="SET NULL")
    )
    initial_capital: Mapped[float] = mapped_column(_money(), nullable=False)
    trading_fee: Mapped[float] = mapped_column(
        Numeric(precision=10, scale=6, asdecimal=False), nullable=False, default=0.001
    )
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    strategy_params: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )
    config_snapshot: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )
    deterministic_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    warning_flags: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=JSON_EMPTY_ARRAY
    )
    checkpoint_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB(none_as_null=True))
    last_checkpoint_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_timestamp_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    total_timestamp_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    final_value: Mapped[Optional[float]] = mapped_column(_money())
    total_return: Mapped[Optional[float]] = mapped_column(_money())
    annualized_return: Mapped[Optional[float]] = mapped_column(_money())
    sharpe_ratio: Mapped[Optional[float]] = mapped_column(_money())
    max_drawdown: Mapped[Optional[float]] = mapped_column(_money())
    total_trades: Mapped[Optional[int]] = mapped_column(Integer)
    winning_trades: Mapped[Optional[int]] = mapped_column(Integer)
    win_rate: Mapped[Optional[float]] = mapped_column(_money())
    performance_metrics: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB(none_as_null=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class BacktestSignal(Base):
    """Strategy signal emitted during a backtest."""

    __tablename__ = "backtest_signals"
    __table_args__ = (Index("ix_backtest_signals_backtest_timestamp", "backtest_id", "timestamp"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    backtest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    signal_type: Mapped[SignalType] = mapped_column(_enum(SignalType, "signal_type"), nullable=False)
    instrument: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[SignalDirection] = mapped_column(
        _enum(SignalDirection, "signal_direction"), nullable=False
    )
    quantity: Mapped[float] = mapped_column(_money(), nullable=False)
    price: Mapped[Optional[float]] = mapped_column(_money())
    reason: Mapped[Optional[str]] = mapped_column(Text)
    confidence: Mapped[Optional[float]] = mapped_column(Numeric(precision=6, scale=4, asdecimal=False))
    payload: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )


class SimulatedOrderFill(Base):
    """Order fill produced by the simulation engine."""

    __tablename__ = "simulated_order_fills"
    __table_args__ = (
        Index("ix_simulated_order_fills_backtest_execution", "backtest_id", "execution_timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    backtest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False
    )
    signal_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("backtest_signals.id", ondelete="SET NULL")
    )
    order_type: Mapped[OrderType] = mapped_column(_enum(OrderType, "order_type"), nullable=False)
    status: Mapped[FillStatus] = mapped_column(_enum(FillStatus, "fill_status"), nullable=False)
    instrument: Mapped[str] = mapped_column(String(64), nullable=False)
    filled_quantity: Mapped[float] = mapped_column(_money(), nullable=False)
    average_price: Mapped[float] = mapped_column(_money(), nullable=False)
    fees: Mapped[float] = mapped_column(_money(), nullable=False, default=0)
    slippage_bps: Mapped[float] = mapped_column(_money(), nullable=False, default=0)
    execution_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )


class BacktestPerformanceSnapshot(Base):
    """Portfolio valuation sampled during a backtest."""

    __tablename__ = "backtest_performance_snapshots"
    __table_args__ = (
        Index("ix_backtest_performance_snapshots_backtest_timestamp", "backtest_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    backtest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    portfolio_value: Mapped[float] = mapped_column(_money(), nullable=False)
    cash_balance: Mapped[Optional[float]] = mapped_column(_money())
    cumulative_return: Mapped[float] = mapped_column(_money(), nullable=False, default=0)
    drawdown: Mapped[float] = mapped_column(_money(), nullable=False, default=0)


class RiskPool(Base):
    """Capacity limited bucket of live strategies for one risk level."""

    __tablename__ = "risk_pools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    level: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default="30")


class StrategyConfig(Base):
    """Strategy configuration moving through validation and live deployment."""

    __tablename__ = "strategy_configs"
    __table_args__ = (
        Index("ix_strategy_configs_pool_shadow", "risk_pool_id", "shadow_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    algorithm_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("algorithms.id", ondelete="SET NULL")
    )
    status: Mapped[StrategyStatus] = mapped_column(
        _enum(StrategyStatus, "strategy_status"),
        nullable=False,
        default=StrategyStatus.TESTING,
        server_default=StrategyStatus.TESTING.value,
    )
    shadow_status: Mapped[ShadowStatus] = mapped_column(
        _enum(ShadowStatus, "strategy_shadow_status"),
        nullable=False,
        default=ShadowStatus.TESTING,
        server_default=ShadowStatus.TESTING.value,
    )
    risk_pool_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("risk_pools.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class StrategyScore(Base):
    """Score produced by the external strategy evaluation."""

    __tablename__ = "strategy_scores"
    __table_args__ = (
        Index("ix_strategy_scores_strategy_calculated", "strategy_config_id", "calculated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    strategy_config_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("strategy_configs.id", ondelete="CASCADE"), nullable=False
    )
    overall_score: Mapped[float] = mapped_column(Numeric(precision=6, scale=2, asdecimal=False), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class ComparisonReport(Base):
    """Saved comparison of several backtests."""

    __tablename__ = "comparison_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_by_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    filters: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=JSON_EMPTY_OBJECT
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class ComparisonReportRun(Base):
    """Ordered membership of a backtest in a comparison report."""

    __tablename__ = "comparison_report_runs"

    report_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("comparison_reports.id", ondelete="CASCADE"), primary_key=True
    )
    backtest_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("backtests.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


__all__ = [
    "Account",
    "Algorithm",
    "AlgorithmStatus",
    "BacktestPerformanceSnapshot",
    "BacktestRun",
    "BacktestSignal",
    "BacktestStatus",
    "BacktestType",
    "Candle",
    "ComparisonReport",
    "ComparisonReportRun",
    "DatasetSource",
    "FillStatus",
    "JSON_EMPTY_ARRAY",
    "JSON_EMPTY_OBJECT",
    "MarketDataSet",
    "OrderType",
    "RiskPool",
    "ShadowStatus",
    "SignalDirection",
    "SignalType",
    "StrategyConfig",
    "StrategyScore",
    "StrategyStatus",
    "Timeframe",
]
