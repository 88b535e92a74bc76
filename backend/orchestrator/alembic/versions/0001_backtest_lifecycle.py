"""Create backtest lifecycle, promotion and comparison tables"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_backtest_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    return postgresql.ENUM(*values, name=name, create_type=False)


_algorithm_status = _enum("algorithm_status", "ACTIVE", "INACTIVE")
_market_data_source = _enum("market_data_source", "EXCHANGE_STREAM", "VENDOR_FEED", "INTERNAL_CAPTURE")
_market_data_timeframe = _enum("market_data_timeframe", "TICK", "SECOND", "MINUTE", "HOUR", "DAY")
_backtest_type = _enum(
    "backtest_type", "HISTORICAL", "LIVE_REPLAY", "PAPER_TRADING", "STRATEGY_OPTIMIZATION"
)
_backtest_status = _enum(
    "backtest_status", "PENDING", "RUNNING", "PAUSED", "COMPLETED", "FAILED", "CANCELLED"
)
_signal_type = _enum("signal_type", "ENTRY", "EXIT", "ADJUSTMENT", "RISK_CONTROL")
_signal_direction = _enum("signal_direction", "LONG", "SHORT", "FLAT")
_order_type = _enum("order_type", "MARKET", "LIMIT", "STOP", "STOP_LIMIT")
_fill_status = _enum("fill_status", "FILLED", "PARTIAL", "CANCELLED")
_strategy_status = _enum("strategy_status", "testing", "validated", "failed")
_strategy_shadow_status = _enum("strategy_shadow_status", "testing", "live", "retired")

_ENUMS = (
    _algorithm_status,
    _market_data_source,
    _market_data_timeframe,
    _backtest_type,
    _backtest_status,
    _signal_type,
    _signal_direction,
    _order_type,
    _fill_status,
    _strategy_status,
    _strategy_shadow_status,
)


def _money() -> sa.Numeric:
    return sa.Numeric(precision=24, scale=8)


def _json(default: str | None = "'{}'::jsonb") -> dict:
    column = {"type_": postgresql.JSONB(astext_type=sa.Text())}
    if default is not None:
        column["server_default"] = sa.text(default)
        column["nullable"] = False
    return column


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        sa.Column("algo_trading_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("risk_level", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
    )

    op.create_table(
        "algorithms",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("status", _algorithm_status, nullable=False, server_default="ACTIVE"),
        sa.Column("evaluate", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("config", **_json()),
        *_timestamps(updated=False),
        sa.PrimaryKeyConstraint("id", name="pk_algorithms"),
    )
    op.create_index("ix_algorithms_status_evaluate", "algorithms", ["status", "evaluate"], unique=False)

    op.create_table(
        "market_data_sets",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("label", sa.String(length=160), nullable=False),
        sa.Column("source", _market_data_source, nullable=False),
        sa.Column("instrument_universe", **_json("'[]'::jsonb")),
        sa.Column("timeframe", _market_data_timeframe, nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("integrity_score", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("checksum", sa.String(length=128), nullable=True),
        sa.Column("storage_location", sa.String(length=512), nullable=True),
        sa.Column("replay_capable", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("metadata", **_json()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_market_data_sets"),
    )
    op.create_index("ix_market_data_sets_end_at", "market_data_sets", ["end_at"], unique=False)
    op.create_index("ix_market_data_sets_timeframe", "market_data_sets", ["timeframe"], unique=False)

    op.create_table(
        "candles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instrument", sa.String(length=64), nullable=False),
        sa.Column("timeframe", _market_data_timeframe, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("open", _money(), nullable=False),
        sa.Column("high", _money(), nullable=False),
        sa.Column("low", _money(), nullable=False),
        sa.Column("close", _money(), nullable=False),
        sa.Column("volume", _money(), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_candles"),
        sa.UniqueConstraint(
            "instrument", "timeframe", "timestamp", name="uq_candles_instrument_timeframe_timestamp"
        ),
    )
    op.create_index("ix_candles_timestamp", "candles", ["timestamp"], unique=False)

    op.create_table(
        "backtests",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", _backtest_type, nullable=False, server_default="HISTORICAL"),
        sa.Column("status", _backtest_status, nullable=False, server_default="PENDING"),
        sa.Column("account_id", sa.String(length=36), nullable=False),
        sa.Column("algorithm_id", sa.String(length=36), nullable=False),
        sa.Column("market_data_set_id", sa.String(length=36), nullable=True),
        sa.Column("initial_capital", _money(), nullable=False),
        sa.Column("trading_fee", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("strategy_params", **_json()),
        sa.Column("config_snapshot", **_json()),
        sa.Column("deterministic_seed", sa.String(length=64), nullable=False),
        sa.Column("warning_flags", **_json("'[]'::jsonb")),
        sa.Column("checkpoint_state", **_json(None)),
        sa.Column("last_checkpoint_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_timestamp_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_timestamp_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("final_value", _money(), nullable=True),
        sa.Column("total_return", _money(), nullable=True),
        sa.Column("annualized_return", _money(), nullable=True),
        sa.Column("sharpe_ratio", _money(), nullable=True),
        sa.Column("max_drawdown", _money(), nullable=True),
        sa.Column("total_trades", sa.Integer(), nullable=True),
        sa.Column("winning_trades", sa.Integer(), nullable=True),
        sa.Column("win_rate", _money(), nullable=True),
        sa.Column("performance_metrics", **_json(None)),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["account_id"], ["accounts.id"], name="fk_backtests_account_id_accounts", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["algorithm_id"], ["algorithms.id"], name="fk_backtests_algorithm_id_algorithms", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["market_data_set_id"],
            ["market_data_sets.id"],
            name="fk_backtests_market_data_set_id_market_data_sets",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_backtests"),
    )
    op.create_index("ix_backtests_owner_created", "backtests", ["account_id", "created_at"], unique=False)
    op.create_index("ix_backtests_status_type", "backtests", ["status", "type"], unique=False)
    op.create_index(
        "ix_backtests_algorithm_created", "backtests", ["algorithm_id", "created_at"], unique=False
    )

    op.create_table(
        "backtest_signals",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("backtest_id", sa.String(length=36), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("signal_type", _signal_type, nullable=False),
        sa.Column("instrument", sa.String(length=64), nullable=False),
        sa.Column("direction", _signal_direction, nullable=False),
        sa.Column("quantity", _money(), nullable=False),
        sa.Column("price", _money(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Numeric(precision=6, scale=4), nullable=True),
        sa.Column("payload", **_json()),
        sa.ForeignKeyConstraint(
            ["backtest_id"], ["backtests.id"], name="fk_backtest_signals_backtest_id_backtests", ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id", name="pk_backtest_signals"),
    )
    op.create_index(
        "ix_backtest_signals_backtest_timestamp", "backtest_signals", ["backtest_id", "timestamp"], unique=False
    )

    op.create_table(
        "simulated_order_fills",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("backtest_id", sa.String(length=36), nullable=False),
        sa.Column("signal_id", sa.String(length=36), nullable=True),
        sa.Column("order_type", _order_type, nullable=False),
        sa.Column("status", _fill_status, nullable=False),
        sa.Column("instrument", sa.String(length=64), nullable=False),
        sa.Column("filled_quantity", _money(), nullable=False),
        sa.Column("average_price", _money(), nullable=False),
        sa.Column("fees", _money(), nullable=False),
        sa.Column("slippage_bps", _money(), nullable=False),
        sa.Column("execution_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", **_json()),
        sa.ForeignKeyConstraint(
            ["backtest_id"],
            ["backtests.id"],
            name="fk_simulated_order_fills_backtest_id_backtests",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["signal_id"],
            ["backtest_signals.id"],
            name="fk_simulated_order_fills_signal_id_backtest_signals",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_simulated_order_fills"),
    )
    op.create_index(
        "ix_simulated_order_fills_backtest_execution",
        "simulated_order_fills",
        ["backtest_id", "execution_timestamp"],
        unique=False,
    )

    op.create_table(
        "backtest_performance_snapshots",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("backtest_id", sa.String(length=36), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("portfolio_value", _money(), nullable=False),
        sa.Column("cash_balance", _money(), nullable=True),
        sa.Column("cumulative_return", _money(), nullable=False),
        sa.Column("drawdown", _money(), nullable=False),
        sa.ForeignKeyConstraint(
            ["backtest_id"],
            ["backtests.id"],
            name="fk_backtest_performance_snapshots_backtest_id_backtests",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_backtest_performance_snapshots"),
    )
    op.create_index(
        "ix_backtest_performance_snapshots_backtest_timestamp",
        "backtest_performance_snapshots",
        ["backtest_id", "timestamp"],
        unique=False,
    )

    op.create_table(
        "risk_pools",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False, server_default="30"),
        sa.PrimaryKeyConstraint("id", name="pk_risk_pools"),
        sa.UniqueConstraint("level", name="uq_risk_pools_level"),
    )

    op.create_table(
        "strategy_configs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("algorithm_id", sa.String(length=36), nullable=True),
        sa.Column("status", _strategy_status, nullable=False, server_default="testing"),
        sa.Column("shadow_status", _strategy_shadow_status, nullable=False, server_default="testing"),
        sa.Column("risk_pool_id", sa.String(length=36), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["algorithm_id"],
            ["algorithms.id"],
            name="fk_strategy_configs_algorithm_id_algorithms",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["risk_pool_id"],
            ["risk_pools.id"],
            name="fk_strategy_configs_risk_pool_id_risk_pools",
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_strategy_configs"),
    )
    op.create_index(
        "ix_strategy_configs_pool_shadow", "strategy_configs", ["risk_pool_id", "shadow_status"], unique=False
    )

    op.create_table(
        "strategy_scores",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("strategy_config_id", sa.String(length=36), nullable=False),
        sa.Column("overall_score", sa.Numeric(precision=6, scale=2), nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["strategy_config_id"],
            ["strategy_configs.id"],
            name="fk_strategy_scores_strategy_config_id_strategy_configs",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_strategy_scores"),
    )
    op.create_index(
        "ix_strategy_scores_strategy_calculated",
        "strategy_scores",
        ["strategy_config_id", "calculated_at"],
        unique=False,
    )

    op.create_table(
        "comparison_reports",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("created_by_id", sa.String(length=36), nullable=False),
        sa.Column("filters", **_json()),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(
            ["created_by_id"],
            ["accounts.id"],
            name="fk_comparison_reports_created_by_id_accounts",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_comparison_reports"),
    )

    op.create_table(
        "comparison_report_runs",
        sa.Column("report_id", sa.String(length=36), nullable=False),
        sa.Column("backtest_id", sa.String(length=36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(
            ["report_id"],
            ["comparison_reports.id"],
            name="fk_comparison_report_runs_report_id_comparison_reports",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["backtest_id"],
            ["backtests.id"],
            name="fk_comparison_report_runs_backtest_id_backtests",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("report_id", "backtest_id", name="pk_comparison_report_runs"),
    )


def downgrade() -> None:
    op.drop_table("comparison_report_runs")
    op.drop_table("comparison_reports")
    op.drop_index("ix_strategy_scores_strategy_calculated", table_name="strategy_scores")
    op.drop_table("strategy_scores")
    op.drop_index("ix_strategy_configs_pool_shadow", table_name="strategy_configs")
    op.drop_table("strategy_configs")
    op.drop_table("risk_pools")
    op.drop_index(
        "ix_backtest_performance_snapshots_backtest_timestamp", table_name="backtest_performance_snapshots"
    )
    op.drop_table("backtest_performance_snapshots")
    op.drop_index("ix_simulated_order_fills_backtest_execution", table_name="simulated_order_fills")
    op.drop_table("simulated_order_fills")
    op.drop_index("ix_backtest_signals_backtest_timestamp", table_name="backtest_signals")
    op.drop_table("backtest_signals")
    op.drop_index("ix_backtests_algorithm_created", table_name="backtests")
    op.drop_index("ix_backtests_status_type", table_name="backtests")
    op.drop_index("ix_backtests_owner_created", table_name="backtests")
    op.drop_table("backtests")
    op.drop_index("ix_candles_timestamp", table_name="candles")
    op.drop_table("candles")
    op.drop_index("ix_market_data_sets_timeframe", table_name="market_data_sets")
    op.drop_index("ix_market_data_sets_end_at", table_name="market_data_sets")
    op.drop_table("market_data_sets")
    op.drop_index("ix_algorithms_status_evaluate", table_name="algorithms")
    op.drop_table("algorithms")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
