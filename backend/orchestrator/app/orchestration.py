"""Per-account automatic backtest orchestration."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from ..db.models import (
    Account,
    Algorithm,
    AlgorithmStatus,
    BacktestRun,
    BacktestStatus,
    BacktestType,
    MarketDataSet,
)
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import utcnow
from .errors import NotFound
from .lifecycle import BacktestCreateParams, BacktestLifecycleService
from .risk_levels import (
    BACKTEST_STANDARD_CAPITAL,
    DEFAULT_RISK_LEVEL,
    DUPLICATE_WINDOW_HOURS,
    MIN_DATASET_INTEGRITY_SCORE,
    RiskLevelConfig,
    get_risk_config,
    resolve_risk_level,
)


LOGGER = logging.getLogger("orchestrator.orchestration")

DUPLICATE_REASON = "Duplicate backtest exists within 24 hours"
NO_DATASET_REASON = "No suitable dataset found for risk configuration"
NON_BLOCKING_STATUSES = (BacktestStatus.FAILED, BacktestStatus.CANCELLED)


class BacktestOrchestrationService:
    """Create the daily backtests for every testable algorithm of an account."""

    def __init__(
        self,
        *,
        lifecycle: BacktestLifecycleService,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        capital: float = BACKTEST_STANDARD_CAPITAL,
    ) -> None:
        self._lifecycle = lifecycle
        self._session = SessionScope(session_factory_provider)
        self._capital = capital

    async def get_eligible_accounts(self) -> List[Account]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(Account).where(Account.algo_trading_enabled.is_(True)).order_by(Account.created_at)
                )
                accounts = list(result.scalars())
        except Exception:
            LOGGER.exception("orchestration_eligible_accounts_failed")
            return []
        LOGGER.info("orchestration_eligible_accounts", extra={"count": len(accounts)})
        return accounts

    async def get_testable_algorithms(self) -> List[Algorithm]:
        async with self._session() as session:
            result = await session.execute(
                select(Algorithm)
                .where(Algorithm.evaluate.is_(True), Algorithm.status == AlgorithmStatus.ACTIVE)
                .order_by(Algorithm.created_at, Algorithm.id)
            )
            return list(result.scalars())

    async def orchestrate_for_account(self, account_id: str) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "accountId": account_id,
            "backtestsCreated": 0,
            "backtestIds": [],
            "skippedAlgorithms": [],
            "errors": [],
        }
        try:
            async with self._session() as session:
                account = await session.get(Account, account_id)
            if account is None:
                raise NotFound("Account", account_id)
            policy = get_risk_config(account.risk_level)
            LOGGER.info(
                "orchestration_account_started",
                extra={"account_id": account_id, "risk_level": policy.level},
            )

            algorithms = await self.get_testable_algorithms()
            if not algorithms:
                LOGGER.info("orchestration_no_testable_algorithms", extra={"account_id": account_id})
                return summary

            for algorithm in algorithms:
                try:
                    await self._process_algorithm(account, algorithm, policy, summary)
                except Exception as exc:
                    LOGGER.exception(
                        "orchestration_algorithm_failed",
                        extra={"account_id": account_id, "algorithm_id": algorithm.id},
                    )
                    summary["errors"].append(f"Failed to process algorithm {algorithm.id}: {exc}")
                    summary["skippedAlgorithms"].append(_skipped(algorithm, str(exc)))
        except Exception as exc:
            LOGGER.exception("orchestration_account_failed", extra={"account_id": account_id})
            summary["errors"].append(f"Failed to orchestrate for account {account_id}: {exc}")
            return summary

        LOGGER.info(
            "orchestration_account_completed",
            extra={
                "account_id": account_id,
                "created": summary["backtestsCreated"],
                "skipped": len(summary["skippedAlgorithms"]),
            },
        )
        return summary

    async def _process_algorithm(
        self,
        account: Account,
        algorithm: Algorithm,
        policy: RiskLevelConfig,
        summary: Dict[str, Any],
    ) -> None:
        if await self.is_duplicate(account.id, algorithm.id):
            LOGGER.debug(
                "orchestration_duplicate_skipped",
                extra={"account_id": account.id, "algorithm_id": algorithm.id},
            )
            summary["skippedAlgorithms"].append(_skipped(algorithm, DUPLICATE_REASON))
            return

        dataset = await self.select_dataset(policy)
        if dataset is None:
            LOGGER.warning("orchestration_no_dataset", extra={"risk_level": policy.level})
            summary["skippedAlgorithms"].append(_skipped(algorithm, NO_DATASET_REASON))
            return

        run = await self.create_orchestrated_run(account, algorithm, policy, dataset)
        summary["backtestsCreated"] += 1
        summary["backtestIds"].append(run.id)
        LOGGER.info(
            "orchestration_backtest_created",
            extra={"run_id": run.id, "account_id": account.id, "algorithm_id": algorithm.id},
        )

    async def is_duplicate(self, account_id: str, algorithm_id: str) -> bool:
        """A live run for the pair created inside the dedup window blocks a new one."""

        since = utcnow() - timedelta(hours=DUPLICATE_WINDOW_HOURS)
        async with self._session() as session:
            result = await session.execute(
                select(BacktestRun.id)
                .where(
                    BacktestRun.account_id == account_id,
                    BacktestRun.algorithm_id == algorithm_id,
                    BacktestRun.created_at >= since,
                    BacktestRun.status.not_in(NON_BLOCKING_STATUSES),
                )
                .limit(1)
            )
            return result.first() is not None

    async def select_dataset(self, policy: RiskLevelConfig) -> Optional[MarketDataSet]:
        """Prefer the freshest dataset in a preferred timeframe, then any fresh one."""

        cutoff = utcnow() - timedelta(days=policy.lookback_days)
        base = (
            select(MarketDataSet)
            .where(
                MarketDataSet.integrity_score >= MIN_DATASET_INTEGRITY_SCORE,
                MarketDataSet.end_at >= cutoff,
            )
            .order_by(MarketDataSet.end_at.desc(), MarketDataSet.integrity_score.desc())
            .limit(1)
        )
        try:
            async with self._session() as session:
                preferred = await session.execute(
                    base.where(MarketDataSet.timeframe.in_(policy.preferred_timeframes))
                )
                dataset = preferred.scalars().first()
                if dataset is not None:
                    return dataset
                LOGGER.warning("orchestration_dataset_fallback", extra={"risk_level": policy.level})
                fallback = await session.execute(base)
                return fallback.scalars().first()
        except Exception:
            LOGGER.exception("orchestration_dataset_selection_failed", extra={"risk_level": policy.level})
            return None

    async def create_orchestrated_run(
        self,
        account: Account,
        algorithm: Algorithm,
        policy: RiskLevelConfig,
        dataset: MarketDataSet,
    ) -> BacktestRun:
        now = utcnow()
        bps = float(policy.slippage_bps)
        params = BacktestCreateParams(
            name=f"Auto-{algorithm.name}-{now:%Y-%m-%d}",
            description=f"Orchestrated backtest for {algorithm.name}",
            type=BacktestType.HISTORICAL,
            algorithm_id=algorithm.id,
            market_data_set_id=dataset.id,
            initial_capital=self._capital,
            trading_fee=policy.trading_fee,
            slippage_model=policy.slippage_model.value,
            fixed_slippage_bps=bps,
            base_slippage_bps=bps,
            start_date=now - timedelta(days=policy.lookback_days),
            end_date=now,
            strategy_params=dict((algorithm.config or {}).get("parameters") or {}),
            snapshot_extras={
                "orchestrated": True,
                "orchestratedAt": now.isoformat(),
                "riskLevel": account.risk_level if account.risk_level is not None else DEFAULT_RISK_LEVEL,
            },
        )
        detail = await self._lifecycle.create(account.id, params)

        async with self._session() as session:
            run = await session.get(BacktestRun, detail["id"])
            if run is None:
                raise RuntimeError(f"Failed to fetch created backtest {detail['id']}")
            return run

    async def process_orchestration_job(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        account_id = payload.get("accountId")
        if not account_id:
            raise ValueError("Orchestration job payload is missing accountId")
        summary = await self.orchestrate_for_account(account_id)
        LOGGER.info(
            "orchestration_job_processed",
            extra={
                "account_id": account_id,
                "requested_risk_level": resolve_risk_level(payload.get("riskLevel")),
                "created": summary["backtestsCreated"],
                "errors": len(summary["errors"]),
            },
        )
        return summary


def _skipped(algorithm: Algorithm, reason: str) -> Dict[str, str]:
    return {"algorithmId": algorithm.id, "algorithmName": algorithm.name or "Unknown", "reason": reason}


__all__ = [
    "BacktestOrchestrationService",
    "DUPLICATE_REASON",
    "NO_DATASET_REASON",
]
