"""Score-based promotion of strategies into capacity limited risk pools."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import RiskPool, ShadowStatus, StrategyConfig, StrategyScore, StrategyStatus
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import utcnow
from .queue import JobOptions, QueueJob, TaskQueue


LOGGER = logging.getLogger("orchestrator.promotion")

EVALUATE_STRATEGY_JOB = "evaluate-strategy"
SCORE_BANDS: Tuple[Tuple[float, int], ...] = ((90, 1), (75, 2), (60, 3), (50, 4), (40, 5))
RISK_POOL_NAMES: Dict[int, str] = {
    1: "Ultra Conservative",
    2: "Conservative",
    3: "Moderate",
    4: "Growth",
    5: "Aggressive",
}


def risk_level_for_score(score: float) -> Optional[int]:
    """Higher scores land in more conservative pools; below 40 is not promoted."""

    for threshold, level in SCORE_BANDS:
        if score >= threshold:
            return level
    return None


@dataclass
class PromotionOutcome:
    strategy_id: str
    outcome: str
    score: Optional[float] = None
    risk_level: Optional[int] = None
    pool_id: Optional[str] = None
    retired_strategy_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategyId": self.strategy_id,
            "outcome": self.outcome,
            "score": self.score,
            "riskLevel": self.risk_level,
            "poolId": self.pool_id,
            "retiredStrategyId": self.retired_strategy_id,
        }


class PromotionEngine:
    """Assign validated strategies to risk pools and rotate out the weakest member."""

    def __init__(
        self,
        *,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        queue: Optional[TaskQueue] = None,
        default_capacity: int = 30,
    ) -> None:
        self._session = SessionScope(session_factory_provider)
        self._queue = queue
        self._default_capacity = default_capacity

    async def ensure_risk_pools(self) -> int:
        """Create any missing pool for levels 1-5. Returns the number created."""

        async with self._session() as session:
            result = await session.execute(select(RiskPool.level))
            existing = set(result.scalars())
            missing = [level for level in RISK_POOL_NAMES if level not in existing]
            session.add_all(
                RiskPool(level=level, name=RISK_POOL_NAMES[level], capacity=self._default_capacity)
                for level in missing
            )
            await session.commit()
        if missing:
            LOGGER.info("risk_pools_created", extra={"levels": missing})
        return len(missing)

    async def latest_score(self, session: AsyncSession, strategy_id: str) -> Optional[StrategyScore]:
        result = await session.execute(
            select(StrategyScore)
            .where(StrategyScore.strategy_config_id == strategy_id)
            .order_by(StrategyScore.calculated_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def assign_to_risk_pool(self, strategy_id: str) -> PromotionOutcome:
        async with self._session() as session:
            score_row = await self.latest_score(session, strategy_id)
            if score_row is None:
                LOGGER.warning("promotion_no_score", extra={"strategy_id": strategy_id})
                return PromotionOutcome(strategy_id, "no_score")
            score = float(score_row.overall_score)

            strategy = await session.get(StrategyConfig, strategy_id)
            if strategy is None:
                raise LookupError(f"Strategy {strategy_id} not found")

            level = risk_level_for_score(score)
            if level is None:
                strategy.shadow_status = ShadowStatus.TESTING
                await session.commit()
                LOGGER.info("promotion_not_qualified", extra={"strategy_id": strategy_id, "score": score})
                return PromotionOutcome(strategy_id, "not_qualified", score=score)

            pool = (await session.execute(select(RiskPool).where(RiskPool.level == level))).scalars().first()
            if pool is None:
                LOGGER.error("promotion_pool_missing", extra={"risk_level": level})
                return PromotionOutcome(strategy_id, "pool_missing", score=score, risk_level=level)
            await session.commit()

            async with session.begin():
                return await self._assign(session, strategy_id, pool, level, score)

    async def _assign(
        self,
        session: AsyncSession,
        strategy_id: str,
        pool: RiskPool,
        level: int,
        score: float,
    ) -> PromotionOutcome:
        live_members = await session.execute(
            select(StrategyConfig)
            .where(
                StrategyConfig.risk_pool_id == pool.id,
                StrategyConfig.shadow_status == ShadowStatus.LIVE,
            )
            .with_for_update()
        )
        members = list(live_members.scalars())
        candidate = await session.get(StrategyConfig, strategy_id)
        if candidate is None:
            raise LookupError(f"Strategy {strategy_id} not found")

        outcome = PromotionOutcome(strategy_id, "promoted", score=score, risk_level=level, pool_id=pool.id)
        if any(member.id == candidate.id for member in members):
            outcome.outcome = "already_live"
            return outcome

        capacity = pool.capacity or self._default_capacity
        if len(members) < capacity:
            candidate.risk_pool_id = pool.id
            candidate.shadow_status = ShadowStatus.LIVE
            LOGGER.info(
                "promotion_assigned",
                extra={
                    "strategy_id": strategy_id,
                    "risk_level": level,
                    "score": score,
                    "members": len(members) + 1,
                    "capacity": capacity,
                },
            )
            return outcome

        worst = await self._worst_member(session, pool.id)
        if worst is None:
            LOGGER.warning("promotion_no_rotation_candidate", extra={"strategy_id": strategy_id, "risk_level": level})
            outcome.outcome = "no_rotation_candidate"
            outcome.pool_id = None
            return outcome

        worst_id, worst_score = worst
        if score <= worst_score:
            LOGGER.info(
                "promotion_rotation_skipped",
                extra={"strategy_id": strategy_id, "score": score, "worst_id": worst_id, "worst_score": worst_score},
            )
            outcome.outcome = "rotation_skipped"
            outcome.pool_id = None
            return outcome

        retired = await session.get(StrategyConfig, worst_id)
        if retired is not None:
            retired.shadow_status = ShadowStatus.RETIRED
            retired.risk_pool_id = None
        candidate.shadow_status = ShadowStatus.LIVE
        candidate.risk_pool_id = pool.id
        LOGGER.info(
            "promotion_rotated",
            extra={
                "risk_level": level,
                "retired_id": worst_id,
                "retired_score": worst_score,
                "strategy_id": strategy_id,
                "score": score,
            },
        )
        outcome.outcome = "rotated"
        outcome.retired_strategy_id = worst_id
        return outcome

    @staticmethod
    async def _worst_member(session: AsyncSession, pool_id: str) -> Optional[Tuple[str, float]]:
        latest = (
            select(
                StrategyScore.strategy_config_id.label("strategy_config_id"),
                func.max(StrategyScore.calculated_at).label("calculated_at"),
            )
            .group_by(StrategyScore.strategy_config_id)
            .subquery()
        )
        result = await session.execute(
            select(StrategyConfig.id, StrategyScore.overall_score)
            .join(latest, latest.c.strategy_config_id == StrategyConfig.id)
            .join(
                StrategyScore,
                and_(
                    StrategyScore.strategy_config_id == StrategyConfig.id,
                    StrategyScore.calculated_at == latest.c.calculated_at,
                ),
            )
            .where(StrategyConfig.risk_pool_id == pool_id, StrategyConfig.shadow_status == ShadowStatus.LIVE)
            .order_by(StrategyScore.overall_score.asc(), StrategyConfig.id.asc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], float(row[1])

    async def process_strategy_evaluation(self, strategy_id: str) -> PromotionOutcome:
        LOGGER.info("strategy_evaluation_started", extra={"strategy_id": strategy_id})
        try:
            await self._set_status(strategy_id, StrategyStatus.VALIDATED)
            return await self.assign_to_risk_pool(strategy_id)
        except Exception:
            LOGGER.exception("strategy_evaluation_failed", extra={"strategy_id": strategy_id})
            await self._set_status(strategy_id, StrategyStatus.FAILED)
            raise

    async def handle_evaluation_job(self, job: QueueJob) -> PromotionOutcome:
        strategy_id = job.payload.get("strategyConfigId")
        if not strategy_id:
            raise ValueError("Evaluation job payload is missing strategyConfigId")
        return await self.process_strategy_evaluation(strategy_id)

    async def schedule_evaluations(self) -> int:
        """Queue an evaluation job for every strategy still in testing."""

        if self._queue is None:
            raise RuntimeError("No evaluation queue configured")
        async with self._session() as session:
            result = await session.execute(
                select(StrategyConfig.id).where(StrategyConfig.status == StrategyStatus.TESTING)
            )
            strategy_ids = list(result.scalars())
        LOGGER.info("strategy_evaluation_schedule", extra={"strategies": len(strategy_ids)})

        queued = 0
        for strategy_id in strategy_ids:
            timestamp = utcnow().isoformat()
            try:
                added = await self._queue.enqueue(
                    f"{EVALUATE_STRATEGY_JOB}:{strategy_id}:{timestamp}",
                    EVALUATE_STRATEGY_JOB,
                    {"strategyConfigId": strategy_id, "timestamp": timestamp},
                    JobOptions(attempts=3, backoff_delay=5.0, remove_on_complete=100, remove_on_fail=50),
                )
            except Exception:
                LOGGER.error("strategy_evaluation_enqueue_failed", extra={"strategy_id": strategy_id}, exc_info=True)
                continue
            if added:
                queued += 1
        return queued

    async def _set_status(self, strategy_id: str, status: StrategyStatus) -> None:
        async with self._session() as session:
            strategy = await session.get(StrategyConfig, strategy_id)
            if strategy is None:
                raise LookupError(f"Strategy {strategy_id} not found")
            strategy.status = status
            await session.commit()


__all__ = [
    "EVALUATE_STRATEGY_JOB",
    "PromotionEngine",
    "PromotionOutcome",
    "RISK_POOL_NAMES",
    "risk_level_for_score",
]
