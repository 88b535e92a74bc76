"""Lazily maintained default market data set derived from candle coverage."""
from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Candle, DatasetSource, MarketDataSet, Timeframe
from ..db.session import SessionFactoryProvider, SessionScope, get_session_factory
from .cursor import ensure_utc, isoformat
from .logging import get_logger


logger = get_logger("orchestrator.default_dataset")

DEFAULT_DATASET_LABEL = "Default candle dataset"


@dataclass(slots=True)
class CandleCoverage:
    instruments: List[str]
    start_at: Any
    end_at: Any
    row_count: int
    timeframe: Timeframe

    def checksum(self) -> str:
        summary = {
            "instruments": sorted(self.instruments),
            "startAt": isoformat(self.start_at),
            "endAt": isoformat(self.end_at),
            "rows": self.row_count,
            "timeframe": self.timeframe.value,
        }
        raw = json.dumps(summary, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:16]


class DefaultDatasetCache:
    """Remember the last synchronised checksum so unchanged coverage skips the database write."""

    def __init__(self, ttl_seconds: float = 3600.0) -> None:
        self._ttl = ttl_seconds
        self._checksum: Optional[str] = None
        self._dataset_id: Optional[str] = None
        self._expires_at = 0.0
        self.lock = asyncio.Lock()

    def lookup(self, checksum: str) -> Optional[str]:
        if self._checksum != checksum or self._dataset_id is None:
            return None
        if asyncio.get_running_loop().time() >= self._expires_at:
            return None
        return self._dataset_id

    def store(self, checksum: str, dataset_id: str) -> None:
        self._checksum = checksum
        self._dataset_id = dataset_id
        self._expires_at = asyncio.get_running_loop().time() + self._ttl

    def invalidate(self) -> None:
        self._checksum = None
        self._dataset_id = None
        self._expires_at = 0.0


class DefaultDatasetProvider:
    """Create or refresh the auto-generated dataset that covers stored candles."""

    def __init__(
        self,
        *,
        session_factory_provider: SessionFactoryProvider = get_session_factory,
        cache: Optional[DefaultDatasetCache] = None,
    ) -> None:
        self._session = SessionScope(session_factory_provider)
        self._cache = cache or DefaultDatasetCache()

    @property
    def cache(self) -> DefaultDatasetCache:
        return self._cache

    async def ensure_default_dataset(self) -> Optional[MarketDataSet]:
        async with self._cache.lock:
            async with self._session() as session:
                coverage = await self._summarise(session)
                if coverage is None:
                    logger.info("default_dataset_skipped", reason="no_candles")
                    return None

                checksum = coverage.checksum()
                cached_id = self._cache.lookup(checksum)
                if cached_id is not None:
                    dataset = await session.get(MarketDataSet, cached_id)
                    if dataset is not None:
                        return dataset
                    self._cache.invalidate()

                dataset = await self._upsert(session, coverage, checksum)
                self._cache.store(checksum, dataset.id)
                return dataset

    async def _summarise(self, session: AsyncSession) -> Optional[CandleCoverage]:
        bounds = await session.execute(
            select(func.min(Candle.timestamp), func.max(Candle.timestamp), func.count(Candle.id))
        )
        start_at, end_at, row_count = bounds.one()
        if not row_count:
            return None

        instruments = await session.execute(
            select(Candle.instrument).distinct().order_by(Candle.instrument)
        )
        dominant = await session.execute(
            select(Candle.timeframe, func.count(Candle.id).label("rows"))
            .group_by(Candle.timeframe)
            .order_by(func.count(Candle.id).desc())
            .limit(1)
        )
        timeframe = dominant.scalar_one()
        return CandleCoverage(
            instruments=list(instruments.scalars()),
            start_at=ensure_utc(start_at),
            end_at=ensure_utc(end_at),
            row_count=int(row_count),
            timeframe=Timeframe(timeframe),
        )

    async def _upsert(self, session: AsyncSession, coverage: CandleCoverage, checksum: str) -> MarketDataSet:
        result = await session.execute(
            select(MarketDataSet)
            .where(
                MarketDataSet.source == DatasetSource.INTERNAL_CAPTURE,
                MarketDataSet.label == DEFAULT_DATASET_LABEL,
            )
            .limit(1)
        )
        dataset = result.scalars().first()
        metadata: Dict[str, Any] = {"isDefault": True, "candleCount": coverage.row_count}
        if dataset is None:
            dataset = MarketDataSet(label=DEFAULT_DATASET_LABEL, source=DatasetSource.INTERNAL_CAPTURE)
            session.add(dataset)
        elif dataset.checksum == checksum:
            return dataset

        dataset.instrument_universe = coverage.instruments
        dataset.timeframe = coverage.timeframe
        dataset.start_at = coverage.start_at
        dataset.end_at = coverage.end_at
        dataset.integrity_score = 100
        dataset.checksum = checksum
        dataset.replay_capable = True
        dataset.metadata_ = metadata
        await session.commit()
        await session.refresh(dataset)
        logger.info(
            "default_dataset_synchronised",
            dataset_id=dataset.id,
            instruments=len(coverage.instruments),
            rows=coverage.row_count,
        )
        return dataset


__all__ = [
    "CandleCoverage",
    "DEFAULT_DATASET_LABEL",
    "DefaultDatasetCache",
    "DefaultDatasetProvider",
]
