from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from backend.orchestrator.app.default_dataset import (
    DEFAULT_DATASET_LABEL,
    DefaultDatasetCache,
    DefaultDatasetProvider,
)
from backend.orchestrator.db.models import Candle, DatasetSource, Timeframe

from .utils import utc


async def _add_candles(session: AsyncSession, instrument: str, count: int, timeframe=Timeframe.MINUTE, start=None):
    base = start or utc(2024, 1, 1)
    session.add_all(
        Candle(
            instrument=instrument,
            timeframe=timeframe,
            timestamp=base + timedelta(minutes=index),
            open=100.0,
            high=101.0,
            low=99.0,
            close=100.5,
            volume=10.0,
        )
        for index in range(count)
    )
    await session.commit()


async def test_no_candles_means_no_default_dataset(db_session: AsyncSession) -> None:
    provider = DefaultDatasetProvider()

    assert await provider.ensure_default_dataset() is None


async def test_default_dataset_summarises_candle_coverage(db_session: AsyncSession) -> None:
    await _add_candles(db_session, "ETHUSDT", 3)
    await _add_candles(db_session, "BTCUSDT", 5)
    await _add_candles(db_session, "BTCUSDT", 1, timeframe=Timeframe.HOUR, start=utc(2024, 2, 1))
    provider = DefaultDatasetProvider()

    dataset = await provider.ensure_default_dataset()

    assert dataset is not None
    assert dataset.label == DEFAULT_DATASET_LABEL
    assert dataset.source is DatasetSource.INTERNAL_CAPTURE
    assert dataset.instrument_universe == ["BTCUSDT", "ETHUSDT"]
    assert dataset.timeframe is Timeframe.MINUTE
    assert dataset.metadata_ == {"isDefault": True, "candleCount": 9}
    assert dataset.replay_capable is True
    assert len(dataset.checksum) == 16


async def test_unchanged_coverage_reuses_cached_dataset(db_session: AsyncSession) -> None:
    await _add_candles(db_session, "BTCUSDT", 4)
    provider = DefaultDatasetProvider(cache=DefaultDatasetCache(ttl_seconds=60))

    first = await provider.ensure_default_dataset()
    second = await provider.ensure_default_dataset()

    assert first.id == second.id
    assert provider.cache.lookup(first.checksum) == first.id


async def test_new_candles_refresh_the_same_dataset(db_session: AsyncSession) -> None:
    await _add_candles(db_session, "BTCUSDT", 4)
    provider = DefaultDatasetProvider()
    first = await provider.ensure_default_dataset()
    first_checksum = first.checksum

    await _add_candles(db_session, "SOLUSDT", 2, start=utc(2024, 3, 1))
    refreshed = await provider.ensure_default_dataset()

    assert refreshed.id == first.id
    assert refreshed.checksum != first_checksum
    assert refreshed.instrument_universe == ["BTCUSDT", "SOLUSDT"]
    assert refreshed.metadata_["candleCount"] == 6


async def test_expired_cache_entry_is_ignored() -> None:
    cache = DefaultDatasetCache(ttl_seconds=0)
    cache.store("abc", "dataset-1")

    assert cache.lookup("abc") is None
    assert cache.lookup("other") is None
