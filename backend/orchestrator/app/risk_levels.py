"""Risk level policy table used by automated orchestration."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..db.models import Timeframe
from .slippage import SlippageModelType


DEFAULT_RISK_LEVEL = 3
CUSTOM_RISK_LEVEL = 6
MIN_DATASET_INTEGRITY_SCORE = 70
BACKTEST_STANDARD_CAPITAL = 10_000
STAGGER_INTERVAL_SECONDS = 30
DUPLICATE_WINDOW_HOURS = 24


@dataclass(frozen=True, slots=True)
class RiskLevelConfig:
    level: int
    lookback_days: int
    slippage_model: SlippageModelType
    slippage_bps: float
    trading_fee: float
    preferred_timeframes: Tuple[Timeframe, ...]


RISK_LEVEL_CONFIGS: Dict[int, RiskLevelConfig] = {
    1: RiskLevelConfig(1, 180, SlippageModelType.VOLUME_BASED, 10, 0.0015, (Timeframe.HOUR, Timeframe.DAY)),
    2: RiskLevelConfig(2, 120, SlippageModelType.VOLUME_BASED, 8, 0.0012, (Timeframe.HOUR, Timeframe.DAY)),
    3: RiskLevelConfig(3, 90, SlippageModelType.FIXED, 5, 0.001, (Timeframe.MINUTE, Timeframe.HOUR)),
    4: RiskLevelConfig(4, 60, SlippageModelType.FIXED, 5, 0.001, (Timeframe.MINUTE, Timeframe.HOUR)),
    5: RiskLevelConfig(5, 30, SlippageModelType.FIXED, 3, 0.0008, (Timeframe.MINUTE, Timeframe.SECOND)),
}


def resolve_risk_level(level: Optional[int]) -> int:
    """Map unset, custom and unknown levels onto the default level."""

    if level is None or level == CUSTOM_RISK_LEVEL or level not in RISK_LEVEL_CONFIGS:
        return DEFAULT_RISK_LEVEL
    return level


def get_risk_config(level: Optional[int]) -> RiskLevelConfig:
    return RISK_LEVEL_CONFIGS[resolve_risk_level(level)]


__all__ = [
    "BACKTEST_STANDARD_CAPITAL",
    "CUSTOM_RISK_LEVEL",
    "DEFAULT_RISK_LEVEL",
    "DUPLICATE_WINDOW_HOURS",
    "MIN_DATASET_INTEGRITY_SCORE",
    "RISK_LEVEL_CONFIGS",
    "RiskLevelConfig",
    "STAGGER_INTERVAL_SECONDS",
    "get_risk_config",
    "resolve_risk_level",
]
