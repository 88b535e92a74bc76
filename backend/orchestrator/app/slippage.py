"""Slippage estimation used to price simulated fills."""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional


DEFAULT_FIXED_BPS = 5.0
DEFAULT_BASE_SLIPPAGE_BPS = 5.0
DEFAULT_VOLUME_IMPACT_FACTOR = 100.0
DEFAULT_MAX_SLIPPAGE_BPS = 500.0
DEFAULT_HISTORICAL_BPS = 10.0
UNKNOWN_MODEL_BPS = 5.0
FALLBACK_VOLUME_RATIO = 0.001


class SlippageModelType(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    VOLUME_BASED = "volume"
    HISTORICAL = "historical"


@dataclass(slots=True)
class SlippageConfig:
    """Slippage model parameters. ``None`` fields fall back to model defaults."""

    type: SlippageModelType | str = SlippageModelType.FIXED
    fixed_bps: Optional[float] = None
    base_slippage_bps: Optional[float] = None
    volume_impact_factor: Optional[float] = None
    max_slippage_bps: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Mapping[str, Any]]) -> "SlippageConfig":
        """Rebuild a config from the ``slippage`` block of a run snapshot."""

        data = dict(snapshot or {})
        return cls(
            type=data.get("model") or SlippageModelType.FIXED,
            fixed_bps=data.get("fixedBps"),
            base_slippage_bps=data.get("baseBps"),
            volume_impact_factor=data.get("volumeImpactFactor"),
            max_slippage_bps=data.get("maxSlippageBps"),
        )


@dataclass(slots=True, frozen=True)
class SlippageResult:
    slippage_bps: float
    execution_price: float
    price_impact: float
    original_price: float


def _model_type(value: SlippageModelType | str | None) -> Optional[SlippageModelType]:
    if value is None:
        return SlippageModelType.FIXED
    if isinstance(value, SlippageModelType):
        return value
    try:
        return SlippageModelType(str(value).lower())
    except ValueError:
        return None


def build_config(config: Optional[SlippageConfig] = None) -> SlippageConfig:
    """Return a copy of *config* with every default filled in."""

    source = config or SlippageConfig()
    return SlippageConfig(
        type=source.type if source.type is not None else SlippageModelType.FIXED,
        fixed_bps=DEFAULT_FIXED_BPS if source.fixed_bps is None else source.fixed_bps,
        base_slippage_bps=(
            DEFAULT_BASE_SLIPPAGE_BPS if source.base_slippage_bps is None else source.base_slippage_bps
        ),
        volume_impact_factor=(
            DEFAULT_VOLUME_IMPACT_FACTOR
            if source.volume_impact_factor is None
            else source.volume_impact_factor
        ),
        max_slippage_bps=(
            DEFAULT_MAX_SLIPPAGE_BPS if source.max_slippage_bps is None else source.max_slippage_bps
        ),
    )


def calculate_slippage_bps(
    quantity: float,
    price: float,
    config: Optional[SlippageConfig] = None,
    daily_volume: Optional[float] = None,
) -> float:
    """Return the slippage in basis points, capped at the configured maximum.

    The historical model reads ``fixed_bps`` from the caller's config before
    defaults are applied so that its own 10 bps default is preserved.
    """

    effective = build_config(config)
    model = _model_type(effective.type)

    if model is SlippageModelType.NONE:
        bps = 0.0
    elif model is SlippageModelType.FIXED:
        bps = float(effective.fixed_bps)
    elif model is SlippageModelType.VOLUME_BASED:
        order_value = quantity * price
        if daily_volume and daily_volume > 0:
            volume_ratio = order_value / daily_volume
        else:
            volume_ratio = FALLBACK_VOLUME_RATIO
        bps = float(effective.base_slippage_bps) + volume_ratio * float(effective.volume_impact_factor)
    elif model is SlippageModelType.HISTORICAL:
        raw = config.fixed_bps if config is not None else None
        bps = DEFAULT_HISTORICAL_BPS if raw is None else float(raw)
    else:
        bps = UNKNOWN_MODEL_BPS

    return min(bps, float(effective.max_slippage_bps))


def apply_slippage(price: float, slippage_bps: float, is_buy: bool) -> float:
    """Buys pay more, sells receive less."""

    factor = slippage_bps / 10_000
    return price * (1 + factor) if is_buy else price * (1 - factor)


def calculate_slippage(
    *,
    price: float,
    quantity: float,
    is_buy: bool,
    config: Optional[SlippageConfig] = None,
    daily_volume: Optional[float] = None,
) -> SlippageResult:
    if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
        raise ValueError("Price must be a positive finite number")

    bps = calculate_slippage_bps(quantity, price, config, daily_volume)
    execution_price = apply_slippage(price, bps, is_buy)
    return SlippageResult(
        slippage_bps=bps,
        execution_price=execution_price,
        price_impact=abs(execution_price - price) / price,
        original_price=price,
    )


__all__ = [
    "SlippageConfig",
    "SlippageModelType",
    "SlippageResult",
    "apply_slippage",
    "build_config",
    "calculate_slippage",
    "calculate_slippage_bps",
]
