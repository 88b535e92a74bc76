"""HTTP API endpoints for backtest runs."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ...db.models import (
    Account,
    BacktestStatus,
    BacktestType,
    FillStatus,
    OrderType,
    SignalDirection,
    SignalType,
)
from ..dependencies import get_current_account, get_lifecycle
from ..errors import InternalFailure, NotFound, ValidationFailed
from ..lifecycle import ArtifactQuery, BacktestCreateParams, BacktestLifecycleService, BacktestListFilters
from ..slippage import SlippageModelType


router = APIRouter(prefix="/backtests", tags=["backtests"])


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map domain exceptions onto HTTP responses."""

    try:
        yield
    except ValidationFailed as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InternalFailure as exc:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


class BacktestCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: BacktestType = BacktestType.HISTORICAL
    algorithm_id: str = Field(..., alias="algorithmId")
    market_data_set_id: str = Field(..., alias="marketDataSetId")
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")
    initial_capital: float = Field(..., alias="initialCapital", gt=0)
    trading_fee: Optional[float] = Field(None, alias="tradingFee", ge=0, le=1)
    strategy_params: Dict[str, Any] = Field(default_factory=dict, alias="strategyParams")
    slippage_model: Optional[SlippageModelType] = Field(None, alias="slippageModel")
    fixed_slippage_bps: Optional[float] = Field(None, alias="fixedSlippageBps", ge=0)
    base_slippage_bps: Optional[float] = Field(None, alias="baseSlippageBps", ge=0)
    volume_impact_factor: Optional[float] = Field(None, alias="volumeImpactFactor", ge=0)
    deterministic_seed: Optional[str] = Field(None, alias="deterministicSeed", max_length=128)
    instruments: Optional[List[str]] = None

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @model_validator(mode="after")
    def _validate_window(self) -> "BacktestCreateRequest":
        if self.start_date >= self.end_date:
            raise ValueError("startDate must be before endDate")
        return self

    def to_params(self) -> BacktestCreateParams:
        return BacktestCreateParams(
            name=self.name,
            description=self.description,
            type=self.type,
            algorithm_id=self.algorithm_id,
            market_data_set_id=self.market_data_set_id,
            start_date=self.start_date,
            end_date=self.end_date,
            initial_capital=self.initial_capital,
            trading_fee=self.trading_fee,
            strategy_params=dict(self.strategy_params),
            slippage_model=self.slippage_model.value if self.slippage_model else None,
            fixed_slippage_bps=self.fixed_slippage_bps,
            base_slippage_bps=self.base_slippage_bps,
            volume_impact_factor=self.volume_impact_factor,
            deterministic_seed=self.deterministic_seed,
            instruments=self.instruments,
        )


class BacktestUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class BacktestCompareRequest(BaseModel):
    backtest_ids: List[str] = Field(..., alias="backtestIds", min_length=1)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class DatasetListResponse(BaseModel):
    datasets: List[Dict[str, Any]]


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_backtest(
    payload: BacktestCreateRequest,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.create(account.id, payload.to_params())


@router.get("", response_model=dict)
async def list_backtests(
    run_type: Optional[BacktestType] = Query(default=None, alias="type"),
    algorithm_id: Optional[str] = Query(default=None, alias="algorithmId"),
    run_status: Optional[BacktestStatus] = Query(default=None, alias="status"),
    created_after: Optional[datetime] = Query(default=None, alias="createdAfter"),
    created_before: Optional[datetime] = Query(default=None, alias="createdBefore"),
    cursor: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    filters = BacktestListFilters(
        type=run_type,
        algorithm_id=algorithm_id,
        status=run_status,
        created_after=created_after,
        created_before=created_before,
        cursor=cursor,
        limit=limit,
    )
    with translate_errors():
        return await lifecycle.list_runs(account.id, filters)


@router.get("/datasets", response_model=DatasetListResponse)
async def list_datasets(
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> DatasetListResponse:
    return DatasetListResponse(datasets=await lifecycle.list_datasets())


@router.post("/compare", response_model=dict)
async def compare_backtests(
    payload: BacktestCompareRequest,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.compare(account.id, payload.backtest_ids)


@router.get("/{run_id}", response_model=dict)
async def get_backtest(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.get_run(account.id, run_id)


@router.patch("/{run_id}", response_model=dict)
async def update_backtest(
    run_id: str,
    payload: BacktestUpdateRequest,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.update(
            account.id, run_id, name=payload.name, description=payload.description
        )


@router.delete("/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_backtest(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Response:
    with translate_errors():
        await lifecycle.delete(account.id, run_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{run_id}/progress", response_model=dict)
async def get_backtest_progress(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.get_progress(account.id, run_id)


@router.get("/{run_id}/performance", response_model=dict)
async def get_backtest_performance(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.get_performance(account.id, run_id)


@router.get("/{run_id}/signals", response_model=dict)
async def list_backtest_signals(
    run_id: str,
    cursor: Optional[str] = Query(default=None),
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    instrument: Optional[str] = Query(default=None),
    signal_type: Optional[SignalType] = Query(default=None, alias="signalType"),
    direction: Optional[SignalDirection] = Query(default=None),
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    query = ArtifactQuery(
        cursor=cursor,
        page_size=page_size,
        instrument=instrument,
        signal_type=signal_type,
        direction=direction,
    )
    with translate_errors():
        return await lifecycle.list_signals(account.id, run_id, query)


@router.get("/{run_id}/trades", response_model=dict)
async def list_backtest_trades(
    run_id: str,
    cursor: Optional[str] = Query(default=None),
    page_size: Optional[int] = Query(default=None, alias="pageSize"),
    instrument: Optional[str] = Query(default=None),
    order_type: Optional[OrderType] = Query(default=None, alias="orderType"),
    fill_status: Optional[FillStatus] = Query(default=None, alias="status"),
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    query = ArtifactQuery(
        cursor=cursor,
        page_size=page_size,
        instrument=instrument,
        order_type=order_type,
        status=fill_status,
    )
    with translate_errors():
        return await lifecycle.list_trades(account.id, run_id, query)


@router.post("/{run_id}/cancel", response_model=dict)
async def cancel_backtest(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.cancel(account.id, run_id)


@router.post("/{run_id}/pause", response_model=dict)
async def pause_backtest(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.pause(account.id, run_id)


@router.post("/{run_id}/resume", response_model=dict)
async def resume_backtest(
    run_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.resume(account.id, run_id)


__all__ = ["router", "translate_errors"]
