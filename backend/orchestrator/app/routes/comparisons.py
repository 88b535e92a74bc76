"""HTTP API endpoints for saved comparison reports."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from ...db.models import Account
from ..dependencies import get_current_account, get_lifecycle
from ..lifecycle import BacktestLifecycleService
from .backtests import translate_errors


router = APIRouter(prefix="/comparison-reports", tags=["comparison-reports"])


class ComparisonReportRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    backtest_ids: List[str] = Field(..., alias="backtestIds", min_length=1)
    filters: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_comparison_report(
    payload: ComparisonReportRequest,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.create_comparison_report(
            account.id, payload.backtest_ids, name=payload.name, filters=payload.filters
        )


@router.get("/{report_id}", response_model=dict)
async def get_comparison_report(
    report_id: str,
    account: Account = Depends(get_current_account),
    lifecycle: BacktestLifecycleService = Depends(get_lifecycle),
) -> Dict[str, Any]:
    with translate_errors():
        return await lifecycle.get_comparison_report(account.id, report_id)


__all__ = ["router"]
