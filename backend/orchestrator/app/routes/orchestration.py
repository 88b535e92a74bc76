"""Operator endpoints for the orchestration scheduler and its queues."""

from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from ...db.models import Account
from ..dependencies import get_current_account, get_services
from ..services import ServiceContainer


router = APIRouter(prefix="/orchestration", tags=["orchestration"])


class OrchestrationTriggerRequest(BaseModel):
    account_id: Optional[str] = Field(None, alias="accountId")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class OrchestrationTriggerResponse(BaseModel):
    queued: int


class QueueStatsResponse(BaseModel):
    queues: Dict[str, Dict[str, int]]


@router.post("/trigger", response_model=OrchestrationTriggerResponse)
async def trigger_orchestration(
    payload: Optional[OrchestrationTriggerRequest] = None,
    account: Account = Depends(get_current_account),
    services: ServiceContainer = Depends(get_services),
) -> OrchestrationTriggerResponse:
    account_id = payload.account_id if payload is not None else None
    result = await services.scheduler.trigger_manual_orchestration(account_id)
    return OrchestrationTriggerResponse(queued=result["queued"])


@router.get("/queues", response_model=QueueStatsResponse)
async def get_queue_stats(
    account: Account = Depends(get_current_account),
    services: ServiceContainer = Depends(get_services),
) -> QueueStatsResponse:
    return QueueStatsResponse(queues=await services.dispatcher.queue_stats())


__all__ = ["router"]
