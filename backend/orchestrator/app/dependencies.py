"""Common FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import Account
from ..db.session import get_session
from .lifecycle import BacktestLifecycleService
from .services import ServiceContainer


ACCOUNT_HEADER = "X-Account-Id"


def get_services(request: Request) -> ServiceContainer:
    """Return the service container attached to the running application."""

    services = getattr(request.app.state, "services", None)
    if services is None:  # pragma: no cover - lifespan not started
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return services


def get_lifecycle(services: ServiceContainer = Depends(get_services)) -> BacktestLifecycleService:
    return services.lifecycle


async def get_current_account(
    account_id: str | None = Header(default=None, alias=ACCOUNT_HEADER),
    session: AsyncSession = Depends(get_session),
) -> Account:
    """Resolve the calling account from the identity header set by the upstream gateway."""

    if not account_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    account = await session.get(Account, account_id)
    if account is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Unknown account")
    return account


__all__ = ["ACCOUNT_HEADER", "get_current_account", "get_lifecycle", "get_services"]
