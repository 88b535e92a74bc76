"""FastAPI application factory for the backtest orchestrator."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..db.base import create_engine, dispose_engine
from .config import settings
from .processor import SimulationEngine
from .routes import backtests, comparisons, orchestration
from .services import ServiceContainer, build_services


def _lifespan_factory(simulation_engine: Optional[SimulationEngine]):
    @asynccontextmanager
    async def _lifespan(app: FastAPI):  # pragma: no cover - exercised via integration tests
        """Initialise and tear down shared application resources."""

        create_engine(
            settings.database_url,
            echo=settings.sqlalchemy_echo,
            schema=settings.database_schema,
        )
        services: Optional[ServiceContainer] = getattr(app.state, "services", None)
        if services is None:
            services = build_services(settings, simulation_engine=simulation_engine)
            app.state.services = services
        try:
            await services.startup(background=settings.scheduler.enabled)
            yield
        finally:
            await services.shutdown()
            await dispose_engine()

    return _lifespan


def create_app(
    *,
    api_prefix: str | None = None,
    services: Optional[ServiceContainer] = None,
    simulation_engine: Optional[SimulationEngine] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Parameters
    ----------
    api_prefix:
        Optional path prefix under which the API routers should be mounted. When
        ``None`` the routers are mounted at the application root.
    services:
        Pre-built service container. When omitted the lifespan builds one from
        the global settings.
    simulation_engine:
        Engine used to execute backtest jobs in this process. Without one the
        backtest queues are only produced to.
    """

    app = FastAPI(
        title="Backtest Orchestrator",
        version="1.0",
        lifespan=_lifespan_factory(simulation_engine),
    )
    if services is not None:
        app.state.services = services

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    router_prefix = api_prefix.rstrip("/") if api_prefix else ""
    if router_prefix and not router_prefix.startswith("/"):
        router_prefix = f"/{router_prefix}"

    for module in (backtests, comparisons, orchestration):
        app.include_router(module.router, prefix=router_prefix)

    return app


app = create_app(api_prefix="/api")
