"""FastAPI application factory.

Creates the app with logging and metrics middleware, lifespan events for
database initialization and the Salesforce sync scheduler, and the v1 API
router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.tracker.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.tracker.api.v1.router import router as v1_router
from src.tracker.config import get_settings
from src.tracker.core.database import close_db, get_session, init_db
from src.tracker.core.monitoring import MetricsMiddleware, get_metrics_response
from src.tracker.crm.repository import CRMRepository
from src.tracker.integrations.salesforce.scheduler import SalesforceSyncScheduler
from src.tracker.integrations.salesforce.store import SalesforceIntegrationStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, stores and scheduler on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    crm_store = CRMRepository(session_factory=get_session)
    integrations = SalesforceIntegrationStore(session_factory=get_session)
    app.state.crm_store = crm_store
    app.state.salesforce_integrations = integrations

    scheduler: SalesforceSyncScheduler | None = None
    if settings.SALESFORCE_SYNC_SCHEDULER_ENABLED:
        scheduler = SalesforceSyncScheduler(integrations, crm_store)
        if not scheduler.start():
            scheduler = None
    app.state.salesforce_scheduler = scheduler

    log.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        salesforce_scheduler=scheduler is not None,
    )

    yield

    if scheduler is not None:
        scheduler.stop()
    await close_db()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Opportunity Tracker Salesforce Sync",
        version="0.1.0",
        description="Bidirectional Salesforce sync for the opportunity tracker CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
