"""REST API endpoints for the Salesforce integration of an organization.

Covers the OAuth connect flow, integration settings, manual sync triggers
and sync status, and disconnecting. Services are read from app.state and a
missing service yields 503, following the other v1 routers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.tracker.integrations.salesforce.client import SalesforceClient
from src.tracker.integrations.salesforce.errors import (
    SalesforceAuthError,
    SalesforceConfigError,
    SalesforceError,
)
from src.tracker.integrations.salesforce.jobs import run_salesforce_sync
from src.tracker.integrations.salesforce.oauth import (
    exchange_code_for_tokens,
    get_authorization_url,
    get_oauth_config,
    revoke_token,
    sign_state,
    verify_state,
)
from src.tracker.integrations.salesforce.store import SalesforceIntegration
from src.tracker.integrations.salesforce.types import (
    SalesforceTokenResponse,
    SyncDirection,
    SyncRunStatus,
)

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/organizations/{organization_id}/integrations/salesforce",
    tags=["salesforce"],
)

# Salesforce redirects to one registered URI, so the callback is not org-scoped
callback_router = APIRouter(prefix="/integrations/salesforce", tags=["salesforce"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class AuthorizeResponse(BaseModel):
    authorization_url: str


class SettingsResponse(BaseModel):
    organization_id: str
    instance_url: str
    is_enabled: bool
    sync_direction: SyncDirection
    sync_interval_minutes: int
    last_sync_at: datetime | None = None
    last_sync_status: SyncRunStatus | None = None
    sync_cursor: datetime | None = None


class SyncStatusResponse(BaseModel):
    is_enabled: bool
    sync_direction: SyncDirection
    sync_interval_minutes: int
    last_sync_at: datetime | None = None
    last_sync_status: SyncRunStatus | None = None
    last_sync_error: str | None = None
    sync_cursor: datetime | None = None
    linked_accounts: int = 0
    linked_contacts: int = 0
    linked_opportunities: int = 0


class SyncTriggerResponse(BaseModel):
    status: SyncRunStatus
    full_sync: bool
    message: str


class ConnectedResponse(BaseModel):
    organization_id: str
    instance_url: str
    status: str = "connected"


# ── Request Schemas ──────────────────────────────────────────────────────────


class UpdateSettingsRequest(BaseModel):
    is_enabled: bool | None = None
    sync_direction: SyncDirection | None = None
    sync_interval_minutes: int | None = Field(default=None, ge=15, le=1440)


class TriggerSyncRequest(BaseModel):
    full_sync: bool = False


# ── Dependencies ─────────────────────────────────────────────────────────────


def _get_integration_store(request: Request) -> Any:
    """Retrieve SalesforceIntegrationStore from app.state, 503 if not available."""
    store = getattr(request.app.state, "salesforce_integrations", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Salesforce integration not initialized",
        )
    return store


def _get_crm_store(request: Request) -> Any:
    """Retrieve the CRM store from app.state, 503 if not available."""
    store = getattr(request.app.state, "crm_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRM store not initialized",
        )
    return store


async def _require_integration(integrations: Any, organization_id: str) -> SalesforceIntegration:
    integration = await integrations.get(organization_id)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Salesforce integration not configured",
        )
    return integration


def _settings_response(integration: SalesforceIntegration) -> SettingsResponse:
    return SettingsResponse(
        organization_id=integration.organization_id,
        instance_url=integration.instance_url,
        is_enabled=integration.is_enabled,
        sync_direction=integration.sync_direction,
        sync_interval_minutes=integration.sync_interval_minutes,
        last_sync_at=integration.last_sync_at,
        last_sync_status=integration.last_sync_status,
        sync_cursor=integration.sync_cursor,
    )


async def verify_connection(tokens: SalesforceTokenResponse) -> bool:
    """Make one authenticated call with freshly issued tokens."""
    async with SalesforceClient(
        tokens.access_token,
        tokens.instance_url,
        refresh_token=tokens.refresh_token,
    ) as client:
        return await client.test_connection()


async def _run_sync_in_background(
    organization_id: str, integrations: Any, crm_store: Any, full_sync: bool
) -> None:
    try:
        await run_salesforce_sync(
            organization_id,
            integrations,
            crm_store,
            full_sync=full_sync,
            already_started=True,
        )
    except Exception as exc:
        # Outcome already recorded on the integration by run_salesforce_sync
        logger.error(
            "salesforce_api.background_sync_failed",
            organization_id=organization_id,
            error=str(exc),
        )


# ── OAuth ────────────────────────────────────────────────────────────────────


@router.get("/authorize", response_model=AuthorizeResponse)
async def authorize(organization_id: str) -> AuthorizeResponse:
    """Return the Salesforce consent URL for this organization."""
    try:
        config = get_oauth_config()
        url = get_authorization_url(state=sign_state(organization_id, config), config=config)
    except SalesforceConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return AuthorizeResponse(authorization_url=url)


@callback_router.get("/callback", response_model=ConnectedResponse)
async def oauth_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
) -> ConnectedResponse:
    """Complete the OAuth grant: exchange the code and store encrypted tokens."""
    if error:
        logger.warning("salesforce_api.oauth_denied", error=error, description=error_description)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Salesforce authorization failed: {error_description or error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing code or state parameter",
        )

    integrations = _get_integration_store(request)

    try:
        config = get_oauth_config()
        organization_id = verify_state(state, config)
        tokens = await exchange_code_for_tokens(code, config)
    except SalesforceConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except SalesforceAuthError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    if not await verify_connection(tokens):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Salesforce connection test failed",
        )

    try:
        integration = await integrations.save_connection(organization_id, tokens)
    except SalesforceConfigError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))

    logger.info(
        "salesforce_api.connected",
        organization_id=organization_id,
        instance_url=integration.instance_url,
    )
    return ConnectedResponse(
        organization_id=organization_id,
        instance_url=integration.instance_url,
    )


# ── Settings ─────────────────────────────────────────────────────────────────


@router.get("/settings", response_model=SettingsResponse)
async def get_integration_settings(organization_id: str, request: Request) -> SettingsResponse:
    integrations = _get_integration_store(request)
    integration = await _require_integration(integrations, organization_id)
    return _settings_response(integration)


@router.patch("/settings", response_model=SettingsResponse)
async def update_integration_settings(
    organization_id: str,
    body: UpdateSettingsRequest,
    request: Request,
) -> SettingsResponse:
    integrations = _get_integration_store(request)
    updated = await integrations.update_settings(
        organization_id,
        is_enabled=body.is_enabled,
        sync_direction=body.sync_direction,
        sync_interval_minutes=body.sync_interval_minutes,
    )
    if updated is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Salesforce integration not configured",
        )
    logger.info(
        "salesforce_api.settings_updated",
        organization_id=organization_id,
        **body.model_dump(exclude_none=True, mode="json"),
    )
    return _settings_response(updated)


# ── Sync ─────────────────────────────────────────────────────────────────────


@router.post(
    "/sync",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    organization_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    body: TriggerSyncRequest | None = None,
) -> SyncTriggerResponse:
    """Start a manual sync in the background."""
    integrations = _get_integration_store(request)
    crm_store = _get_crm_store(request)
    full_sync = body.full_sync if body is not None else False

    integration = await _require_integration(integrations, organization_id)
    if not integration.is_enabled:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Salesforce integration is disabled",
        )
    if integration.last_sync_status == SyncRunStatus.in_progress or not (
        await integrations.mark_sync_started(organization_id)
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A sync is already in progress",
        )

    background_tasks.add_task(
        _run_sync_in_background, organization_id, integrations, crm_store, full_sync
    )
    logger.info("salesforce_api.sync_triggered", organization_id=organization_id, full_sync=full_sync)
    return SyncTriggerResponse(
        status=SyncRunStatus.in_progress,
        full_sync=full_sync,
        message=(
            "Full sync started - this may take several minutes"
            if full_sync
            else "Incremental sync started"
        ),
    )


@router.get("/sync", response_model=SyncStatusResponse)
async def get_sync_status(organization_id: str, request: Request) -> SyncStatusResponse:
    integrations = _get_integration_store(request)
    crm_store = _get_crm_store(request)
    integration = await _require_integration(integrations, organization_id)

    accounts = await crm_store.list_accounts_with_salesforce_id(organization_id)
    contacts = await crm_store.list_contacts_with_salesforce_id(organization_id)
    opportunities = await crm_store.list_opportunities_with_salesforce_id(organization_id)

    return SyncStatusResponse(
        is_enabled=integration.is_enabled,
        sync_direction=integration.sync_direction,
        sync_interval_minutes=integration.sync_interval_minutes,
        last_sync_at=integration.last_sync_at,
        last_sync_status=integration.last_sync_status,
        last_sync_error=integration.last_sync_error,
        sync_cursor=integration.sync_cursor,
        linked_accounts=len(accounts),
        linked_contacts=len(contacts),
        linked_opportunities=len(opportunities),
    )


# ── Disconnect ───────────────────────────────────────────────────────────────


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(organization_id: str, request: Request) -> None:
    """Revoke the refresh token (best effort) and delete the integration."""
    integrations = _get_integration_store(request)
    await _require_integration(integrations, organization_id)

    try:
        credentials = await integrations.get_credentials(organization_id)
    except SalesforceError as exc:
        logger.warning(
            "salesforce_api.credentials_unreadable",
            organization_id=organization_id,
            error=str(exc),
        )
        credentials = None
    if credentials is not None:
        await revoke_token(credentials.refresh_token, credentials.instance_url)

    await integrations.delete(organization_id)
    logger.info("salesforce_api.disconnected", organization_id=organization_id)
