"""Integration tests for the Salesforce integration API endpoints.

Uses the in-memory integration and CRM stores set on app.state and an httpx
AsyncClient over ASGITransport. OAuth network calls and the sync runner are
patched at the router module.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.tracker.integrations.salesforce.errors import SalesforceAuthError, SalesforceConfigError
from src.tracker.integrations.salesforce.oauth import OAuthConfig, sign_state, verify_state
from src.tracker.integrations.salesforce.types import (
    SalesforceTokenResponse,
    SyncDirection,
    SyncRunStatus,
)
from src.tracker.main import create_app
from tests.fakes import ORG_ID, InMemoryCRMStore, InMemoryIntegrationStore

ROUTER = "src.tracker.api.v1.salesforce"
BASE = f"/api/v1/organizations/{ORG_ID}/integrations/salesforce"
CALLBACK = "/api/v1/integrations/salesforce/callback"

OAUTH = OAuthConfig(
    client_id="client-id",
    client_secret="client-secret",
    redirect_uri="http://test/api/v1/integrations/salesforce/callback",
    login_url="https://login.salesforce.com",
)

TOKENS = SalesforceTokenResponse(
    access_token="new-access",
    refresh_token="new-refresh",
    instance_url="https://acme.my.salesforce.com",
)


@pytest.fixture(autouse=True)
def connected_app():
    """Configured connected app for every request."""
    with patch(f"{ROUTER}.get_oauth_config", return_value=OAUTH):
        yield


def _state(organization_id: str = ORG_ID) -> str:
    return sign_state(organization_id, OAUTH)


@pytest_asyncio.fixture
async def api():
    """Test client with in-memory stores on app.state."""
    app = create_app()
    integrations = InMemoryIntegrationStore()
    crm_store = InMemoryCRMStore()
    app.state.salesforce_integrations = integrations
    app.state.crm_store = crm_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, integrations, crm_store


# ── OAuth ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_authorize_returns_consent_url(api):
    """GET /authorize -> 200 with the URL built for the organization."""
    client, _, _ = api
    with patch(f"{ROUTER}.get_authorization_url", return_value="https://login.salesforce.com/x") as build:
        response = await client.get(f"{BASE}/authorize")

    assert response.status_code == 200
    assert response.json() == {"authorization_url": "https://login.salesforce.com/x"}
    state = build.call_args.kwargs["state"]
    assert verify_state(state, OAUTH) == ORG_ID
    assert build.call_args.kwargs["config"] == OAUTH


@pytest.mark.asyncio
async def test_authorize_without_connected_app_is_503(api):
    """GET /authorize -> 503 when OAuth credentials are not configured."""
    client, _, _ = api
    with patch(
        f"{ROUTER}.get_authorization_url",
        side_effect=SalesforceConfigError("Salesforce OAuth credentials not configured."),
    ):
        response = await client.get(f"{BASE}/authorize")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_callback_stores_connection(api):
    """GET /callback -> 200, tokens saved and integration enabled."""
    client, integrations, _ = api
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock(return_value=TOKENS)) as exchange, patch(
        f"{ROUTER}.verify_connection", new=AsyncMock(return_value=True)
    ):
        response = await client.get(CALLBACK, params={"code": "auth-code", "state": _state()})

    assert response.status_code == 200
    assert response.json() == {
        "organization_id": ORG_ID,
        "instance_url": "https://acme.my.salesforce.com",
        "status": "connected",
    }
    exchange.assert_awaited_once_with("auth-code", OAUTH)
    credentials = await integrations.get_credentials(ORG_ID)
    assert credentials.refresh_token == "new-refresh"
    assert integrations.integrations[ORG_ID].is_enabled


@pytest.mark.asyncio
async def test_callback_with_unsigned_state_is_400(api):
    """GET /callback with a bare organization ID as state -> 400, nothing exchanged."""
    client, integrations, _ = api
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock(return_value=TOKENS)) as exchange:
        response = await client.get(CALLBACK, params={"code": "auth-code", "state": ORG_ID})

    assert response.status_code == 400
    exchange.assert_not_awaited()
    assert integrations.integrations == {}


@pytest.mark.asyncio
async def test_callback_with_state_rebound_to_other_org_is_400(api):
    """GET /callback -> 400 when the organization in a signed state is swapped."""
    client, integrations, _ = api
    other_org = "22222222-2222-2222-2222-222222222222"
    forged = _state().replace(ORG_ID, other_org, 1)
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock(return_value=TOKENS)) as exchange:
        response = await client.get(CALLBACK, params={"code": "auth-code", "state": forged})

    assert response.status_code == 400
    exchange.assert_not_awaited()
    assert integrations.integrations == {}


@pytest.mark.asyncio
async def test_callback_with_expired_state_is_400(api):
    """GET /callback -> 400 when consent took longer than the state lifetime."""
    client, _, _ = api
    stale = sign_state(ORG_ID, OAUTH, issued_at=1_700_000_000)
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock(return_value=TOKENS)) as exchange:
        response = await client.get(CALLBACK, params={"code": "auth-code", "state": stale})

    assert response.status_code == 400
    assert "expired" in response.json()["detail"]
    exchange.assert_not_awaited()


@pytest.mark.asyncio
async def test_callback_with_denied_consent_is_400(api):
    """GET /callback?error=access_denied -> 400 without exchanging anything."""
    client, integrations, _ = api
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock()) as exchange:
        response = await client.get(
            CALLBACK,
            params={"error": "access_denied", "error_description": "end-user denied authorization"},
        )

    assert response.status_code == 400
    assert "end-user denied authorization" in response.json()["detail"]
    exchange.assert_not_awaited()
    assert integrations.integrations == {}


@pytest.mark.asyncio
async def test_callback_without_code_is_400(api):
    """GET /callback without code -> 400."""
    client, _, _ = api
    response = await client.get(CALLBACK, params={"state": _state()})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_callback_with_rejected_code_is_400(api):
    """GET /callback -> 400 when Salesforce rejects the code."""
    client, _, _ = api
    with patch(
        f"{ROUTER}.exchange_code_for_tokens",
        new=AsyncMock(side_effect=SalesforceAuthError("Salesforce rejected the token request (400)")),
    ):
        response = await client.get(CALLBACK, params={"code": "stale", "state": _state()})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_callback_with_failed_connection_test_is_502(api):
    """GET /callback -> 502 and nothing stored when the test call fails."""
    client, integrations, _ = api
    with patch(f"{ROUTER}.exchange_code_for_tokens", new=AsyncMock(return_value=TOKENS)), patch(
        f"{ROUTER}.verify_connection", new=AsyncMock(return_value=False)
    ):
        response = await client.get(CALLBACK, params={"code": "auth-code", "state": _state()})

    assert response.status_code == 502
    assert integrations.integrations == {}


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_settings_not_connected_is_404(api):
    """GET /settings -> 404 when the organization has no integration."""
    client, _, _ = api
    response = await client.get(f"{BASE}/settings")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_and_update_settings(api):
    """GET then PATCH /settings -> 200 with updated values."""
    client, integrations, _ = api
    integrations.connect()

    response = await client.get(f"{BASE}/settings")
    assert response.status_code == 200
    assert response.json()["sync_direction"] == "bidirectional"
    assert response.json()["sync_interval_minutes"] == 60

    response = await client.patch(
        f"{BASE}/settings",
        json={"sync_direction": "import_only", "sync_interval_minutes": 240},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["sync_direction"] == "import_only"
    assert data["sync_interval_minutes"] == 240
    assert integrations.integrations[ORG_ID].sync_direction == SyncDirection.import_only


@pytest.mark.asyncio
@pytest.mark.parametrize("interval", [5, 14, 1441])
async def test_update_settings_rejects_out_of_range_interval(api, interval):
    """PATCH /settings -> 422 for intervals outside 15..1440 minutes."""
    client, integrations, _ = api
    integrations.connect()

    response = await client.patch(f"{BASE}/settings", json={"sync_interval_minutes": interval})

    assert response.status_code == 422


# ── Sync ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_trigger_sync_runs_in_background(api):
    """POST /sync -> 202, run flagged in progress and handed to the runner."""
    client, integrations, crm_store = api
    integrations.connect()

    with patch(f"{ROUTER}.run_salesforce_sync", new=AsyncMock()) as runner:
        response = await client.post(f"{BASE}/sync", json={"full_sync": True})

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "in_progress"
    assert data["full_sync"] is True
    assert integrations.integrations[ORG_ID].last_sync_status == SyncRunStatus.in_progress
    runner.assert_awaited_once_with(
        ORG_ID, integrations, crm_store, full_sync=True, already_started=True
    )


@pytest.mark.asyncio
async def test_trigger_sync_defaults_to_incremental(api):
    """POST /sync without a body -> 202 incremental."""
    client, integrations, _ = api
    integrations.connect()

    with patch(f"{ROUTER}.run_salesforce_sync", new=AsyncMock()):
        response = await client.post(f"{BASE}/sync")

    assert response.status_code == 202
    assert response.json()["full_sync"] is False


@pytest.mark.asyncio
async def test_trigger_sync_while_running_is_409(api):
    """POST /sync -> 409 when a run is already in progress."""
    client, integrations, _ = api
    integrations.connect(last_sync_status=SyncRunStatus.in_progress)

    with patch(f"{ROUTER}.run_salesforce_sync", new=AsyncMock()) as runner:
        response = await client.post(f"{BASE}/sync")

    assert response.status_code == 409
    runner.assert_not_awaited()


@pytest.mark.asyncio
async def test_trigger_sync_disabled_is_400(api):
    """POST /sync -> 400 when the integration is disabled."""
    client, integrations, _ = api
    integrations.connect(is_enabled=False)

    response = await client.post(f"{BASE}/sync")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_trigger_sync_not_connected_is_404(api):
    """POST /sync -> 404 without an integration."""
    client, _, _ = api
    response = await client.post(f"{BASE}/sync")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sync_status_reports_linked_counts(api):
    """GET /sync -> 200 with last outcome and linked record counts."""
    client, integrations, crm_store = api
    integrations.connect(last_sync_status=SyncRunStatus.partial, last_sync_error="Account 001B: boom")
    crm_store.add_account("Linked", salesforce_id="001A")
    crm_store.add_account("Local")
    crm_store.add_contact("Doe", salesforce_id="003A")

    response = await client.get(f"{BASE}/sync")

    assert response.status_code == 200
    data = response.json()
    assert data["last_sync_status"] == "partial"
    assert data["last_sync_error"] == "Account 001B: boom"
    assert (data["linked_accounts"], data["linked_contacts"], data["linked_opportunities"]) == (1, 1, 0)


# ── Disconnect ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_disconnect_revokes_and_deletes(api):
    """DELETE -> 204, refresh token revoked and integration removed."""
    client, integrations, _ = api
    integrations.connect()

    with patch(f"{ROUTER}.revoke_token", new=AsyncMock(return_value=False)) as revoke:
        response = await client.delete(BASE)

    assert response.status_code == 204
    revoke.assert_awaited_once_with("refresh-token", "https://example.my.salesforce.com")
    assert await integrations.get(ORG_ID) is None


@pytest.mark.asyncio
async def test_disconnect_not_connected_is_404(api):
    """DELETE -> 404 without an integration."""
    client, _, _ = api
    response = await client.delete(BASE)
    assert response.status_code == 404


# ── Service availability ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_services_are_503():
    """Endpoints -> 503 before the stores are initialized."""
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(f"{BASE}/settings")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_health(api):
    """GET /api/v1/health -> 200."""
    client, _, _ = api
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_request_id_is_echoed(api):
    """Responses carry the caller's X-Request-ID, or a generated one."""
    client, _, _ = api

    response = await client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    response = await client.get("/api/v1/health")
    assert response.headers["X-Request-ID"]
