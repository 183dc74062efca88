"""Salesforce OAuth 2.0 web-server flow helpers.

Covers the authorization URL and its signed state, authorization-code
exchange, access-token refresh, and token revocation. All network calls go
through httpx; callers may pass their own AsyncClient (tests use
httpx.MockTransport).
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import ValidationError

from src.tracker.config import Settings, get_settings
from src.tracker.integrations.salesforce.errors import SalesforceAuthError, SalesforceConfigError
from src.tracker.integrations.salesforce.types import SalesforceTokenResponse

logger = structlog.get_logger(__name__)

OAUTH_SCOPE = "api refresh_token offline_access"

# Consent must complete within this window
STATE_MAX_AGE_SECONDS = 600


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    login_url: str
    timeout: float = 30.0


def get_oauth_config(settings: Settings | None = None) -> OAuthConfig:
    """Read the connected-app credentials, failing fast when any is missing."""
    settings = settings or get_settings()
    missing = [
        name
        for name in ("SALESFORCE_CLIENT_ID", "SALESFORCE_CLIENT_SECRET", "SALESFORCE_REDIRECT_URI")
        if not getattr(settings, name)
    ]
    if missing:
        raise SalesforceConfigError(
            "Salesforce OAuth credentials not configured. Set "
            + ", ".join(missing)
            + " environment variables."
        )
    return OAuthConfig(
        client_id=settings.SALESFORCE_CLIENT_ID,
        client_secret=settings.SALESFORCE_CLIENT_SECRET,
        redirect_uri=settings.SALESFORCE_REDIRECT_URI,
        login_url=settings.SALESFORCE_LOGIN_URL.rstrip("/"),
        timeout=settings.SALESFORCE_HTTP_TIMEOUT,
    )


@asynccontextmanager
async def _http(client: httpx.AsyncClient | None, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


def get_authorization_url(state: str, config: OAuthConfig | None = None) -> str:
    """Build the URL the user visits to grant access."""
    config = config or get_oauth_config()
    query = urlencode(
        {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": OAUTH_SCOPE,
            "state": state,
        }
    )
    return f"{config.login_url}/services/oauth2/authorize?{query}"


def _state_signature(payload: str, config: OAuthConfig) -> str:
    return hmac.new(
        config.client_secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def sign_state(
    organization_id: str,
    config: OAuthConfig | None = None,
    *,
    issued_at: int | None = None,
) -> str:
    """Build the OAuth state for an organization: org.issued.nonce.signature.

    The HMAC is keyed with the connected app's client secret, so only this
    service can produce a state the callback accepts.
    """
    config = config or get_oauth_config()
    issued = int(time.time()) if issued_at is None else issued_at
    payload = f"{organization_id}.{issued}.{secrets.token_hex(8)}"
    return f"{payload}.{_state_signature(payload, config)}"


def verify_state(
    state: str,
    config: OAuthConfig | None = None,
    max_age: int = STATE_MAX_AGE_SECONDS,
) -> str:
    """Return the organization ID bound into a state from sign_state().

    Raises:
        SalesforceAuthError: The state does not verify or has expired.
    """
    config = config or get_oauth_config()
    try:
        payload, signature = state.rsplit(".", 1)
        organization_id, issued, _nonce = payload.rsplit(".", 2)
        issued_at = int(issued)
    except ValueError as exc:
        raise SalesforceAuthError("Malformed OAuth state") from exc

    if not organization_id or not hmac.compare_digest(
        signature, _state_signature(payload, config)
    ):
        logger.warning("salesforce_oauth.state_rejected", reason="signature")
        raise SalesforceAuthError("Invalid OAuth state")
    if time.time() - issued_at > max_age:
        logger.warning("salesforce_oauth.state_rejected", reason="expired")
        raise SalesforceAuthError("OAuth state expired, restart the Salesforce connection")
    return organization_id


async def _post_token(
    url: str,
    form: dict[str, str],
    config: OAuthConfig,
    http_client: httpx.AsyncClient | None,
    event: str,
) -> SalesforceTokenResponse:
    try:
        async with _http(http_client, config.timeout) as client:
            response = await client.post(
                url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
    except httpx.HTTPError as exc:
        logger.error(f"salesforce_oauth.{event}_request_failed", error=str(exc))
        raise SalesforceAuthError(f"Salesforce token request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.error(
            f"salesforce_oauth.{event}_rejected",
            status_code=response.status_code,
            body=response.text[:500],
        )
        raise SalesforceAuthError(
            f"Salesforce rejected the token request ({response.status_code})"
        )

    try:
        return SalesforceTokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        raise SalesforceAuthError("Malformed Salesforce token response") from exc


async def exchange_code_for_tokens(
    code: str,
    config: OAuthConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> SalesforceTokenResponse:
    """Exchange an authorization code for access and refresh tokens."""
    config = config or get_oauth_config()
    tokens = await _post_token(
        f"{config.login_url}/services/oauth2/token",
        {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "redirect_uri": config.redirect_uri,
        },
        config,
        http_client,
        "code_exchange",
    )
    if not tokens.refresh_token:
        raise SalesforceAuthError("Failed to get tokens from Salesforce: no refresh token issued")
    logger.info("salesforce_oauth.code_exchanged", instance_url=tokens.instance_url)
    return tokens


async def refresh_access_token(
    refresh_token: str,
    instance_url: str,
    config: OAuthConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> SalesforceTokenResponse:
    """Obtain a new access token. Any failure surfaces as SalesforceAuthError."""
    config = config or get_oauth_config()
    tokens = await _post_token(
        f"{instance_url.rstrip('/')}/services/oauth2/token",
        {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "refresh_token": refresh_token,
        },
        config,
        http_client,
        "refresh",
    )
    logger.info("salesforce_oauth.token_refreshed", instance_url=tokens.instance_url)
    return tokens


async def revoke_token(
    token: str,
    instance_url: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> bool:
    """Revoke a token. Best effort: failures are logged and reported as False."""
    try:
        async with _http(http_client, timeout) as client:
            response = await client.post(
                f"{instance_url.rstrip('/')}/services/oauth2/revoke",
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
    except httpx.HTTPError as exc:
        logger.warning("salesforce_oauth.revoke_failed", error=str(exc))
        return False

    if response.status_code >= 400:
        logger.warning("salesforce_oauth.revoke_rejected", status_code=response.status_code)
        return False
    return True
