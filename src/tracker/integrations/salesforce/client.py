"""Async client for the Salesforce REST API.

SalesforceClient wraps one organization's connection: SOQL queries with
pagination, sObject get/create/update, and a few metadata calls. Responses
are validated into the models in types.py before they are returned.

An expired session (401) triggers exactly one access-token refresh followed
by a single retry of the request (tenacity, two attempts). The refreshed
token is handed to on_token_refresh so the caller can persist it. A failed
refresh raises SalesforceAuthError and is not retried.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from src.tracker.config import get_settings
from src.tracker.core.monitoring import (
    salesforce_api_requests_total,
    salesforce_token_refreshes_total,
)
from src.tracker.integrations.salesforce.errors import (
    SalesforceApiError,
    SalesforceAuthError,
    SalesforceError,
    SalesforceNotConnectedError,
    SalesforceSessionExpiredError,
)
from src.tracker.integrations.salesforce.oauth import (
    OAuthConfig,
    get_oauth_config,
    refresh_access_token,
)
from src.tracker.integrations.salesforce.types import (
    ACCOUNT_FIELDS,
    CONTACT_FIELDS,
    OPPORTUNITY_FIELDS,
    USER_FIELDS,
    InvalidRecord,
    QueryResult,
    SalesforceAccount,
    SalesforceContact,
    SalesforceOpportunity,
    SalesforceUser,
    format_salesforce_datetime,
)

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

TokenRefreshCallback = Callable[[str, str], Awaitable[None]]


def soql_quote(value: str) -> str:
    """Quote a string literal for SOQL."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def build_soql(
    sobject: str,
    fields: str,
    *,
    conditions: list[str] | None = None,
    order_by: str | None = "LastModifiedDate DESC",
    limit: int | None = None,
) -> str:
    soql = f"SELECT {fields} FROM {sobject}"
    if conditions:
        soql += " WHERE " + " AND ".join(conditions)
    if order_by:
        soql += f" ORDER BY {order_by}"
    if limit is not None:
        soql += f" LIMIT {int(limit)}"
    return soql


def _parse_errors(response: httpx.Response) -> tuple[str | None, list[str], list[str]]:
    """Extract (first errorCode, messages, fields) from a Salesforce error body."""
    try:
        body = response.json()
    except ValueError:
        return None, [response.text[:500]] if response.text else [], []

    entries = body if isinstance(body, list) else [body]
    error_code: str | None = None
    messages: list[str] = []
    fields: list[str] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if error_code is None:
            error_code = entry.get("errorCode") or entry.get("error")
        message = entry.get("message") or entry.get("error_description")
        if message:
            messages.append(message)
        fields.extend(entry.get("fields") or [])
    return error_code, messages, fields


class SalesforceClient:
    """REST client bound to one Salesforce org.

    Args:
        access_token: Current OAuth access token.
        instance_url: Org base URL returned by the token endpoint.
        refresh_token: Used to obtain a new access token on 401.
        on_token_refresh: Awaited with (access_token, instance_url) after a refresh.
        api_version: REST API version, e.g. "59.0".
        oauth_config: Connected-app credentials for refresh (read from settings if omitted).
        http_client: Pre-built httpx client (tests); otherwise one is created and owned.
    """

    def __init__(
        self,
        access_token: str,
        instance_url: str,
        *,
        refresh_token: str | None = None,
        on_token_refresh: TokenRefreshCallback | None = None,
        api_version: str | None = None,
        oauth_config: OAuthConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._access_token = access_token
        self._instance_url = instance_url.rstrip("/")
        self._refresh_token = refresh_token
        self._on_token_refresh = on_token_refresh
        self._api_version = api_version or settings.SALESFORCE_API_VERSION
        self._oauth_config = oauth_config
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout or settings.SALESFORCE_HTTP_TIMEOUT
        )

    @property
    def instance_url(self) -> str:
        return self._instance_url

    @property
    def base_url(self) -> str:
        return f"{self._instance_url}/services/data/v{self._api_version}"

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> SalesforceClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if path.startswith("/services/"):
            # nextRecordsUrl and similar are org-relative
            return f"{self._instance_url}{path}"
        return f"{self.base_url}{path}"

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        try:
            response = await self._http.request(
                method,
                self._url(path),
                params=params,
                json=json,
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            logger.error("salesforce_client.request_failed", method=method, path=path, error=str(exc))
            raise SalesforceApiError(f"Salesforce request failed: {exc}") from exc

        salesforce_api_requests_total.labels(
            method=method, status_code=str(response.status_code)
        ).inc()

        if response.status_code == 401:
            error_code, messages, _ = _parse_errors(response)
            raise SalesforceSessionExpiredError(
                messages[0] if messages else f"Salesforce session rejected ({error_code})"
            )

        if response.status_code == 404 and allow_not_found:
            return None

        if response.status_code >= 400:
            error_code, messages, fields = _parse_errors(response)
            logger.warning(
                "salesforce_client.request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                error_code=error_code,
                messages=messages,
            )
            raise SalesforceApiError(
                "; ".join(messages) or f"Salesforce returned {response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
                messages=messages,
                fields=fields,
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        """Send a request, refreshing the access token once on an expired session."""
        response: httpx.Response | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(SalesforceSessionExpiredError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    await self._refresh_session()
                response = await self._send(
                    method, path, params=params, json=json, allow_not_found=allow_not_found
                )
        return response

    async def _refresh_session(self) -> None:
        if not self._refresh_token:
            raise SalesforceAuthError("Salesforce session expired and no refresh token is available")
        try:
            tokens = await refresh_access_token(
                self._refresh_token,
                self._instance_url,
                config=self._oauth_config,
                http_client=self._http,
            )
        except SalesforceAuthError:
            salesforce_token_refreshes_total.labels(status="failure").inc()
            raise
        salesforce_token_refreshes_total.labels(status="success").inc()

        self._access_token = tokens.access_token
        self._instance_url = tokens.instance_url.rstrip("/")
        if self._on_token_refresh is not None:
            await self._on_token_refresh(tokens.access_token, tokens.instance_url)
        logger.info("salesforce_client.session_refreshed", instance_url=self._instance_url)

    # ── Queries ─────────────────────────────────────────────────────────────

    async def query(self, soql: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Run a SOQL query, following nextRecordsUrl until done or the cap is hit."""
        response = await self._request("GET", "/query", params={"q": soql})
        body = response.json()
        records: list[dict[str, Any]] = list(body.get("records", []))

        while not body.get("done", True) and body.get("nextRecordsUrl"):
            if limit is not None and len(records) >= limit:
                break
            response = await self._request("GET", body["nextRecordsUrl"])
            body = response.json()
            records.extend(body.get("records", []))

        if limit is not None:
            records = records[:limit]
        return records

    @staticmethod
    def _validate(
        model: type[RecordT], rows: list[dict[str, Any]]
    ) -> tuple[list[RecordT], list[InvalidRecord]]:
        parsed: list[RecordT] = []
        invalid: list[InvalidRecord] = []
        for row in rows:
            try:
                parsed.append(model.model_validate(row))
            except ValidationError as exc:
                error = "; ".join(
                    f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}" for e in exc.errors()
                )
                invalid.append(InvalidRecord(salesforce_id=row.get("Id"), error=error))
                logger.warning(
                    "salesforce_client.invalid_record",
                    sobject=model.__name__,
                    record_id=row.get("Id"),
                    error=error,
                )
        return parsed, invalid

    async def _query_records(
        self, model: type[RecordT], soql: str, limit: int | None
    ) -> QueryResult:
        records, invalid = self._validate(model, await self.query(soql, limit))
        return QueryResult(records=records, invalid=invalid)

    @staticmethod
    def _modified_since_conditions(modified_since: datetime | None) -> list[str]:
        if modified_since is None:
            return []
        return [f"LastModifiedDate >= {format_salesforce_datetime(modified_since)}"]

    async def query_accounts(
        self, modified_since: datetime | None = None, limit: int | None = None
    ) -> QueryResult[SalesforceAccount]:
        soql = build_soql(
            "Account",
            ACCOUNT_FIELDS,
            conditions=self._modified_since_conditions(modified_since),
            limit=limit,
        )
        return await self._query_records(SalesforceAccount, soql, limit)

    async def query_contacts(
        self,
        modified_since: datetime | None = None,
        limit: int | None = None,
        account_id: str | None = None,
    ) -> QueryResult[SalesforceContact]:
        conditions = self._modified_since_conditions(modified_since)
        if account_id:
            conditions.append(f"AccountId = {soql_quote(account_id)}")
        soql = build_soql("Contact", CONTACT_FIELDS, conditions=conditions, limit=limit)
        return await self._query_records(SalesforceContact, soql, limit)

    async def query_opportunities(
        self, modified_since: datetime | None = None, limit: int | None = None
    ) -> QueryResult[SalesforceOpportunity]:
        soql = build_soql(
            "Opportunity",
            OPPORTUNITY_FIELDS,
            conditions=self._modified_since_conditions(modified_since),
            limit=limit,
        )
        return await self._query_records(SalesforceOpportunity, soql, limit)

    async def query_users(self) -> list[SalesforceUser]:
        """List active Salesforce users."""
        soql = build_soql("User", USER_FIELDS, conditions=["IsActive = true"], order_by=None)
        users, _ = self._validate(SalesforceUser, await self.query(soql))
        return users

    async def find_user_by_email(self, email: str) -> SalesforceUser | None:
        soql = build_soql(
            "User",
            USER_FIELDS,
            conditions=[f"Email = {soql_quote(email)}", "IsActive = true"],
            order_by=None,
            limit=1,
        )
        users, _ = self._validate(SalesforceUser, await self.query(soql, 1))
        return users[0] if users else None

    # ── sObject CRUD ────────────────────────────────────────────────────────

    async def _get_record(
        self, sobject: str, record_id: str, model: type[RecordT], fields: str
    ) -> RecordT | None:
        response = await self._request(
            "GET",
            f"/sobjects/{sobject}/{record_id}",
            params={"fields": fields.replace(" ", "")},
            allow_not_found=True,
        )
        if response is None:
            return None
        return model.model_validate(response.json())

    async def _create_record(self, sobject: str, fields: dict[str, Any]) -> str:
        response = await self._request("POST", f"/sobjects/{sobject}", json=fields)
        body = response.json()
        if not body.get("success", True) or not body.get("id"):
            messages = [e.get("message", "") for e in body.get("errors", []) if isinstance(e, dict)]
            raise SalesforceApiError(
                "; ".join(messages) or f"Failed to create {sobject}",
                status_code=response.status_code,
                messages=messages,
            )
        logger.debug("salesforce_client.record_created", sobject=sobject, record_id=body["id"])
        return body["id"]

    async def _update_record(self, sobject: str, record_id: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", f"/sobjects/{sobject}/{record_id}", json=fields)
        logger.debug("salesforce_client.record_updated", sobject=sobject, record_id=record_id)

    async def get_account(self, account_id: str) -> SalesforceAccount | None:
        return await self._get_record("Account", account_id, SalesforceAccount, ACCOUNT_FIELDS)

    async def get_contact(self, contact_id: str) -> SalesforceContact | None:
        return await self._get_record("Contact", contact_id, SalesforceContact, CONTACT_FIELDS)

    async def get_opportunity(self, opportunity_id: str) -> SalesforceOpportunity | None:
        return await self._get_record(
            "Opportunity", opportunity_id, SalesforceOpportunity, OPPORTUNITY_FIELDS
        )

    async def create_account(self, fields: dict[str, Any]) -> str:
        return await self._create_record("Account", fields)

    async def create_contact(self, fields: dict[str, Any]) -> str:
        return await self._create_record("Contact", fields)

    async def create_opportunity(self, fields: dict[str, Any]) -> str:
        return await self._create_record("Opportunity", fields)

    async def update_account(self, account_id: str, fields: dict[str, Any]) -> None:
        await self._update_record("Account", account_id, fields)

    async def update_contact(self, contact_id: str, fields: dict[str, Any]) -> None:
        await self._update_record("Contact", contact_id, fields)

    async def update_opportunity(self, opportunity_id: str, fields: dict[str, Any]) -> None:
        await self._update_record("Opportunity", opportunity_id, fields)

    # ── Metadata ────────────────────────────────────────────────────────────

    async def get_identity(self) -> dict[str, Any]:
        """Return the OpenID userinfo of the connected Salesforce user."""
        response = await self._request("GET", "/services/oauth2/userinfo")
        return response.json()

    async def get_limits(self) -> dict[str, Any]:
        response = await self._request("GET", "/limits")
        return response.json()

    async def test_connection(self) -> bool:
        """True if the org answers an authenticated request."""
        try:
            await self.get_limits()
        except SalesforceError as exc:
            logger.warning("salesforce_client.connection_test_failed", error=str(exc))
            return False
        return True

    async def get_opportunity_stages(self) -> list[str]:
        """Active values of the Opportunity StageName picklist."""
        response = await self._request("GET", "/sobjects/Opportunity/describe")
        for field in response.json().get("fields", []):
            if field.get("name") == "StageName":
                return [
                    value["value"]
                    for value in field.get("picklistValues", [])
                    if value.get("active", True)
                ]
        return []


# ── Factory ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def create_salesforce_client(
    organization_id: str,
    integrations: Any,
    *,
    http_client: httpx.AsyncClient | None = None,
    oauth_config: OAuthConfig | None = None,
) -> AsyncIterator[SalesforceClient]:
    """Open a client for an organization's enabled integration.

    Refreshed access tokens are written back through the integration store.
    The underlying HTTP session is closed when the context exits.

    Raises:
        SalesforceConfigError: The connected app credentials are not configured.
        SalesforceNotConnectedError: No enabled integration for the organization.
    """
    oauth_config = oauth_config or get_oauth_config()
    integration = await integrations.get(organization_id)
    if integration is None or not integration.is_enabled:
        raise SalesforceNotConnectedError(
            f"Salesforce integration not configured or disabled for {organization_id}"
        )
    credentials = await integrations.get_credentials(organization_id)
    if credentials is None:
        raise SalesforceNotConnectedError(
            f"Salesforce credentials missing for {organization_id}"
        )

    async def _persist_token(access_token: str, instance_url: str) -> None:
        await integrations.save_access_token(organization_id, access_token, instance_url)

    client = SalesforceClient(
        credentials.access_token,
        credentials.instance_url,
        refresh_token=credentials.refresh_token,
        on_token_refresh=_persist_token,
        oauth_config=oauth_config,
        http_client=http_client,
    )
    try:
        yield client
    finally:
        await client.aclose()
