"""Test doubles and payload builders for Salesforce sync tests.

Provides:
- InMemoryCRMStore: CRMStore implementation backed by dicts
- FakeSalesforceClient: records create/update calls, serves canned query results
- InMemoryIntegrationStore: SalesforceIntegrationStore stand-in without encryption
- Builders for Salesforce payloads in their wire (alias) shape
"""

from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from src.tracker.crm.schemas import (
    AccountRecord,
    AccountSyncData,
    ContactRecord,
    ContactSyncData,
    OpportunityRecord,
    OpportunitySyncData,
    SalesforceSyncStatus,
    UserRecord,
    UserRole,
)
from src.tracker.crm.store import CRMStore, needs_export
from src.tracker.integrations.salesforce.errors import SalesforceApiError
from src.tracker.integrations.salesforce.store import SalesforceCredentials, SalesforceIntegration
from src.tracker.integrations.salesforce.types import (
    InvalidRecord,
    QueryResult,
    SalesforceAccount,
    SalesforceContact,
    SalesforceOpportunity,
    SalesforceTokenResponse,
    SalesforceUser,
    SyncRunStatus,
)

ORG_ID = "11111111-1111-1111-1111-111111111111"


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


# ── Salesforce Payload Builders ────────────────────────────────────────────


def sf_account(sf_id: str, name: str, modified: str = "2024-01-02T00:00:00.000+0000", **fields) -> SalesforceAccount:
    return SalesforceAccount.model_validate(
        {"Id": sf_id, "Name": name, "LastModifiedDate": modified, **fields}
    )


def sf_contact(
    sf_id: str,
    last_name: str,
    account_id: str | None,
    modified: str = "2024-01-02T00:00:00.000+0000",
    **fields,
) -> SalesforceContact:
    return SalesforceContact.model_validate(
        {
            "Id": sf_id,
            "LastName": last_name,
            "AccountId": account_id,
            "LastModifiedDate": modified,
            **fields,
        }
    )


def sf_opportunity(
    sf_id: str,
    name: str,
    modified: str = "2024-01-02T00:00:00.000+0000",
    **fields,
) -> SalesforceOpportunity:
    payload = {
        "Id": sf_id,
        "Name": name,
        "StageName": "Prospecting",
        "Amount": 1000.0,
        "CloseDate": "2024-06-30",
        "LastModifiedDate": modified,
    }
    payload.update(fields)
    return SalesforceOpportunity.model_validate(payload)


def sf_user(sf_id: str, email: str) -> SalesforceUser:
    return SalesforceUser.model_validate({"Id": sf_id, "Email": email, "Name": email, "IsActive": True})


# ── In-Memory CRM Store ────────────────────────────────────────────────────


class InMemoryCRMStore(CRMStore):
    """CRMStore double. Sync writes stamp updated_at like the SQL repository."""

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.accounts: dict[str, AccountRecord] = {}
        self.contacts: dict[str, ContactRecord] = {}
        self.opportunities: dict[str, OpportunityRecord] = {}
        self._ids = itertools.count(1)
        self.fail_create_for: set[str] = set()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # ── Seeding helpers ────────────────────────────────────────────────────

    def add_user(self, email: str, role: UserRole = UserRole.MEMBER, **fields) -> UserRecord:
        user = UserRecord(id=self._next_id("user"), organization_id=ORG_ID, email=email, role=role, **fields)
        self.users[user.id] = user
        return user

    def add_account(self, name: str, **fields) -> AccountRecord:
        account = AccountRecord(id=self._next_id("acct"), organization_id=ORG_ID, name=name, **fields)
        self.accounts[account.id] = account
        return account

    def add_contact(self, last_name: str, **fields) -> ContactRecord:
        contact = ContactRecord(id=self._next_id("contact"), organization_id=ORG_ID, last_name=last_name, **fields)
        self.contacts[contact.id] = contact
        return contact

    def add_opportunity(self, name: str, owner_id: str, **fields) -> OpportunityRecord:
        opportunity = OpportunityRecord(
            id=self._next_id("opp"), organization_id=ORG_ID, name=name, owner_id=owner_id, **fields
        )
        self.opportunities[opportunity.id] = opportunity
        return opportunity

    # ── Users ──────────────────────────────────────────────────────────────

    async def list_users(self, organization_id: str) -> list[UserRecord]:
        return [u for u in self.users.values() if u.organization_id == organization_id]

    async def set_user_salesforce_id(self, user_id: str, salesforce_user_id: str) -> None:
        self.users[user_id] = self.users[user_id].model_copy(
            update={"salesforce_user_id": salesforce_user_id}
        )

    # ── Accounts ───────────────────────────────────────────────────────────

    async def list_accounts_with_salesforce_id(self, organization_id: str) -> list[AccountRecord]:
        return [a for a in self.accounts.values() if a.salesforce_id]

    async def create_account_from_salesforce(self, organization_id: str, data: AccountSyncData) -> AccountRecord:
        if data.name in self.fail_create_for:
            raise RuntimeError(f"database rejected {data.name}")
        account = AccountRecord(
            id=self._next_id("acct"),
            organization_id=organization_id,
            updated_at=data.salesforce_last_sync_at,
            **data.model_dump(),
        )
        self.accounts[account.id] = account
        return account

    async def update_account_from_salesforce(self, account_id: str, data: AccountSyncData) -> None:
        self.accounts[account_id] = self.accounts[account_id].model_copy(
            update={**data.model_dump(), "updated_at": data.salesforce_last_sync_at}
        )

    async def list_accounts_pending_export(self, organization_id: str) -> list[AccountRecord]:
        return [a for a in self.accounts.values() if needs_export(a)]

    async def mark_account_exported(self, account_id: str, salesforce_id: str, synced_at: datetime) -> None:
        self.accounts[account_id] = self.accounts[account_id].model_copy(
            update={
                "salesforce_id": salesforce_id,
                "salesforce_last_sync_at": synced_at,
                "salesforce_last_modified": synced_at,
                "updated_at": synced_at,
            }
        )

    # ── Contacts ───────────────────────────────────────────────────────────

    async def list_contacts_with_salesforce_id(self, organization_id: str) -> list[ContactRecord]:
        return [c for c in self.contacts.values() if c.salesforce_id]

    async def create_contact_from_salesforce(self, organization_id: str, data: ContactSyncData) -> ContactRecord:
        contact = ContactRecord(
            id=self._next_id("contact"),
            organization_id=organization_id,
            updated_at=data.salesforce_last_sync_at,
            **data.model_dump(),
        )
        self.contacts[contact.id] = contact
        return contact

    async def update_contact_from_salesforce(self, contact_id: str, data: ContactSyncData) -> None:
        self.contacts[contact_id] = self.contacts[contact_id].model_copy(
            update={**data.model_dump(), "updated_at": data.salesforce_last_sync_at}
        )

    async def list_contacts_pending_export(self, organization_id: str) -> list[ContactRecord]:
        return [c for c in self.contacts.values() if needs_export(c)]

    async def mark_contact_exported(self, contact_id: str, salesforce_id: str, synced_at: datetime) -> None:
        self.contacts[contact_id] = self.contacts[contact_id].model_copy(
            update={"salesforce_id": salesforce_id, "salesforce_last_sync_at": synced_at, "updated_at": synced_at}
        )

    # ── Opportunities ──────────────────────────────────────────────────────

    async def list_opportunities_with_salesforce_id(self, organization_id: str) -> list[OpportunityRecord]:
        return [o for o in self.opportunities.values() if o.salesforce_id]

    async def create_opportunity_from_salesforce(
        self, organization_id: str, data: OpportunitySyncData
    ) -> OpportunityRecord:
        opportunity = OpportunityRecord(
            id=self._next_id("opp"),
            organization_id=organization_id,
            updated_at=data.salesforce_last_sync_at,
            **data.model_dump(),
        )
        self.opportunities[opportunity.id] = opportunity
        return opportunity

    async def update_opportunity_from_salesforce(self, opportunity_id: str, data: OpportunitySyncData) -> None:
        self.opportunities[opportunity_id] = self.opportunities[opportunity_id].model_copy(
            update={**data.model_dump(), "updated_at": data.salesforce_last_sync_at}
        )

    async def list_opportunities_pending_export(self, organization_id: str) -> list[OpportunityRecord]:
        return [o for o in self.opportunities.values() if needs_export(o)]

    async def mark_opportunity_exported(
        self, opportunity_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        self.opportunities[opportunity_id] = self.opportunities[opportunity_id].model_copy(
            update={
                "salesforce_id": salesforce_id,
                "salesforce_last_sync_at": synced_at,
                "salesforce_last_modified": synced_at,
                "salesforce_sync_status": SalesforceSyncStatus.synced,
                "updated_at": synced_at,
            }
        )

    async def mark_opportunity_pending_push(self, opportunity_id: str) -> None:
        self.opportunities[opportunity_id] = self.opportunities[opportunity_id].model_copy(
            update={"salesforce_sync_status": SalesforceSyncStatus.pending_push}
        )


# ── Fake Salesforce Client ─────────────────────────────────────────────────


class FakeSalesforceClient:
    """Serves canned records and records every write.

    Set reject_names to make create/update of records with those names fail
    with a SalesforceApiError, or query_errors[entity] to fail a query.
    invalid[entity] lists rows the query rejected during validation.
    """

    def __init__(self) -> None:
        self.users: list[SalesforceUser] = []
        self.accounts: list[SalesforceAccount] = []
        self.contacts: list[SalesforceContact] = []
        self.opportunities: list[SalesforceOpportunity] = []
        self.created: list[tuple[str, dict[str, Any]]] = []
        self.updated: list[tuple[str, str, dict[str, Any]]] = []
        self.query_calls: list[tuple[str, dict[str, Any]]] = []
        self.reject_names: set[str] = set()
        self.query_errors: dict[str, Exception] = {}
        self.invalid: dict[str, list[InvalidRecord]] = {}
        self._ids = itertools.count(1)

    async def query_users(self) -> list[SalesforceUser]:
        return list(self.users)

    async def _query(self, entity: str, records: list, **kwargs) -> QueryResult:
        self.query_calls.append((entity, kwargs))
        if entity in self.query_errors:
            raise self.query_errors[entity]
        return QueryResult(records=list(records), invalid=list(self.invalid.get(entity, [])))

    async def query_accounts(self, modified_since=None, limit=None):
        return await self._query("accounts", self.accounts, modified_since=modified_since, limit=limit)

    async def query_contacts(self, modified_since=None, limit=None, account_id=None):
        return await self._query("contacts", self.contacts, modified_since=modified_since, limit=limit)

    async def query_opportunities(self, modified_since=None, limit=None):
        return await self._query(
            "opportunities", self.opportunities, modified_since=modified_since, limit=limit
        )

    def _check(self, fields: dict[str, Any]) -> None:
        name = fields.get("Name") or fields.get("LastName")
        if name in self.reject_names:
            raise SalesforceApiError(
                "Required fields are missing: [StageName]",
                status_code=400,
                error_code="REQUIRED_FIELD_MISSING",
                messages=["Required fields are missing: [StageName]"],
                fields=["StageName"],
            )

    async def _create(self, sobject: str, prefix: str, fields: dict[str, Any]) -> str:
        self._check(fields)
        sf_id = f"{prefix}NEW{next(self._ids):012d}"
        self.created.append((sobject, fields))
        return sf_id

    async def _update(self, sobject: str, sf_id: str, fields: dict[str, Any]) -> None:
        self._check(fields)
        self.updated.append((sobject, sf_id, fields))

    async def create_account(self, fields):
        return await self._create("Account", "001", fields)

    async def create_contact(self, fields):
        return await self._create("Contact", "003", fields)

    async def create_opportunity(self, fields):
        return await self._create("Opportunity", "006", fields)

    async def update_account(self, sf_id, fields):
        await self._update("Account", sf_id, fields)

    async def update_contact(self, sf_id, fields):
        await self._update("Contact", sf_id, fields)

    async def update_opportunity(self, sf_id, fields):
        await self._update("Opportunity", sf_id, fields)


# ── In-Memory Integration Store ────────────────────────────────────────────


class InMemoryIntegrationStore:
    """Integration store double; keeps plaintext credentials."""

    def __init__(self) -> None:
        self.integrations: dict[str, SalesforceIntegration] = {}
        self.credentials: dict[str, SalesforceCredentials] = {}
        self.results: list[dict[str, Any]] = []

    def connect(self, organization_id: str = ORG_ID, **fields) -> SalesforceIntegration:
        integration = SalesforceIntegration(
            id=f"int-{organization_id}",
            organization_id=organization_id,
            instance_url="https://example.my.salesforce.com",
            **fields,
        )
        self.integrations[organization_id] = integration
        self.credentials[organization_id] = SalesforceCredentials(
            organization_id=organization_id,
            access_token="access-token",
            refresh_token="refresh-token",
            instance_url=integration.instance_url,
        )
        return integration

    async def get(self, organization_id: str) -> SalesforceIntegration | None:
        return self.integrations.get(organization_id)

    async def get_credentials(self, organization_id: str) -> SalesforceCredentials | None:
        return self.credentials.get(organization_id)

    async def list_enabled(self) -> list[SalesforceIntegration]:
        return [i for i in self.integrations.values() if i.is_enabled]

    async def save_connection(self, organization_id: str, tokens: SalesforceTokenResponse) -> SalesforceIntegration:
        integration = self.integrations.get(organization_id)
        if integration is None:
            integration = self.connect(organization_id)
        integration = integration.model_copy(
            update={"instance_url": tokens.instance_url, "is_enabled": True, "last_sync_error": None}
        )
        self.integrations[organization_id] = integration
        self.credentials[organization_id] = SalesforceCredentials(
            organization_id=organization_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or "",
            instance_url=tokens.instance_url,
        )
        return integration

    async def save_access_token(self, organization_id: str, access_token: str, instance_url: str | None = None) -> None:
        credentials = self.credentials[organization_id]
        self.credentials[organization_id] = credentials.model_copy(
            update={"access_token": access_token, "instance_url": instance_url or credentials.instance_url}
        )

    async def update_settings(self, organization_id: str, *, is_enabled=None, sync_direction=None, sync_interval_minutes=None):
        integration = self.integrations.get(organization_id)
        if integration is None:
            return None
        changes = {
            key: value
            for key, value in (
                ("is_enabled", is_enabled),
                ("sync_direction", sync_direction),
                ("sync_interval_minutes", sync_interval_minutes),
            )
            if value is not None
        }
        self.integrations[organization_id] = integration.model_copy(update=changes)
        return self.integrations[organization_id]

    async def delete(self, organization_id: str) -> bool:
        self.credentials.pop(organization_id, None)
        return self.integrations.pop(organization_id, None) is not None

    async def mark_sync_started(self, organization_id: str) -> bool:
        integration = self.integrations[organization_id]
        if integration.last_sync_status == SyncRunStatus.in_progress:
            return False
        self.integrations[organization_id] = integration.model_copy(
            update={"last_sync_status": SyncRunStatus.in_progress, "last_sync_error": None}
        )
        return True

    async def record_sync_result(self, organization_id, status, *, error=None, cursor=None, finished_at=None):
        self.results.append({"status": status, "error": error, "cursor": cursor})
        update = {
            "last_sync_status": SyncRunStatus(status),
            "last_sync_error": error,
            "last_sync_at": finished_at or datetime.now(timezone.utc),
        }
        if cursor is not None:
            update["sync_cursor"] = cursor
        self.integrations[organization_id] = self.integrations[organization_id].model_copy(update=update)


def make_client_factory(client: Any):
    """Build a create_salesforce_client replacement yielding the given client."""
    opened: list[str] = []

    @asynccontextmanager
    async def factory(organization_id, integrations):
        opened.append(organization_id)
        yield client

    factory.opened = opened  # type: ignore[attr-defined]
    return factory
