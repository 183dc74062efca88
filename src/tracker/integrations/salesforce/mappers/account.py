"""Account field mapping and the Salesforce <-> local account ID map."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.tracker.crm.schemas import AccountRecord, AccountSyncData
from src.tracker.integrations.salesforce.mappers.user import (
    UserIdMap,
    get_app_owner_id,
    get_salesforce_owner_id,
)
from src.tracker.integrations.salesforce.types import SalesforceAccount


@dataclass
class AccountIdMap:
    """Bidirectional map of linked accounts, grown as a sync creates links."""

    sf_to_app: dict[str, str] = field(default_factory=dict)
    app_to_sf: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_accounts(cls, accounts: list[AccountRecord]) -> AccountIdMap:
        account_map = cls()
        for account in accounts:
            if account.salesforce_id:
                account_map.add(account.id, account.salesforce_id)
        return account_map

    def add(self, app_id: str, salesforce_id: str) -> None:
        self.sf_to_app[salesforce_id] = app_id
        self.app_to_sf[app_id] = salesforce_id

    def get_app_id(self, salesforce_id: str | None) -> str | None:
        return self.sf_to_app.get(salesforce_id) if salesforce_id else None

    def get_salesforce_id(self, app_id: str | None) -> str | None:
        return self.app_to_sf.get(app_id) if app_id else None


def map_salesforce_to_account(
    sf_account: SalesforceAccount, user_map: UserIdMap, synced_at: datetime
) -> AccountSyncData:
    return AccountSyncData(
        name=sf_account.name,
        website=sf_account.website or None,
        industry=sf_account.industry or None,
        owner_id=get_app_owner_id(user_map, sf_account.owner_id),
        salesforce_id=sf_account.id,
        salesforce_last_modified=sf_account.last_modified_date,
        salesforce_last_sync_at=synced_at,
    )


def map_account_to_salesforce(account: AccountRecord, user_map: UserIdMap) -> dict[str, Any]:
    """Build the Account payload. Empty optional fields are left out."""
    fields: dict[str, Any] = {"Name": account.name}
    if account.website:
        fields["Website"] = account.website
    if account.industry:
        fields["Industry"] = account.industry
    owner_id = get_salesforce_owner_id(user_map, account.owner_id)
    if owner_id:
        fields["OwnerId"] = owner_id
    return fields


def is_salesforce_account_newer(
    sf_account: SalesforceAccount, local: AccountRecord | None
) -> bool:
    if local is None or local.salesforce_last_modified is None:
        return True
    return sf_account.last_modified_date > local.salesforce_last_modified
