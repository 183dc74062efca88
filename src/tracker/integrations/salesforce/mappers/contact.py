"""Contact field mapping. Account links resolve through an AccountIdMap."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.tracker.crm.schemas import ContactRecord, ContactSyncData
from src.tracker.integrations.salesforce.mappers.account import AccountIdMap
from src.tracker.integrations.salesforce.types import SalesforceContact


def map_salesforce_to_contact(
    sf_contact: SalesforceContact, account_map: AccountIdMap, synced_at: datetime
) -> ContactSyncData:
    """account_id is None when the Salesforce account is not linked locally."""
    return ContactSyncData(
        first_name=sf_contact.first_name or None,
        last_name=sf_contact.last_name,
        title=sf_contact.title or None,
        email=sf_contact.email or None,
        phone=sf_contact.phone or None,
        account_id=account_map.get_app_id(sf_contact.account_id),
        salesforce_id=sf_contact.id,
        salesforce_last_sync_at=synced_at,
    )


def map_contact_to_salesforce(contact: ContactRecord, account_map: AccountIdMap) -> dict[str, Any]:
    fields: dict[str, Any] = {"LastName": contact.last_name}
    for key, value in (
        ("FirstName", contact.first_name),
        ("Title", contact.title),
        ("Email", contact.email),
        ("Phone", contact.phone),
    ):
        if value:
            fields[key] = value
    sf_account_id = account_map.get_salesforce_id(contact.account_id)
    if sf_account_id:
        fields["AccountId"] = sf_account_id
    return fields


def is_salesforce_contact_newer(
    sf_contact: SalesforceContact, local: ContactRecord | None
) -> bool:
    # Contacts keep no Salesforce modification stamp; compare with the last sync
    if local is None or local.salesforce_last_sync_at is None:
        return True
    return sf_contact.last_modified_date > local.salesforce_last_sync_at
