"""CRM store abstract base class -- the local read/write contract used by Salesforce sync.

The import and export engines only talk to the local database through this
interface. CRMRepository implements it on SQLAlchemy; tests use an in-memory
double.

Export selection rule (shared by every implementation):
- no Salesforce ID yet (never exported), or
- never synced, or
- updated_at strictly after salesforce_last_sync_at, or
- (opportunities only) salesforce_sync_status == pending_push.

Writes performed by the sync itself stamp updated_at with the same instant as
salesforce_last_sync_at, so a synced record is not re-selected by its own write.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.tracker.crm.schemas import (
    AccountRecord,
    AccountSyncData,
    ContactRecord,
    ContactSyncData,
    OpportunityRecord,
    OpportunitySyncData,
    SalesforceSyncStatus,
    UserRecord,
)


def needs_export(record: AccountRecord | ContactRecord | OpportunityRecord) -> bool:
    """Return True if a local record is new or modified since its last sync."""
    if not record.salesforce_id:
        return True
    if isinstance(record, OpportunityRecord) and (
        record.salesforce_sync_status == SalesforceSyncStatus.pending_push
    ):
        return True
    if record.salesforce_last_sync_at is None:
        return True
    if record.updated_at is None:
        return False
    return record.updated_at > record.salesforce_last_sync_at


class CRMStore(ABC):
    """Abstract interface for the local CRM records touched by sync.

    All list methods are scoped to one organization. Each write is an
    independent operation; no transaction spans a batch.
    """

    # ── Users ───────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_users(self, organization_id: str) -> list[UserRecord]:
        """List all users of the organization in creation order."""
        ...

    @abstractmethod
    async def set_user_salesforce_id(self, user_id: str, salesforce_user_id: str) -> None:
        """Persist the Salesforce user ID matched to a local user."""
        ...

    # ── Accounts ────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_accounts_with_salesforce_id(self, organization_id: str) -> list[AccountRecord]:
        """List accounts already linked to Salesforce."""
        ...

    @abstractmethod
    async def create_account_from_salesforce(
        self, organization_id: str, data: AccountSyncData
    ) -> AccountRecord:
        """Create a local account from imported Salesforce data."""
        ...

    @abstractmethod
    async def update_account_from_salesforce(self, account_id: str, data: AccountSyncData) -> None:
        """Overwrite a local account with imported Salesforce data."""
        ...

    @abstractmethod
    async def list_accounts_pending_export(self, organization_id: str) -> list[AccountRecord]:
        """List accounts selected by the export rule."""
        ...

    @abstractmethod
    async def mark_account_exported(
        self, account_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        """Store the Salesforce ID and sync timestamps after a successful push."""
        ...

    # ── Contacts ────────────────────────────────────────────────────────────

    @abstractmethod
    async def list_contacts_with_salesforce_id(self, organization_id: str) -> list[ContactRecord]:
        """List contacts already linked to Salesforce."""
        ...

    @abstractmethod
    async def create_contact_from_salesforce(
        self, organization_id: str, data: ContactSyncData
    ) -> ContactRecord:
        """Create a local contact from imported Salesforce data."""
        ...

    @abstractmethod
    async def update_contact_from_salesforce(self, contact_id: str, data: ContactSyncData) -> None:
        """Overwrite a local contact with imported Salesforce data."""
        ...

    @abstractmethod
    async def list_contacts_pending_export(self, organization_id: str) -> list[ContactRecord]:
        """List contacts selected by the export rule."""
        ...

    @abstractmethod
    async def mark_contact_exported(
        self, contact_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        """Store the Salesforce ID and sync timestamp after a successful push."""
        ...

    # ── Opportunities ───────────────────────────────────────────────────────

    @abstractmethod
    async def list_opportunities_with_salesforce_id(
        self, organization_id: str
    ) -> list[OpportunityRecord]:
        """List opportunities already linked to Salesforce."""
        ...

    @abstractmethod
    async def create_opportunity_from_salesforce(
        self, organization_id: str, data: OpportunitySyncData
    ) -> OpportunityRecord:
        """Create a local opportunity from imported Salesforce data."""
        ...

    @abstractmethod
    async def update_opportunity_from_salesforce(
        self, opportunity_id: str, data: OpportunitySyncData
    ) -> None:
        """Overwrite a local opportunity with imported Salesforce data."""
        ...

    @abstractmethod
    async def list_opportunities_pending_export(
        self, organization_id: str
    ) -> list[OpportunityRecord]:
        """List opportunities selected by the export rule."""
        ...

    @abstractmethod
    async def mark_opportunity_exported(
        self, opportunity_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        """Store the Salesforce ID, sync timestamps and 'synced' status after a push."""
        ...

    @abstractmethod
    async def mark_opportunity_pending_push(self, opportunity_id: str) -> None:
        """Flag an opportunity for retry on the next export."""
        ...
