"""Pydantic schemas for the sync-relevant slice of the CRM.

Defines:
- Enums: UserRole, OpportunityStage, ForecastCategory, SalesforceSyncStatus
- Local records: UserRecord, AccountRecord, ContactRecord, OpportunityRecord
- Sync write payloads: AccountSyncData, ContactSyncData, OpportunitySyncData

Amounts are integer cents. Timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    MEMBER = "MEMBER"


class OpportunityStage(str, Enum):
    """Pipeline stages in pipeline order (discovery is the earliest)."""

    discovery = "discovery"
    demo = "demo"
    validateSolution = "validateSolution"
    decisionMakerApproval = "decisionMakerApproval"
    contracting = "contracting"
    closedWon = "closedWon"
    closedLost = "closedLost"


class ForecastCategory(str, Enum):
    pipeline = "pipeline"
    bestCase = "bestCase"
    commit = "commit"
    closedWon = "closedWon"
    closedLost = "closedLost"


class SalesforceSyncStatus(str, Enum):
    synced = "synced"
    pending_push = "pending_push"


# ── Local Records ───────────────────────────────────────────────────────────


class UserRecord(BaseModel):
    """Organization member eligible to own CRM records."""

    id: str
    organization_id: str
    email: str
    name: str | None = None
    role: UserRole = UserRole.MEMBER
    salesforce_user_id: str | None = None


class AccountRecord(BaseModel):
    id: str
    organization_id: str
    name: str
    website: str | None = None
    industry: str | None = None
    owner_id: str | None = None
    salesforce_id: str | None = None
    salesforce_last_modified: datetime | None = None
    salesforce_last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContactRecord(BaseModel):
    id: str
    organization_id: str
    first_name: str | None = None
    last_name: str
    title: str | None = None
    email: str | None = None
    phone: str | None = None
    account_id: str | None = None
    salesforce_id: str | None = None
    salesforce_last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OpportunityRecord(BaseModel):
    id: str
    organization_id: str
    name: str
    amount_cents: int = 0
    close_date: date | None = None
    stage: OpportunityStage = OpportunityStage.discovery
    confidence_level: int = Field(default=3, ge=1, le=5)
    forecast_category: ForecastCategory | None = None
    next_step: str | None = None
    notes: str | None = None
    owner_id: str
    account_id: str | None = None
    salesforce_id: str | None = None
    salesforce_last_modified: datetime | None = None
    salesforce_last_sync_at: datetime | None = None
    salesforce_sync_status: SalesforceSyncStatus | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Sync Write Payloads ─────────────────────────────────────────────────────


class AccountSyncData(BaseModel):
    """Account fields written locally when importing from Salesforce."""

    name: str
    website: str | None = None
    industry: str | None = None
    owner_id: str
    salesforce_id: str
    salesforce_last_modified: datetime
    salesforce_last_sync_at: datetime


class ContactSyncData(BaseModel):
    """Contact fields written locally when importing from Salesforce."""

    first_name: str | None = None
    last_name: str
    title: str | None = None
    email: str | None = None
    phone: str | None = None
    account_id: str | None = None
    salesforce_id: str
    salesforce_last_sync_at: datetime


class OpportunitySyncData(BaseModel):
    """Opportunity fields written locally when importing from Salesforce."""

    name: str
    amount_cents: int
    close_date: date | None = None
    stage: OpportunityStage
    confidence_level: int = Field(ge=1, le=5)
    forecast_category: ForecastCategory | None = None
    next_step: str | None = None
    notes: str | None = None
    owner_id: str
    account_id: str | None = None
    salesforce_id: str
    salesforce_last_modified: datetime
    salesforce_last_sync_at: datetime
    salesforce_sync_status: SalesforceSyncStatus = SalesforceSyncStatus.synced
