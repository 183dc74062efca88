"""Salesforce boundary types, stage tables, and confidence/probability scales.

Every payload received from Salesforce is validated into one of the record
models below before it reaches a mapper. Models expose snake_case attributes
and accept the Salesforce field names as aliases; unknown keys (such as the
REST "attributes" envelope) are ignored.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.tracker.crm.schemas import OpportunityStage

_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_salesforce_datetime(value: Any) -> Any:
    """Parse Salesforce datetimes such as '2024-01-02T00:00:00.000+0000'.

    Naive values are assumed to be UTC. Non-string values pass through.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str):
        return value
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    normalized = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", normalized)
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_salesforce_datetime(value: datetime) -> str:
    """Format a datetime as a SOQL datetime literal in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ── Record Models ───────────────────────────────────────────────────────────


class SalesforceRecord(BaseModel):
    """Common configuration for Salesforce sObject payloads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    last_modified_date: datetime = Field(alias="LastModifiedDate")
    created_date: datetime | None = Field(default=None, alias="CreatedDate")

    @field_validator("last_modified_date", "created_date", mode="before")
    @classmethod
    def _parse_datetime(cls, value: Any) -> Any:
        return parse_salesforce_datetime(value)


class SalesforceAccount(SalesforceRecord):
    name: str = Field(alias="Name")
    website: str | None = Field(default=None, alias="Website")
    industry: str | None = Field(default=None, alias="Industry")
    description: str | None = Field(default=None, alias="Description")
    owner_id: str | None = Field(default=None, alias="OwnerId")


class SalesforceContact(SalesforceRecord):
    first_name: str | None = Field(default=None, alias="FirstName")
    last_name: str = Field(alias="LastName")
    title: str | None = Field(default=None, alias="Title")
    email: str | None = Field(default=None, alias="Email")
    phone: str | None = Field(default=None, alias="Phone")
    account_id: str | None = Field(default=None, alias="AccountId")
    owner_id: str | None = Field(default=None, alias="OwnerId")


class SalesforceOpportunity(SalesforceRecord):
    name: str = Field(alias="Name")
    amount: float | None = Field(default=None, alias="Amount")
    close_date: date | None = Field(default=None, alias="CloseDate")
    stage_name: str = Field(alias="StageName")
    probability: float | None = Field(default=None, alias="Probability")
    next_step: str | None = Field(default=None, alias="NextStep")
    description: str | None = Field(default=None, alias="Description")
    account_id: str | None = Field(default=None, alias="AccountId")
    owner_id: str | None = Field(default=None, alias="OwnerId")
    forecast_category_name: str | None = Field(default=None, alias="ForecastCategoryName")


class SalesforceUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    email: str = Field(alias="Email")
    name: str | None = Field(default=None, alias="Name")
    is_active: bool = Field(default=True, alias="IsActive")


RecordT = TypeVar("RecordT", bound=SalesforceRecord)


class InvalidRecord(BaseModel):
    """A queried row that failed validation."""

    salesforce_id: str | None = None
    error: str


class QueryResult(BaseModel, Generic[RecordT]):
    """Validated records of a query plus the rows that were rejected."""

    records: list[RecordT] = Field(default_factory=list)
    invalid: list[InvalidRecord] = Field(default_factory=list)


class SalesforceTokenResponse(BaseModel):
    """OAuth token endpoint response (refresh responses omit refresh_token)."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    instance_url: str
    refresh_token: str | None = None
    id: str | None = None
    token_type: str | None = None
    issued_at: str | None = None
    signature: str | None = None


# SOQL field lists, kept in sync with the models above
ACCOUNT_FIELDS = (
    "Id, Name, Website, Industry, Description, OwnerId, LastModifiedDate, CreatedDate"
)
CONTACT_FIELDS = (
    "Id, FirstName, LastName, Title, Email, Phone, AccountId, OwnerId, "
    "LastModifiedDate, CreatedDate"
)
OPPORTUNITY_FIELDS = (
    "Id, Name, Amount, CloseDate, StageName, Probability, NextStep, Description, "
    "AccountId, OwnerId, ForecastCategoryName, LastModifiedDate, CreatedDate"
)
USER_FIELDS = "Id, Email, Name, IsActive"


# ── Sync Enums ──────────────────────────────────────────────────────────────


class SyncDirection(str, Enum):
    import_only = "import_only"
    export_only = "export_only"
    bidirectional = "bidirectional"


class SyncRunStatus(str, Enum):
    in_progress = "in_progress"
    success = "success"
    partial = "partial"
    failed = "failed"


# ── Stage Mapping ───────────────────────────────────────────────────────────

STAGE_TO_SALESFORCE: dict[OpportunityStage, str] = {
    OpportunityStage.discovery: "Prospecting",
    OpportunityStage.demo: "Needs Analysis",
    OpportunityStage.validateSolution: "Proposal/Price Quote",
    OpportunityStage.decisionMakerApproval: "Negotiation/Review",
    OpportunityStage.contracting: "Negotiation/Review",
    OpportunityStage.closedWon: "Closed Won",
    OpportunityStage.closedLost: "Closed Lost",
}

STAGE_FROM_SALESFORCE: dict[str, OpportunityStage] = {
    "Prospecting": OpportunityStage.discovery,
    "Qualification": OpportunityStage.discovery,
    "Needs Analysis": OpportunityStage.demo,
    "Value Proposition": OpportunityStage.demo,
    "Id. Decision Makers": OpportunityStage.demo,
    "Perception Analysis": OpportunityStage.validateSolution,
    "Proposal/Price Quote": OpportunityStage.validateSolution,
    "Negotiation/Review": OpportunityStage.decisionMakerApproval,
    "Closed Won": OpportunityStage.closedWon,
    "Closed Lost": OpportunityStage.closedLost,
}


# ── Confidence <-> Probability ──────────────────────────────────────────────

CONFIDENCE_TO_PROBABILITY: dict[int, int] = {1: 10, 2: 25, 3: 50, 4: 75, 5: 90}

# Keyed by probability rounded to the nearest 10
PROBABILITY_TO_CONFIDENCE: dict[int, int] = {
    0: 1,
    10: 1,
    20: 2,
    30: 2,
    40: 3,
    50: 3,
    60: 4,
    70: 4,
    80: 5,
    90: 5,
    100: 5,
}

DEFAULT_CONFIDENCE = 3

_PROBABILITY_ANCHORS: dict[float, int] = {
    float(probability): confidence
    for confidence, probability in CONFIDENCE_TO_PROBABILITY.items()
}


def probability_to_confidence(probability: float | None) -> int:
    """Convert a 0-100 Salesforce probability to a 1-5 confidence level."""
    if probability is None:
        return DEFAULT_CONFIDENCE
    # Exact anchors first so confidence -> probability -> confidence is lossless
    anchor = _PROBABILITY_ANCHORS.get(probability)
    if anchor is not None:
        return anchor
    rounded = int(probability / 10 + 0.5) * 10
    clamped = max(0, min(100, rounded))
    return PROBABILITY_TO_CONFIDENCE.get(clamped, DEFAULT_CONFIDENCE)


def confidence_to_probability(confidence: int) -> int:
    """Convert a 1-5 confidence level to a 0-100 Salesforce probability."""
    clamped = max(1, min(5, int(confidence)))
    return CONFIDENCE_TO_PROBABILITY[clamped]
