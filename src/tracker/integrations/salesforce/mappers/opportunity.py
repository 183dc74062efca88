"""Opportunity field mapping: stages, forecast categories, amounts, and owners.

Salesforce stores Amount as a decimal currency value; the tracker stores
integer cents. Stage names outside the standard table are classified by
keyword, first matching rule wins.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.tracker.crm.schemas import (
    ForecastCategory,
    OpportunityRecord,
    OpportunityStage,
    OpportunitySyncData,
    SalesforceSyncStatus,
)
from src.tracker.integrations.salesforce.mappers.account import AccountIdMap
from src.tracker.integrations.salesforce.mappers.user import (
    UserIdMap,
    get_app_owner_id,
    get_salesforce_owner_id,
)
from src.tracker.integrations.salesforce.types import (
    STAGE_FROM_SALESFORCE,
    STAGE_TO_SALESFORCE,
    SalesforceOpportunity,
    confidence_to_probability,
    probability_to_confidence,
)

DEFAULT_SALESFORCE_STAGE = "Prospecting"

_STAGE_KEYWORDS: list[tuple[tuple[str, ...], tuple[str, ...], OpportunityStage]] = [
    # (all of, any of, stage)
    (("closed", "won"), (), OpportunityStage.closedWon),
    (("closed", "lost"), (), OpportunityStage.closedLost),
    ((), ("negotiat", "contract"), OpportunityStage.contracting),
    ((), ("proposal", "quote"), OpportunityStage.validateSolution),
    ((), ("demo", "analysis"), OpportunityStage.demo),
]

FORECAST_TO_SALESFORCE: dict[ForecastCategory, str] = {
    ForecastCategory.closedWon: "Closed",
    ForecastCategory.closedLost: "Omitted",
    ForecastCategory.commit: "Commit",
    ForecastCategory.bestCase: "Best Case",
    ForecastCategory.pipeline: "Pipeline",
}


# ── Stage & Forecast ────────────────────────────────────────────────────────


def map_salesforce_stage(stage_name: str | None) -> OpportunityStage:
    if not stage_name:
        return OpportunityStage.discovery
    if stage_name in STAGE_FROM_SALESFORCE:
        return STAGE_FROM_SALESFORCE[stage_name]

    lowered = stage_name.lower()
    for required, any_of, stage in _STAGE_KEYWORDS:
        if required and not all(word in lowered for word in required):
            continue
        if any_of and not any(word in lowered for word in any_of):
            continue
        return stage
    return OpportunityStage.discovery


def map_app_stage(stage: OpportunityStage | str | None) -> str:
    try:
        return STAGE_TO_SALESFORCE[OpportunityStage(stage)]
    except (KeyError, ValueError):
        return DEFAULT_SALESFORCE_STAGE


def map_salesforce_forecast_category(category: str | None) -> ForecastCategory | None:
    if not category:
        return None
    lowered = category.lower()
    if "closed" in lowered and "lost" in lowered:
        return ForecastCategory.closedLost
    if "closed" in lowered:
        # Salesforce's plain "Closed" bucket is won business
        return ForecastCategory.closedWon
    if "commit" in lowered:
        return ForecastCategory.commit
    if "best case" in lowered or "upside" in lowered:
        return ForecastCategory.bestCase
    if "pipeline" in lowered or "omitted" in lowered:
        return ForecastCategory.pipeline
    return None


def map_app_forecast_category(category: ForecastCategory | str | None) -> str | None:
    if not category:
        return None
    try:
        return FORECAST_TO_SALESFORCE.get(ForecastCategory(category))
    except ValueError:
        return None


# ── Currency ────────────────────────────────────────────────────────────────


def amount_to_cents(amount: float | Decimal | None) -> int:
    """Convert a currency amount to cents, rounding half away from zero."""
    if amount is None:
        return 0
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def cents_to_amount(cents: int | None) -> float:
    return (cents or 0) / 100


# ── Records ─────────────────────────────────────────────────────────────────


def map_salesforce_to_opportunity(
    sf_opportunity: SalesforceOpportunity,
    user_map: UserIdMap,
    account_map: AccountIdMap,
    synced_at: datetime,
) -> OpportunitySyncData:
    """account_id is None when the Salesforce account is absent or not linked."""
    return OpportunitySyncData(
        name=sf_opportunity.name,
        amount_cents=amount_to_cents(sf_opportunity.amount),
        close_date=sf_opportunity.close_date,
        stage=map_salesforce_stage(sf_opportunity.stage_name),
        confidence_level=probability_to_confidence(sf_opportunity.probability),
        forecast_category=map_salesforce_forecast_category(sf_opportunity.forecast_category_name),
        next_step=sf_opportunity.next_step or None,
        notes=sf_opportunity.description or None,
        owner_id=get_app_owner_id(user_map, sf_opportunity.owner_id),
        account_id=account_map.get_app_id(sf_opportunity.account_id),
        salesforce_id=sf_opportunity.id,
        salesforce_last_modified=sf_opportunity.last_modified_date,
        salesforce_last_sync_at=synced_at,
        salesforce_sync_status=SalesforceSyncStatus.synced,
    )


def map_opportunity_to_salesforce(
    opportunity: OpportunityRecord,
    user_map: UserIdMap,
    account_map: AccountIdMap,
    today: date | None = None,
) -> dict[str, Any]:
    """Build the Opportunity payload. CloseDate is required by Salesforce."""
    close_date = opportunity.close_date or today or datetime.now(timezone.utc).date()
    fields: dict[str, Any] = {
        "Name": opportunity.name,
        "Amount": cents_to_amount(opportunity.amount_cents),
        "CloseDate": close_date.isoformat(),
        "StageName": map_app_stage(opportunity.stage),
        "Probability": confidence_to_probability(opportunity.confidence_level),
    }
    if opportunity.next_step:
        fields["NextStep"] = opportunity.next_step
    if opportunity.notes:
        fields["Description"] = opportunity.notes

    forecast = map_app_forecast_category(opportunity.forecast_category)
    if forecast:
        fields["ForecastCategoryName"] = forecast

    owner_id = get_salesforce_owner_id(user_map, opportunity.owner_id)
    if owner_id:
        fields["OwnerId"] = owner_id
    sf_account_id = account_map.get_salesforce_id(opportunity.account_id)
    if sf_account_id:
        fields["AccountId"] = sf_account_id
    return fields


def is_salesforce_opportunity_newer(
    sf_opportunity: SalesforceOpportunity, local: OpportunityRecord | None
) -> bool:
    if local is None or local.salesforce_last_modified is None:
        return True
    return sf_opportunity.last_modified_date > local.salesforce_last_modified
