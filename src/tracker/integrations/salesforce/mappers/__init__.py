"""Field mappers and ID resolvers between Salesforce and local records."""

from src.tracker.integrations.salesforce.mappers.account import (
    AccountIdMap,
    is_salesforce_account_newer,
    map_account_to_salesforce,
    map_salesforce_to_account,
)
from src.tracker.integrations.salesforce.mappers.contact import (
    is_salesforce_contact_newer,
    map_contact_to_salesforce,
    map_salesforce_to_contact,
)
from src.tracker.integrations.salesforce.mappers.opportunity import (
    amount_to_cents,
    cents_to_amount,
    is_salesforce_opportunity_newer,
    map_app_forecast_category,
    map_app_stage,
    map_opportunity_to_salesforce,
    map_salesforce_forecast_category,
    map_salesforce_stage,
    map_salesforce_to_opportunity,
)
from src.tracker.integrations.salesforce.mappers.user import (
    UserIdMap,
    build_user_id_map,
    get_app_owner_id,
    get_salesforce_owner_id,
    pick_default_owner,
)

__all__ = [
    "AccountIdMap",
    "UserIdMap",
    "amount_to_cents",
    "build_user_id_map",
    "cents_to_amount",
    "get_app_owner_id",
    "get_salesforce_owner_id",
    "is_salesforce_account_newer",
    "is_salesforce_contact_newer",
    "is_salesforce_opportunity_newer",
    "map_account_to_salesforce",
    "map_app_forecast_category",
    "map_app_stage",
    "map_contact_to_salesforce",
    "map_opportunity_to_salesforce",
    "map_salesforce_forecast_category",
    "map_salesforce_stage",
    "map_salesforce_to_account",
    "map_salesforce_to_contact",
    "map_salesforce_to_opportunity",
    "pick_default_owner",
]
