"""User ID resolution between Salesforce users and organization members.

Users are joined on case-insensitive email. Records whose Salesforce owner
has no local counterpart fall back to the organization's default owner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from src.tracker.crm.schemas import UserRecord, UserRole
from src.tracker.crm.store import CRMStore

logger = structlog.get_logger(__name__)


@dataclass
class UserIdMap:
    sf_to_app: dict[str, str] = field(default_factory=dict)
    app_to_sf: dict[str, str] = field(default_factory=dict)
    default_owner_id: str = ""


def pick_default_owner(users: list[UserRecord]) -> UserRecord:
    """First ADMIN, else first MANAGER, else the first user."""
    if not users:
        raise ValueError("Organization has no users to own imported records")
    for role in (UserRole.ADMIN, UserRole.MANAGER):
        for user in users:
            if user.role == role:
                return user
    return users[0]


async def build_user_id_map(client: Any, store: CRMStore, organization_id: str) -> UserIdMap:
    """Match Salesforce users to local users and persist changed links.

    Raises:
        ValueError: The organization has no users.
    """
    app_users = await store.list_users(organization_id)
    default_owner = pick_default_owner(app_users)

    sf_users = await client.query_users()
    sf_by_email = {u.email.strip().lower(): u for u in sf_users if u.email}

    user_map = UserIdMap(default_owner_id=default_owner.id)
    for app_user in app_users:
        sf_user = sf_by_email.get(app_user.email.strip().lower())
        if sf_user is None:
            continue
        user_map.sf_to_app[sf_user.id] = app_user.id
        user_map.app_to_sf[app_user.id] = sf_user.id
        if app_user.salesforce_user_id != sf_user.id:
            await store.set_user_salesforce_id(app_user.id, sf_user.id)

    logger.info(
        "salesforce_mapper.user_map_built",
        organization_id=organization_id,
        matched=len(user_map.app_to_sf),
        local_users=len(app_users),
        salesforce_users=len(sf_users),
    )
    return user_map


def get_app_owner_id(user_map: UserIdMap, salesforce_owner_id: str | None) -> str:
    if salesforce_owner_id and salesforce_owner_id in user_map.sf_to_app:
        return user_map.sf_to_app[salesforce_owner_id]
    return user_map.default_owner_id


def get_salesforce_owner_id(user_map: UserIdMap, app_user_id: str | None) -> str | None:
    if not app_user_id:
        return None
    return user_map.app_to_sf.get(app_user_id)
