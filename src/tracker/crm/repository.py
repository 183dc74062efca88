"""CRM repository -- SQLAlchemy implementation of CRMStore.

Uses the session_factory callable pattern: every method opens its own
session and commits once, so each record write stands alone (a failure on
one record never rolls back another).
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.tracker.crm.models import AccountModel, ContactModel, OpportunityModel, UserModel
from src.tracker.crm.schemas import (
    AccountRecord,
    AccountSyncData,
    ContactRecord,
    ContactSyncData,
    ForecastCategory,
    OpportunityRecord,
    OpportunityStage,
    OpportunitySyncData,
    SalesforceSyncStatus,
    UserRecord,
    UserRole,
)
from src.tracker.crm.store import CRMStore

logger = structlog.get_logger(__name__)


def _uuid_or_none(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_user(model: UserModel) -> UserRecord:
    try:
        role = UserRole(model.role)
    except ValueError:
        role = UserRole.MEMBER
    return UserRecord(
        id=str(model.id),
        organization_id=str(model.organization_id),
        email=model.email,
        name=model.name,
        role=role,
        salesforce_user_id=model.salesforce_user_id,
    )


def _model_to_account(model: AccountModel) -> AccountRecord:
    return AccountRecord(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        website=model.website,
        industry=model.industry,
        owner_id=_str_or_none(model.owner_id),
        salesforce_id=model.salesforce_id,
        salesforce_last_modified=model.salesforce_last_modified,
        salesforce_last_sync_at=model.salesforce_last_sync_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_contact(model: ContactModel) -> ContactRecord:
    return ContactRecord(
        id=str(model.id),
        organization_id=str(model.organization_id),
        first_name=model.first_name,
        last_name=model.last_name,
        title=model.title,
        email=model.email,
        phone=model.phone,
        account_id=_str_or_none(model.account_id),
        salesforce_id=model.salesforce_id,
        salesforce_last_sync_at=model.salesforce_last_sync_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_opportunity(model: OpportunityModel) -> OpportunityRecord:
    return OpportunityRecord(
        id=str(model.id),
        organization_id=str(model.organization_id),
        name=model.name,
        amount_cents=model.amount_cents or 0,
        close_date=model.close_date,
        stage=OpportunityStage(model.stage),
        confidence_level=model.confidence_level or 3,
        forecast_category=(
            ForecastCategory(model.forecast_category) if model.forecast_category else None
        ),
        next_step=model.next_step,
        notes=model.notes,
        owner_id=str(model.owner_id),
        account_id=_str_or_none(model.account_id),
        salesforce_id=model.salesforce_id,
        salesforce_last_modified=model.salesforce_last_modified,
        salesforce_last_sync_at=model.salesforce_last_sync_at,
        salesforce_sync_status=(
            SalesforceSyncStatus(model.salesforce_sync_status)
            if model.salesforce_sync_status
            else None
        ),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _needs_export_clause(model: type[AccountModel] | type[ContactModel] | type[OpportunityModel]):
    return or_(
        model.salesforce_id.is_(None),
        model.salesforce_last_sync_at.is_(None),
        model.updated_at > model.salesforce_last_sync_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class CRMRepository(CRMStore):
    """Async CRMStore backed by PostgreSQL.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Users ───────────────────────────────────────────────────────────────

    async def list_users(self, organization_id: str) -> list[UserRecord]:
        async for session in self._session_factory():
            stmt = (
                select(UserModel)
                .where(UserModel.organization_id == uuid.UUID(organization_id))
                .order_by(UserModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_user(m) for m in result.scalars().all()]
        return []

    async def set_user_salesforce_id(self, user_id: str, salesforce_user_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(UserModel)
                .where(UserModel.id == uuid.UUID(user_id))
                .values(salesforce_user_id=salesforce_user_id)
            )
            await session.commit()

    # ── Accounts ────────────────────────────────────────────────────────────

    async def list_accounts_with_salesforce_id(self, organization_id: str) -> list[AccountRecord]:
        async for session in self._session_factory():
            stmt = select(AccountModel).where(
                AccountModel.organization_id == uuid.UUID(organization_id),
                AccountModel.salesforce_id.is_not(None),
            )
            result = await session.execute(stmt)
            return [_model_to_account(m) for m in result.scalars().all()]
        return []

    async def create_account_from_salesforce(
        self, organization_id: str, data: AccountSyncData
    ) -> AccountRecord:
        async for session in self._session_factory():
            model = AccountModel(
                organization_id=uuid.UUID(organization_id),
                name=data.name,
                website=data.website,
                industry=data.industry,
                owner_id=_uuid_or_none(data.owner_id),
                salesforce_id=data.salesforce_id,
                salesforce_last_modified=data.salesforce_last_modified,
                salesforce_last_sync_at=data.salesforce_last_sync_at,
                updated_at=data.salesforce_last_sync_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.debug(
                "crm_repository.account_created",
                account_id=str(model.id),
                salesforce_id=data.salesforce_id,
            )
            return _model_to_account(model)
        raise RuntimeError("Session factory yielded no session")

    async def update_account_from_salesforce(self, account_id: str, data: AccountSyncData) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(AccountModel)
                .where(AccountModel.id == uuid.UUID(account_id))
                .values(
                    name=data.name,
                    website=data.website,
                    industry=data.industry,
                    owner_id=_uuid_or_none(data.owner_id),
                    salesforce_last_modified=data.salesforce_last_modified,
                    salesforce_last_sync_at=data.salesforce_last_sync_at,
                    updated_at=data.salesforce_last_sync_at,
                )
            )
            await session.commit()

    async def list_accounts_pending_export(self, organization_id: str) -> list[AccountRecord]:
        async for session in self._session_factory():
            stmt = select(AccountModel).where(
                AccountModel.organization_id == uuid.UUID(organization_id),
                _needs_export_clause(AccountModel),
            )
            result = await session.execute(stmt)
            return [_model_to_account(m) for m in result.scalars().all()]
        return []

    async def mark_account_exported(
        self, account_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(AccountModel)
                .where(AccountModel.id == uuid.UUID(account_id))
                .values(
                    salesforce_id=salesforce_id,
                    salesforce_last_sync_at=synced_at,
                    salesforce_last_modified=synced_at,
                    updated_at=synced_at,
                )
            )
            await session.commit()

    # ── Contacts ────────────────────────────────────────────────────────────

    async def list_contacts_with_salesforce_id(self, organization_id: str) -> list[ContactRecord]:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(
                ContactModel.organization_id == uuid.UUID(organization_id),
                ContactModel.salesforce_id.is_not(None),
            )
            result = await session.execute(stmt)
            return [_model_to_contact(m) for m in result.scalars().all()]
        return []

    async def create_contact_from_salesforce(
        self, organization_id: str, data: ContactSyncData
    ) -> ContactRecord:
        async for session in self._session_factory():
            model = ContactModel(
                organization_id=uuid.UUID(organization_id),
                first_name=data.first_name,
                last_name=data.last_name,
                title=data.title,
                email=data.email,
                phone=data.phone,
                account_id=_uuid_or_none(data.account_id),
                salesforce_id=data.salesforce_id,
                salesforce_last_sync_at=data.salesforce_last_sync_at,
                updated_at=data.salesforce_last_sync_at,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)
        raise RuntimeError("Session factory yielded no session")

    async def update_contact_from_salesforce(self, contact_id: str, data: ContactSyncData) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ContactModel)
                .where(ContactModel.id == uuid.UUID(contact_id))
                .values(
                    first_name=data.first_name,
                    last_name=data.last_name,
                    title=data.title,
                    email=data.email,
                    phone=data.phone,
                    account_id=_uuid_or_none(data.account_id),
                    salesforce_last_sync_at=data.salesforce_last_sync_at,
                    updated_at=data.salesforce_last_sync_at,
                )
            )
            await session.commit()

    async def list_contacts_pending_export(self, organization_id: str) -> list[ContactRecord]:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(
                ContactModel.organization_id == uuid.UUID(organization_id),
                _needs_export_clause(ContactModel),
            )
            result = await session.execute(stmt)
            return [_model_to_contact(m) for m in result.scalars().all()]
        return []

    async def mark_contact_exported(
        self, contact_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ContactModel)
                .where(ContactModel.id == uuid.UUID(contact_id))
                .values(
                    salesforce_id=salesforce_id,
                    salesforce_last_sync_at=synced_at,
                    updated_at=synced_at,
                )
            )
            await session.commit()

    # ── Opportunities ───────────────────────────────────────────────────────

    async def list_opportunities_with_salesforce_id(
        self, organization_id: str
    ) -> list[OpportunityRecord]:
        async for session in self._session_factory():
            stmt = select(OpportunityModel).where(
                OpportunityModel.organization_id == uuid.UUID(organization_id),
                OpportunityModel.salesforce_id.is_not(None),
            )
            result = await session.execute(stmt)
            return [_model_to_opportunity(m) for m in result.scalars().all()]
        return []

    async def create_opportunity_from_salesforce(
        self, organization_id: str, data: OpportunitySyncData
    ) -> OpportunityRecord:
        async for session in self._session_factory():
            model = OpportunityModel(
                organization_id=uuid.UUID(organization_id),
                **self._opportunity_values(data),
                salesforce_id=data.salesforce_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_opportunity(model)
        raise RuntimeError("Session factory yielded no session")

    async def update_opportunity_from_salesforce(
        self, opportunity_id: str, data: OpportunitySyncData
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(OpportunityModel)
                .where(OpportunityModel.id == uuid.UUID(opportunity_id))
                .values(**self._opportunity_values(data))
            )
            await session.commit()

    async def list_opportunities_pending_export(
        self, organization_id: str
    ) -> list[OpportunityRecord]:
        async for session in self._session_factory():
            stmt = select(OpportunityModel).where(
                OpportunityModel.organization_id == uuid.UUID(organization_id),
                or_(
                    _needs_export_clause(OpportunityModel),
                    OpportunityModel.salesforce_sync_status
                    == SalesforceSyncStatus.pending_push.value,
                ),
            )
            result = await session.execute(stmt)
            return [_model_to_opportunity(m) for m in result.scalars().all()]
        return []

    async def mark_opportunity_exported(
        self, opportunity_id: str, salesforce_id: str, synced_at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(OpportunityModel)
                .where(OpportunityModel.id == uuid.UUID(opportunity_id))
                .values(
                    salesforce_id=salesforce_id,
                    salesforce_last_sync_at=synced_at,
                    salesforce_last_modified=synced_at,
                    salesforce_sync_status=SalesforceSyncStatus.synced.value,
                    updated_at=synced_at,
                )
            )
            await session.commit()

    async def mark_opportunity_pending_push(self, opportunity_id: str) -> None:
        # updated_at is left untouched so the flag alone drives the retry
        async for session in self._session_factory():
            await session.execute(
                update(OpportunityModel)
                .where(OpportunityModel.id == uuid.UUID(opportunity_id))
                .values(
                    salesforce_sync_status=SalesforceSyncStatus.pending_push.value,
                    updated_at=OpportunityModel.updated_at,
                )
            )
            await session.commit()

    @staticmethod
    def _opportunity_values(data: OpportunitySyncData) -> dict:
        return {
            "name": data.name,
            "amount_cents": data.amount_cents,
            "close_date": data.close_date,
            "stage": data.stage.value,
            "confidence_level": data.confidence_level,
            "forecast_category": (
                data.forecast_category.value if data.forecast_category else None
            ),
            "next_step": data.next_step,
            "notes": data.notes,
            "owner_id": uuid.UUID(data.owner_id),
            "account_id": _uuid_or_none(data.account_id),
            "salesforce_last_modified": data.salesforce_last_modified,
            "salesforce_last_sync_at": data.salesforce_last_sync_at,
            "salesforce_sync_status": data.salesforce_sync_status.value,
            "updated_at": data.salesforce_last_sync_at,
        }
