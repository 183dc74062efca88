"""Salesforce integration store -- per-organization OAuth credentials and sync state.

Tokens are encrypted with AES-GCM before they reach the database and are only
decrypted by get_credentials(). Uses the session_factory callable pattern of
the CRM repository.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.tracker.core.crypto import TokenEncryptionError, decrypt_token, encrypt_token, load_key
from src.tracker.integrations.salesforce.errors import SalesforceConfigError
from src.tracker.integrations.salesforce.models import SalesforceIntegrationModel
from src.tracker.integrations.salesforce.types import (
    SalesforceTokenResponse,
    SyncDirection,
    SyncRunStatus,
)

logger = structlog.get_logger(__name__)

DEFAULT_SYNC_INTERVAL_MINUTES = 60


class SalesforceIntegration(BaseModel):
    """Integration settings and last-run state. Never carries tokens."""

    id: str
    organization_id: str
    instance_url: str
    is_enabled: bool = True
    sync_direction: SyncDirection = SyncDirection.bidirectional
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    last_sync_at: datetime | None = None
    last_sync_status: SyncRunStatus | None = None
    last_sync_error: str | None = None
    sync_cursor: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SalesforceCredentials(BaseModel):
    """Decrypted tokens, only handed to the REST client."""

    organization_id: str
    access_token: str
    refresh_token: str
    instance_url: str


def _model_to_integration(model: SalesforceIntegrationModel) -> SalesforceIntegration:
    return SalesforceIntegration(
        id=str(model.id),
        organization_id=str(model.organization_id),
        instance_url=model.instance_url,
        is_enabled=model.is_enabled,
        sync_direction=SyncDirection(model.sync_direction),
        sync_interval_minutes=model.sync_interval_minutes,
        last_sync_at=model.last_sync_at,
        last_sync_status=SyncRunStatus(model.last_sync_status) if model.last_sync_status else None,
        last_sync_error=model.last_sync_error,
        sync_cursor=model.sync_cursor,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class SalesforceIntegrationStore:
    """Async store for salesforce_integrations rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        encryption_key: Raw AES key; read from TOKEN_ENCRYPTION_KEY when omitted.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        encryption_key: bytes | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._key = encryption_key

    def _encryption_key(self) -> bytes:
        if self._key is None:
            try:
                self._key = load_key()
            except TokenEncryptionError as exc:
                raise SalesforceConfigError(str(exc)) from exc
        return self._key

    def _encrypt(self, value: str) -> str:
        return encrypt_token(value, self._encryption_key())

    def _decrypt(self, value: str) -> str:
        try:
            return decrypt_token(value, self._encryption_key())
        except TokenEncryptionError as exc:
            raise SalesforceConfigError(f"Stored Salesforce token unreadable: {exc}") from exc

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, organization_id: str) -> SalesforceIntegration | None:
        async for session in self._session_factory():
            model = await self._get_model(session, organization_id)
            return _model_to_integration(model) if model else None
        return None

    async def get_credentials(self, organization_id: str) -> SalesforceCredentials | None:
        async for session in self._session_factory():
            model = await self._get_model(session, organization_id)
            if model is None:
                return None
            return SalesforceCredentials(
                organization_id=organization_id,
                access_token=self._decrypt(model.access_token),
                refresh_token=self._decrypt(model.refresh_token),
                instance_url=model.instance_url,
            )
        return None

    async def list_enabled(self) -> list[SalesforceIntegration]:
        async for session in self._session_factory():
            stmt = (
                select(SalesforceIntegrationModel)
                .where(SalesforceIntegrationModel.is_enabled.is_(True))
                .order_by(SalesforceIntegrationModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_integration(m) for m in result.scalars().all()]
        return []

    # ── Connection ──────────────────────────────────────────────────────────

    async def save_connection(
        self, organization_id: str, tokens: SalesforceTokenResponse
    ) -> SalesforceIntegration:
        """Create or replace the connection after a completed OAuth grant."""
        if not tokens.refresh_token:
            raise ValueError("A new connection requires a refresh token")
        access_token = self._encrypt(tokens.access_token)
        refresh_token = self._encrypt(tokens.refresh_token)

        async for session in self._session_factory():
            model = await self._get_model(session, organization_id)
            if model is None:
                model = SalesforceIntegrationModel(
                    organization_id=uuid.UUID(organization_id),
                    access_token=access_token,
                    refresh_token=refresh_token,
                    instance_url=tokens.instance_url,
                    is_enabled=True,
                    sync_direction=SyncDirection.bidirectional.value,
                    sync_interval_minutes=DEFAULT_SYNC_INTERVAL_MINUTES,
                )
                session.add(model)
            else:
                model.access_token = access_token
                model.refresh_token = refresh_token
                model.instance_url = tokens.instance_url
                model.is_enabled = True
                model.last_sync_error = None
            await session.commit()
            await session.refresh(model)
            logger.info(
                "salesforce_store.connection_saved",
                organization_id=organization_id,
                instance_url=tokens.instance_url,
            )
            return _model_to_integration(model)
        raise RuntimeError("Session factory yielded no session")

    async def save_access_token(
        self, organization_id: str, access_token: str, instance_url: str | None = None
    ) -> None:
        """Persist a refreshed access token (and instance URL if it moved)."""
        values: dict = {"access_token": self._encrypt(access_token)}
        if instance_url:
            values["instance_url"] = instance_url
        async for session in self._session_factory():
            await session.execute(
                update(SalesforceIntegrationModel)
                .where(SalesforceIntegrationModel.organization_id == uuid.UUID(organization_id))
                .values(**values)
            )
            await session.commit()

    async def update_settings(
        self,
        organization_id: str,
        *,
        is_enabled: bool | None = None,
        sync_direction: SyncDirection | None = None,
        sync_interval_minutes: int | None = None,
    ) -> SalesforceIntegration | None:
        async for session in self._session_factory():
            model = await self._get_model(session, organization_id)
            if model is None:
                return None
            if is_enabled is not None:
                model.is_enabled = is_enabled
            if sync_direction is not None:
                model.sync_direction = SyncDirection(sync_direction).value
            if sync_interval_minutes is not None:
                model.sync_interval_minutes = sync_interval_minutes
            await session.commit()
            await session.refresh(model)
            return _model_to_integration(model)
        return None

    async def delete(self, organization_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(SalesforceIntegrationModel).where(
                    SalesforceIntegrationModel.organization_id == uuid.UUID(organization_id)
                )
            )
            await session.commit()
            return result.rowcount > 0
        return False

    # ── Sync Run State ──────────────────────────────────────────────────────

    async def mark_sync_started(self, organization_id: str) -> bool:
        """Flag a run as in progress. Returns False if one already is."""
        async for session in self._session_factory():
            result = await session.execute(
                update(SalesforceIntegrationModel)
                .where(
                    SalesforceIntegrationModel.organization_id == uuid.UUID(organization_id),
                    or_(
                        SalesforceIntegrationModel.last_sync_status.is_(None),
                        SalesforceIntegrationModel.last_sync_status
                        != SyncRunStatus.in_progress.value,
                    ),
                )
                .values(last_sync_status=SyncRunStatus.in_progress.value, last_sync_error=None)
            )
            await session.commit()
            return result.rowcount > 0
        return False

    async def record_sync_result(
        self,
        organization_id: str,
        status: SyncRunStatus,
        *,
        error: str | None = None,
        cursor: datetime | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        """Store the outcome of a run. The cursor only moves when one is given."""
        values: dict = {
            "last_sync_status": SyncRunStatus(status).value,
            "last_sync_error": error,
            "last_sync_at": finished_at or datetime.now(timezone.utc),
        }
        if cursor is not None:
            values["sync_cursor"] = cursor
        async for session in self._session_factory():
            await session.execute(
                update(SalesforceIntegrationModel)
                .where(SalesforceIntegrationModel.organization_id == uuid.UUID(organization_id))
                .values(**values)
            )
            await session.commit()

    # ── Internal ────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_model(
        session: AsyncSession, organization_id: str
    ) -> SalesforceIntegrationModel | None:
        stmt = select(SalesforceIntegrationModel).where(
            SalesforceIntegrationModel.organization_id == uuid.UUID(organization_id)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
