"""Salesforce import and export engines.

Import pulls Salesforce records into the local store, entity by entity, in
dependency order (accounts, contacts, opportunities), applying newer-wins:
an existing local record is only overwritten when Salesforce's
LastModifiedDate is later than what was recorded at the previous sync.

Export pushes local records that are new or modified since their last sync
(and opportunities flagged pending_push) in the same order, resolving owner
and account references through the ID maps built for the run.

Per-record failures are caught in the record loops, logged, and appended to
that step's SyncStats. Configuration and authentication errors propagate out
of the run.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.tracker.config import get_settings
from src.tracker.core.monitoring import record_sync_records, track_sync_run
from src.tracker.crm.store import CRMStore
from src.tracker.integrations.salesforce.errors import (
    SalesforceAuthError,
    SalesforceConfigError,
    SalesforceError,
)
from src.tracker.integrations.salesforce.mappers import (
    AccountIdMap,
    UserIdMap,
    build_user_id_map,
    is_salesforce_account_newer,
    is_salesforce_contact_newer,
    is_salesforce_opportunity_newer,
    map_account_to_salesforce,
    map_contact_to_salesforce,
    map_opportunity_to_salesforce,
    map_salesforce_to_account,
    map_salesforce_to_contact,
    map_salesforce_to_opportunity,
)
from src.tracker.integrations.salesforce.types import QueryResult

logger = structlog.get_logger(__name__)

# Never swallowed by record loops or step handlers
FATAL_ERRORS = (SalesforceAuthError, SalesforceConfigError)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Results ─────────────────────────────────────────────────────────────────


class SyncStats(BaseModel):
    """Counters for one entity type in one direction."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + len(self.errors)


class _DirectionResult(BaseModel):
    success: bool = True
    accounts: SyncStats = Field(default_factory=SyncStats)
    contacts: SyncStats = Field(default_factory=SyncStats)
    opportunities: SyncStats = Field(default_factory=SyncStats)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0

    def all_errors(self) -> list[str]:
        """Setup errors first, then per-entity errors in dependency order."""
        return [
            *self.errors,
            *self.accounts.errors,
            *self.contacts.errors,
            *self.opportunities.errors,
        ]


class ImportResult(_DirectionResult):
    pass


class ExportResult(_DirectionResult):
    pass


class BidirectionalSyncResult(BaseModel):
    success: bool
    import_result: ImportResult
    export_result: ExportResult
    duration_ms: int = 0


class ImportOptions(BaseModel):
    """full_sync ignores modified_since. Limits default to the configured caps."""

    full_sync: bool = False
    modified_since: datetime | None = None
    account_limit: int | None = None
    contact_limit: int | None = None
    opportunity_limit: int | None = None

    def effective_modified_since(self) -> datetime | None:
        return None if self.full_sync else self.modified_since

    def with_default_limits(self) -> ImportOptions:
        settings = get_settings()
        return self.model_copy(
            update={
                "account_limit": self.account_limit or settings.SALESFORCE_ACCOUNT_IMPORT_LIMIT,
                "contact_limit": self.contact_limit or settings.SALESFORCE_CONTACT_IMPORT_LIMIT,
                "opportunity_limit": (
                    self.opportunity_limit or settings.SALESFORCE_OPPORTUNITY_IMPORT_LIMIT
                ),
            }
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# ── Import ──────────────────────────────────────────────────────────────────


class SalesforceImporter:
    """Pulls Salesforce records into the local store for one organization.

    Args:
        client: SalesforceClient (or any object with the same query methods).
        store: Local CRM store.
        organization_id: Organization whose records are synced.
        options: Query bounds; defaults to an incremental import with no cursor.
    """

    def __init__(
        self,
        client: Any,
        store: CRMStore,
        organization_id: str,
        options: ImportOptions | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._organization_id = organization_id
        self._options = (options or ImportOptions()).with_default_limits()

    async def _query(self, entity: str, stats: SyncStats, query) -> QueryResult | None:
        """Run a remote query; a non-fatal failure becomes the step's error."""
        try:
            return await query()
        except FATAL_ERRORS:
            raise
        except SalesforceError as exc:
            stats.errors.append(f"Failed to query {entity}: {exc}")
            logger.error(
                "salesforce_sync.query_failed",
                organization_id=self._organization_id,
                entity=entity,
                error=str(exc),
            )
            return None

    def _record_invalid(self, label: str, result: QueryResult, stats: SyncStats) -> None:
        """Count rows the client rejected during validation as record errors."""
        for invalid in result.invalid:
            stats.errors.append(f"{label} {invalid.salesforce_id}: invalid record: {invalid.error}")
            logger.error(
                "salesforce_sync.invalid_record",
                organization_id=self._organization_id,
                entity=label.lower(),
                salesforce_id=invalid.salesforce_id,
                error=invalid.error,
            )

    async def import_accounts(self, user_map: UserIdMap, account_map: AccountIdMap) -> SyncStats:
        stats = SyncStats()
        sf_accounts = await self._query(
            "accounts",
            stats,
            lambda: self._client.query_accounts(
                modified_since=self._options.effective_modified_since(),
                limit=self._options.account_limit,
            ),
        )
        if sf_accounts is None:
            return stats
        self._record_invalid("Account", sf_accounts, stats)

        existing = {
            a.salesforce_id: a
            for a in await self._store.list_accounts_with_salesforce_id(self._organization_id)
        }

        for sf_account in sf_accounts.records:
            try:
                local = existing.get(sf_account.id)
                if local is not None and not is_salesforce_account_newer(sf_account, local):
                    stats.skipped += 1
                    continue

                data = map_salesforce_to_account(sf_account, user_map, _utcnow())
                if local is None:
                    created = await self._store.create_account_from_salesforce(
                        self._organization_id, data
                    )
                    account_map.add(created.id, sf_account.id)
                    stats.created += 1
                else:
                    await self._store.update_account_from_salesforce(local.id, data)
                    account_map.add(local.id, sf_account.id)
                    stats.updated += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                stats.errors.append(f"Account {sf_account.id}: {exc}")
                logger.error(
                    "salesforce_sync.account_import_error",
                    organization_id=self._organization_id,
                    salesforce_id=sf_account.id,
                    error=str(exc),
                )

        return stats

    async def import_contacts(self, account_map: AccountIdMap) -> SyncStats:
        stats = SyncStats()
        sf_contacts = await self._query(
            "contacts",
            stats,
            lambda: self._client.query_contacts(
                modified_since=self._options.effective_modified_since(),
                limit=self._options.contact_limit,
            ),
        )
        if sf_contacts is None:
            return stats
        self._record_invalid("Contact", sf_contacts, stats)

        existing = {
            c.salesforce_id: c
            for c in await self._store.list_contacts_with_salesforce_id(self._organization_id)
        }

        for sf_contact in sf_contacts.records:
            try:
                data = map_salesforce_to_contact(sf_contact, account_map, _utcnow())
                local = existing.get(sf_contact.id)
                # Creating needs a linked account; an unresolved AccountId always skips
                if data.account_id is None and (sf_contact.account_id or local is None):
                    stats.skipped += 1
                    logger.debug(
                        "salesforce_sync.contact_skipped_no_account",
                        organization_id=self._organization_id,
                        salesforce_id=sf_contact.id,
                        salesforce_account_id=sf_contact.account_id,
                    )
                    continue

                if local is None:
                    await self._store.create_contact_from_salesforce(self._organization_id, data)
                    stats.created += 1
                elif is_salesforce_contact_newer(sf_contact, local):
                    await self._store.update_contact_from_salesforce(local.id, data)
                    stats.updated += 1
                else:
                    stats.skipped += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                stats.errors.append(f"Contact {sf_contact.id}: {exc}")
                logger.error(
                    "salesforce_sync.contact_import_error",
                    organization_id=self._organization_id,
                    salesforce_id=sf_contact.id,
                    error=str(exc),
                )

        return stats

    async def import_opportunities(
        self, user_map: UserIdMap, account_map: AccountIdMap
    ) -> SyncStats:
        stats = SyncStats()
        sf_opportunities = await self._query(
            "opportunities",
            stats,
            lambda: self._client.query_opportunities(
                modified_since=self._options.effective_modified_since(),
                limit=self._options.opportunity_limit,
            ),
        )
        if sf_opportunities is None:
            return stats
        self._record_invalid("Opportunity", sf_opportunities, stats)

        existing = {
            o.salesforce_id: o
            for o in await self._store.list_opportunities_with_salesforce_id(
                self._organization_id
            )
        }

        for sf_opportunity in sf_opportunities.records:
            try:
                data = map_salesforce_to_opportunity(
                    sf_opportunity, user_map, account_map, _utcnow()
                )
                if sf_opportunity.account_id and data.account_id is None:
                    stats.skipped += 1
                    logger.debug(
                        "salesforce_sync.opportunity_skipped_no_account",
                        organization_id=self._organization_id,
                        salesforce_id=sf_opportunity.id,
                        salesforce_account_id=sf_opportunity.account_id,
                    )
                    continue

                local = existing.get(sf_opportunity.id)
                if local is None:
                    await self._store.create_opportunity_from_salesforce(
                        self._organization_id, data
                    )
                    stats.created += 1
                elif is_salesforce_opportunity_newer(sf_opportunity, local):
                    await self._store.update_opportunity_from_salesforce(local.id, data)
                    stats.updated += 1
                else:
                    stats.skipped += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                stats.errors.append(f"Opportunity {sf_opportunity.id}: {exc}")
                logger.error(
                    "salesforce_sync.opportunity_import_error",
                    organization_id=self._organization_id,
                    salesforce_id=sf_opportunity.id,
                    error=str(exc),
                )

        return stats

    async def run(self) -> ImportResult:
        """Import accounts, then contacts, then opportunities."""
        started = time.perf_counter()
        result = ImportResult()

        async with track_sync_run("import"):
            try:
                user_map = await build_user_id_map(
                    self._client, self._store, self._organization_id
                )
            except ValueError as exc:
                result.errors.append(str(exc))
                result.success = False
                result.duration_ms = _elapsed_ms(started)
                logger.error(
                    "salesforce_sync.import_setup_failed",
                    organization_id=self._organization_id,
                    error=str(exc),
                )
                return result

            account_map = AccountIdMap.from_accounts(
                await self._store.list_accounts_with_salesforce_id(self._organization_id)
            )

            result.accounts = await self.import_accounts(user_map, account_map)
            result.contacts = await self.import_contacts(account_map)
            result.opportunities = await self.import_opportunities(user_map, account_map)

        for entity in ("accounts", "contacts", "opportunities"):
            record_sync_records(entity, "import", getattr(result, entity))

        result.success = not result.all_errors()
        result.duration_ms = _elapsed_ms(started)
        logger.info(
            "salesforce_sync.import_complete",
            organization_id=self._organization_id,
            success=result.success,
            accounts=result.accounts.model_dump(exclude={"errors"}),
            contacts=result.contacts.model_dump(exclude={"errors"}),
            opportunities=result.opportunities.model_dump(exclude={"errors"}),
            errors=len(result.all_errors()),
            duration_ms=result.duration_ms,
        )
        return result


# ── Export ──────────────────────────────────────────────────────────────────


class SalesforceExporter:
    """Pushes new and locally modified records to Salesforce for one organization."""

    def __init__(self, client: Any, store: CRMStore, organization_id: str) -> None:
        self._client = client
        self._store = store
        self._organization_id = organization_id

    async def export_accounts(self, user_map: UserIdMap, account_map: AccountIdMap) -> SyncStats:
        stats = SyncStats()
        for account in await self._store.list_accounts_pending_export(self._organization_id):
            try:
                fields = map_account_to_salesforce(account, user_map)
                if account.salesforce_id:
                    await self._client.update_account(account.salesforce_id, fields)
                    salesforce_id = account.salesforce_id
                else:
                    salesforce_id = await self._client.create_account(fields)
                await self._store.mark_account_exported(account.id, salesforce_id, _utcnow())
                account_map.add(account.id, salesforce_id)
                if account.salesforce_id:
                    stats.updated += 1
                else:
                    stats.created += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                stats.errors.append(f"Account {account.name}: {exc}")
                logger.error(
                    "salesforce_sync.account_export_error",
                    organization_id=self._organization_id,
                    account_id=account.id,
                    error=str(exc),
                )
        return stats

    async def export_contacts(self, account_map: AccountIdMap) -> SyncStats:
        stats = SyncStats()
        for contact in await self._store.list_contacts_pending_export(self._organization_id):
            if contact.account_id and account_map.get_salesforce_id(contact.account_id) is None:
                stats.skipped += 1
                continue
            try:
                fields = map_contact_to_salesforce(contact, account_map)
                if contact.salesforce_id:
                    await self._client.update_contact(contact.salesforce_id, fields)
                    salesforce_id = contact.salesforce_id
                else:
                    salesforce_id = await self._client.create_contact(fields)
                await self._store.mark_contact_exported(contact.id, salesforce_id, _utcnow())
                if contact.salesforce_id:
                    stats.updated += 1
                else:
                    stats.created += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                name = " ".join(filter(None, [contact.first_name, contact.last_name]))
                stats.errors.append(f"Contact {name}: {exc}")
                logger.error(
                    "salesforce_sync.contact_export_error",
                    organization_id=self._organization_id,
                    contact_id=contact.id,
                    error=str(exc),
                )
        return stats

    async def export_opportunities(
        self, user_map: UserIdMap, account_map: AccountIdMap
    ) -> SyncStats:
        stats = SyncStats()
        pending = await self._store.list_opportunities_pending_export(self._organization_id)
        for opportunity in pending:
            if (
                opportunity.account_id
                and account_map.get_salesforce_id(opportunity.account_id) is None
            ):
                stats.skipped += 1
                continue
            try:
                fields = map_opportunity_to_salesforce(opportunity, user_map, account_map)
                if opportunity.salesforce_id:
                    await self._client.update_opportunity(opportunity.salesforce_id, fields)
                    salesforce_id = opportunity.salesforce_id
                else:
                    salesforce_id = await self._client.create_opportunity(fields)
                await self._store.mark_opportunity_exported(
                    opportunity.id, salesforce_id, _utcnow()
                )
                if opportunity.salesforce_id:
                    stats.updated += 1
                else:
                    stats.created += 1
            except FATAL_ERRORS:
                raise
            except Exception as exc:
                stats.errors.append(f"Opportunity {opportunity.name}: {exc}")
                logger.error(
                    "salesforce_sync.opportunity_export_error",
                    organization_id=self._organization_id,
                    opportunity_id=opportunity.id,
                    error=str(exc),
                )
                await self._flag_pending_push(opportunity.id)
        return stats

    async def _flag_pending_push(self, opportunity_id: str) -> None:
        try:
            await self._store.mark_opportunity_pending_push(opportunity_id)
        except Exception as exc:
            logger.error(
                "salesforce_sync.pending_push_flag_failed",
                organization_id=self._organization_id,
                opportunity_id=opportunity_id,
                error=str(exc),
            )

    async def run(self) -> ExportResult:
        """Export accounts, then contacts, then opportunities."""
        started = time.perf_counter()
        result = ExportResult()

        async with track_sync_run("export"):
            try:
                user_map = await build_user_id_map(
                    self._client, self._store, self._organization_id
                )
            except ValueError as exc:
                result.errors.append(str(exc))
                result.success = False
                result.duration_ms = _elapsed_ms(started)
                logger.error(
                    "salesforce_sync.export_setup_failed",
                    organization_id=self._organization_id,
                    error=str(exc),
                )
                return result

            account_map = AccountIdMap.from_accounts(
                await self._store.list_accounts_with_salesforce_id(self._organization_id)
            )

            result.accounts = await self.export_accounts(user_map, account_map)
            result.contacts = await self.export_contacts(account_map)
            result.opportunities = await self.export_opportunities(user_map, account_map)

        for entity in ("accounts", "contacts", "opportunities"):
            record_sync_records(entity, "export", getattr(result, entity))

        result.success = not result.all_errors()
        result.duration_ms = _elapsed_ms(started)
        logger.info(
            "salesforce_sync.export_complete",
            organization_id=self._organization_id,
            success=result.success,
            accounts=result.accounts.model_dump(exclude={"errors"}),
            contacts=result.contacts.model_dump(exclude={"errors"}),
            opportunities=result.opportunities.model_dump(exclude={"errors"}),
            errors=len(result.all_errors()),
            duration_ms=result.duration_ms,
        )
        return result


# ── Entry Points ────────────────────────────────────────────────────────────


async def perform_full_import(
    client: Any,
    store: CRMStore,
    organization_id: str,
    options: ImportOptions | None = None,
) -> ImportResult:
    return await SalesforceImporter(client, store, organization_id, options).run()


async def perform_full_export(client: Any, store: CRMStore, organization_id: str) -> ExportResult:
    return await SalesforceExporter(client, store, organization_id).run()


async def perform_bidirectional_sync(
    client: Any,
    store: CRMStore,
    organization_id: str,
    options: ImportOptions | None = None,
) -> BidirectionalSyncResult:
    """Import fully, then export fully."""
    started = time.perf_counter()
    import_result = await perform_full_import(client, store, organization_id, options)
    export_result = await perform_full_export(client, store, organization_id)
    return BidirectionalSyncResult(
        success=import_result.success and export_result.success,
        import_result=import_result,
        export_result=export_result,
        duration_ms=_elapsed_ms(started),
    )
