"""Sync run orchestration for one organization, and the due-run sweep.

run_salesforce_sync() wraps the import/export engines with the integration's
bookkeeping: it flags the run in progress, opens a client, runs the
configured direction(s), and stores the outcome (status, first errors, and
the incremental cursor). Runs for one organization are serialized through
the in-progress flag; run_due_syncs() processes organizations one at a time.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.tracker.core.monitoring import salesforce_sync_runs_total
from src.tracker.crm.store import CRMStore
from src.tracker.integrations.salesforce.client import create_salesforce_client
from src.tracker.integrations.salesforce.errors import (
    SalesforceError,
    SalesforceNotConnectedError,
)
from src.tracker.integrations.salesforce.store import SalesforceIntegration
from src.tracker.integrations.salesforce.sync import (
    ExportResult,
    ImportOptions,
    ImportResult,
    perform_full_export,
    perform_full_import,
)
from src.tracker.integrations.salesforce.types import SyncDirection, SyncRunStatus

logger = structlog.get_logger(__name__)

MAX_REPORTED_ERRORS = 3


class SyncInProgressError(SalesforceError):
    """A sync run is already in progress for the organization."""


class SyncRunSummary(BaseModel):
    organization_id: str
    direction: SyncDirection
    full_sync: bool = False
    status: SyncRunStatus
    import_result: ImportResult | None = None
    export_result: ExportResult | None = None
    errors: list[str] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_ms: int = 0


def summarize_errors(errors: list[str], limit: int = MAX_REPORTED_ERRORS) -> str | None:
    """Join the first few errors for storage on the integration."""
    return "; ".join(errors[:limit]) or None


def _run_status(results: list[ImportResult | ExportResult]) -> SyncRunStatus:
    errors = [e for r in results for e in r.all_errors()]
    if not errors:
        return SyncRunStatus.success
    if any(r.errors for r in results):
        return SyncRunStatus.failed
    completed = sum(
        stats.created + stats.updated + stats.skipped
        for r in results
        for stats in (r.accounts, r.contacts, r.opportunities)
    )
    return SyncRunStatus.partial if completed else SyncRunStatus.failed


async def run_salesforce_sync(
    organization_id: str,
    integrations: Any,
    crm_store: CRMStore,
    *,
    full_sync: bool = False,
    direction: SyncDirection | None = None,
    already_started: bool = False,
    client_factory=create_salesforce_client,
) -> SyncRunSummary:
    """Run one sync for an organization and record its outcome.

    Args:
        organization_id: Organization to sync.
        integrations: SalesforceIntegrationStore (or compatible).
        crm_store: Local CRM store.
        full_sync: Ignore the stored cursor and query everything (up to the caps).
        direction: Overrides the integration's configured direction.
        already_started: The caller has already flagged the run in progress.
        client_factory: Async context manager factory yielding a client.

    Raises:
        SalesforceNotConnectedError: No enabled integration.
        SyncInProgressError: Another run holds the in-progress flag.
        SalesforceAuthError / SalesforceConfigError: Recorded as failed, then re-raised.
    """
    integration = await integrations.get(organization_id)
    if integration is None or not integration.is_enabled:
        raise SalesforceNotConnectedError(
            f"Salesforce integration not configured or disabled for {organization_id}"
        )
    if not already_started and not await integrations.mark_sync_started(organization_id):
        raise SyncInProgressError(f"Salesforce sync already in progress for {organization_id}")

    direction = SyncDirection(direction or integration.sync_direction)
    started_at = datetime.now(timezone.utc)
    started = time.perf_counter()
    options = ImportOptions(full_sync=full_sync, modified_since=integration.sync_cursor)

    logger.info(
        "salesforce_jobs.sync_started",
        organization_id=organization_id,
        direction=direction.value,
        full_sync=full_sync,
        modified_since=str(options.effective_modified_since()),
    )

    import_result: ImportResult | None = None
    export_result: ExportResult | None = None
    try:
        async with client_factory(organization_id, integrations) as client:
            if direction in (SyncDirection.import_only, SyncDirection.bidirectional):
                import_result = await perform_full_import(
                    client, crm_store, organization_id, options
                )
            if direction in (SyncDirection.export_only, SyncDirection.bidirectional):
                export_result = await perform_full_export(client, crm_store, organization_id)
    except Exception as exc:
        await integrations.record_sync_result(
            organization_id,
            SyncRunStatus.failed,
            error=str(exc) or exc.__class__.__name__,
        )
        salesforce_sync_runs_total.labels(status=SyncRunStatus.failed.value).inc()
        logger.error(
            "salesforce_jobs.sync_failed",
            organization_id=organization_id,
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        raise

    results = [r for r in (import_result, export_result) if r is not None]
    errors = [e for r in results for e in r.all_errors()]
    status = _run_status(results)
    finished_at = datetime.now(timezone.utc)

    # Records that failed to import must be re-queried next run
    cursor = started_at if import_result is not None and not import_result.all_errors() else None

    await integrations.record_sync_result(
        organization_id,
        status,
        error=summarize_errors(errors),
        cursor=cursor,
        finished_at=finished_at,
    )
    salesforce_sync_runs_total.labels(status=status.value).inc()

    summary = SyncRunSummary(
        organization_id=organization_id,
        direction=direction,
        full_sync=full_sync,
        status=status,
        import_result=import_result,
        export_result=export_result,
        errors=errors,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    logger.info(
        "salesforce_jobs.sync_completed",
        organization_id=organization_id,
        status=status.value,
        errors=len(errors),
        cursor_advanced=cursor is not None,
        duration_ms=summary.duration_ms,
    )
    return summary


def select_due_integrations(
    integrations: list[SalesforceIntegration], now: datetime | None = None
) -> list[SalesforceIntegration]:
    """Enabled integrations never synced or idle for at least their interval."""
    now = now or datetime.now(timezone.utc)
    due: list[SalesforceIntegration] = []
    for integration in integrations:
        if not integration.is_enabled:
            continue
        if integration.last_sync_status == SyncRunStatus.in_progress:
            continue
        if integration.last_sync_at is None:
            due.append(integration)
            continue
        interval = timedelta(minutes=integration.sync_interval_minutes)
        if now - integration.last_sync_at >= interval:
            due.append(integration)
    return due


async def run_due_syncs(
    integrations: Any,
    crm_store: CRMStore,
    *,
    now: datetime | None = None,
    client_factory=create_salesforce_client,
) -> list[SyncRunSummary]:
    """Run every due sync, one organization at a time.

    A failing organization is logged and does not stop the sweep.
    """
    due = select_due_integrations(await integrations.list_enabled(), now)
    logger.info("salesforce_jobs.due_syncs_selected", count=len(due))

    summaries: list[SyncRunSummary] = []
    for integration in due:
        organization_id = integration.organization_id
        with structlog.contextvars.bound_contextvars(organization_id=organization_id):
            try:
                summaries.append(
                    await run_salesforce_sync(
                        organization_id,
                        integrations,
                        crm_store,
                        client_factory=client_factory,
                    )
                )
            except SyncInProgressError:
                logger.info("salesforce_jobs.sync_already_running")
            except Exception as exc:
                logger.error("salesforce_jobs.scheduled_sync_failed", error=str(exc))
    return summaries
