"""Background scheduler for Salesforce sync: an hourly sweep of due integrations.

Each integration carries its own sync_interval_minutes; the hourly job only
decides which of them are due and runs those sequentially.

Exports:
    SalesforceSyncScheduler: AsyncIOScheduler wrapper with one cron job.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.tracker.crm.store import CRMStore
from src.tracker.integrations.salesforce.jobs import run_due_syncs

logger = structlog.get_logger(__name__)


class SalesforceSyncScheduler:
    """Runs run_due_syncs() at the top of every hour.

    Args:
        integrations: SalesforceIntegrationStore.
        crm_store: Local CRM store passed through to each run.
    """

    JOB_ID = "salesforce_due_sync_sweep"

    def __init__(self, integrations: Any, crm_store: CRMStore) -> None:
        self._integrations = integrations
        self._crm_store = crm_store
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        if self._started:
            return True
        try:
            self._scheduler = AsyncIOScheduler()
            self._scheduler.add_job(
                self.run_once,
                trigger=CronTrigger(minute=0),
                id=self.JOB_ID,
                name="Salesforce sync for integrations whose interval has elapsed",
                misfire_grace_time=900,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()
            self._started = True
            logger.info("salesforce_scheduler.started", schedule="Hourly at :00")
            return True
        except Exception as exc:
            logger.warning("salesforce_scheduler.start_failed", error=str(exc))
            return False

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("salesforce_scheduler.stopped")

    async def run_once(self) -> int:
        """Run the due-sync sweep now. Returns the number of completed runs."""
        logger.info("salesforce_scheduler.sweep_triggered")
        try:
            summaries = await run_due_syncs(self._integrations, self._crm_store)
        except Exception as exc:
            logger.warning("salesforce_scheduler.sweep_failed", error=str(exc))
            return 0
        logger.info("salesforce_scheduler.sweep_complete", runs=len(summaries))
        return len(summaries)
