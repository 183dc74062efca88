"""Salesforce integration: OAuth, REST client, field mappers, and sync engines."""

from src.tracker.integrations.salesforce.client import SalesforceClient, create_salesforce_client
from src.tracker.integrations.salesforce.errors import (
    SalesforceApiError,
    SalesforceAuthError,
    SalesforceConfigError,
    SalesforceError,
    SalesforceNotConnectedError,
    SalesforceSessionExpiredError,
)
from src.tracker.integrations.salesforce.sync import (
    ExportResult,
    ImportOptions,
    ImportResult,
    SalesforceExporter,
    SalesforceImporter,
    SyncStats,
    perform_bidirectional_sync,
    perform_full_export,
    perform_full_import,
)

__all__ = [
    "ExportResult",
    "ImportOptions",
    "ImportResult",
    "SalesforceApiError",
    "SalesforceAuthError",
    "SalesforceClient",
    "SalesforceConfigError",
    "SalesforceError",
    "SalesforceExporter",
    "SalesforceImporter",
    "SalesforceNotConnectedError",
    "SalesforceSessionExpiredError",
    "SyncStats",
    "create_salesforce_client",
    "perform_bidirectional_sync",
    "perform_full_export",
    "perform_full_import",
]
