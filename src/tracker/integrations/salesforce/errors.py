"""Salesforce integration error taxonomy.

- SalesforceConfigError: OAuth client credentials or encryption key missing.
  Fatal, raised before any network call.
- SalesforceAuthError: token refresh failed or credentials rejected. Fatal for
  the current sync run.
- SalesforceSessionExpiredError: access token expired (triggers one refresh).
- SalesforceApiError: a query/create/update was rejected; carries the
  field-level validation messages returned by Salesforce.
- SalesforceNotConnectedError: no enabled integration for the organization.

A record that is not found is not an error: get_* methods return None.
"""

from __future__ import annotations


class SalesforceError(Exception):
    """Base class for Salesforce integration errors."""


class SalesforceConfigError(SalesforceError):
    """Required Salesforce configuration is missing."""


class SalesforceNotConnectedError(SalesforceError):
    """The organization has no enabled Salesforce integration."""


class SalesforceAuthError(SalesforceError):
    """Authentication with Salesforce failed (refresh rejected, revoked grant)."""


class SalesforceSessionExpiredError(SalesforceAuthError):
    """Access token expired; the client refreshes and retries once."""


class SalesforceApiError(SalesforceError):
    """Salesforce rejected a request.

    Attributes:
        status_code: HTTP status returned by Salesforce.
        error_code: First Salesforce errorCode (e.g. REQUIRED_FIELD_MISSING).
        messages: Every error message returned, in order.
        fields: Field names Salesforce attributed the errors to.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        messages: list[str] | None = None,
        fields: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.messages = messages or []
        self.fields = fields or []
