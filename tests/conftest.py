"""Shared fixtures for Salesforce sync tests (doubles live in tests/fakes.py)."""

from __future__ import annotations

import pytest

from src.tracker.crm.schemas import UserRecord, UserRole
from tests.fakes import FakeSalesforceClient, InMemoryCRMStore, InMemoryIntegrationStore


@pytest.fixture
def crm_store() -> InMemoryCRMStore:
    return InMemoryCRMStore()


@pytest.fixture
def sf_client() -> FakeSalesforceClient:
    return FakeSalesforceClient()


@pytest.fixture
def integrations() -> InMemoryIntegrationStore:
    return InMemoryIntegrationStore()


@pytest.fixture
def admin(crm_store: InMemoryCRMStore) -> UserRecord:
    return crm_store.add_user("admin@example.com", role=UserRole.ADMIN)
