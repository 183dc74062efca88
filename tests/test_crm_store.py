"""Tests for the CRMStore interface and export selection."""

from __future__ import annotations

import pytest

from src.tracker.crm.schemas import AccountRecord, ContactRecord, OpportunityRecord, SalesforceSyncStatus
from src.tracker.crm.store import CRMStore, needs_export
from tests.fakes import ORG_ID, InMemoryCRMStore, utc


class TestCRMStoreInterface:
    def test_cannot_instantiate_abstract_store(self):
        with pytest.raises(TypeError):
            CRMStore()

    def test_in_memory_store_implements_interface(self):
        assert isinstance(InMemoryCRMStore(), CRMStore)


class TestNeedsExport:
    def test_unlinked_record_needs_export(self):
        assert needs_export(AccountRecord(id="a", organization_id=ORG_ID, name="Acme"))

    def test_never_synced_linked_record_needs_export(self):
        assert needs_export(
            ContactRecord(id="c", organization_id=ORG_ID, last_name="Doe", salesforce_id="003A")
        )

    def test_modified_after_last_sync(self):
        record = AccountRecord(
            id="a",
            organization_id=ORG_ID,
            name="Acme",
            salesforce_id="001A",
            salesforce_last_sync_at=utc(2024, 1, 1),
            updated_at=utc(2024, 1, 1, 1),
        )
        assert needs_export(record)

    def test_unchanged_since_last_sync(self):
        record = AccountRecord(
            id="a",
            organization_id=ORG_ID,
            name="Acme",
            salesforce_id="001A",
            salesforce_last_sync_at=utc(2024, 1, 1),
            updated_at=utc(2024, 1, 1),
        )
        assert not needs_export(record)

    def test_pending_push_opportunity_needs_export(self):
        record = OpportunityRecord(
            id="o",
            organization_id=ORG_ID,
            name="Deal",
            owner_id="user-1",
            salesforce_id="006A",
            salesforce_last_sync_at=utc(2024, 1, 2),
            updated_at=utc(2024, 1, 1),
            salesforce_sync_status=SalesforceSyncStatus.pending_push,
        )
        assert needs_export(record)
