from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.fakes import xero_contact, xero_invoice
from xero_sync.core.errors import ConflictNotFoundError, ValidationError
from xero_sync.domain.models import (
    EntityType,
    LocalCustomer,
    SyncDirection,
    SyncOperation,
    SyncOrigin,
    SyncStateRecord,
    SyncStatus,
    XeroResource,
)
from xero_sync.domain.sync_models import RecordOutcome
from xero_sync.domain.xero_errors import XeroServerError

LAST_SYNC = datetime(2025, 5, 1, tzinfo=timezone.utc)
LOCAL_EDIT = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _seed_conflicting_customer(customer_repo, sync_state_repo, fake_api) -> LocalCustomer:
    """A customer edited locally after the last push while Xero renamed it too."""
    customer = customer_repo.create(
        LocalCustomer(
            id=None,
            name="Local Name",
            email="c-1@example.test",
            customer_number="C-0001",
            xero_contact_id="c-1",
            created_at=LAST_SYNC,
            updated_at=LOCAL_EDIT,
        )
    )
    sync_state_repo.upsert(
        SyncStateRecord(
            entity_type=EntityType.CUSTOMER,
            local_id=customer.id,
            xero_id="c-1",
            last_local_hash="old-local",
            last_remote_hash="old-remote",
            last_synced_at=LAST_SYNC,
            sync_origin=SyncOrigin.LOCAL,
        )
    )
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-1", "Remote Name", UpdatedDateUTC="2025-06-02T09:00:00Z"))
    return customer


@pytest.fixture
def conflicted(orchestrator, customer_repo, sync_state_repo, fake_api) -> LocalCustomer:
    customer = _seed_conflicting_customer(customer_repo, sync_state_repo, fake_api)
    orchestrator.run(EntityType.CUSTOMER, SyncDirection.PULL)
    return customer


def test_pull_detects_conflict_and_parks_the_row(orchestrator, customer_repo, sync_state_repo, fake_api) -> None:
    customer = _seed_conflicting_customer(customer_repo, sync_state_repo, fake_api)

    result = orchestrator.run(EntityType.CUSTOMER, SyncDirection.PULL)

    state = sync_state_repo.get(EntityType.CUSTOMER, customer.id)
    assert result.counts["conflicts"] == 1
    assert result.conflict_details[0].conflict_fields == ("name",)
    assert state.status is SyncStatus.CONFLICT
    assert state.conflict_data["local_data"]["name"] == "Local Name"
    assert state.conflict_data["remote_data"]["name"] == "Remote Name"
    assert customer_repo.find_by_id(customer.id).name == "Local Name"


def test_pending_conflict_is_counted_again_but_logged_once(
    conflicted, orchestrator, sync_log_repo
) -> None:
    result = orchestrator.run(EntityType.CUSTOMER, SyncDirection.PULL)

    entries = sync_log_repo.list_for_entity(EntityType.CUSTOMER, conflicted.id)
    assert result.counts["conflicts"] == 1
    assert [entry.operation for entry in entries] == [SyncOperation.CONFLICT]


def test_push_of_conflicted_row_is_blocked(conflicted, contact_handler, fake_api) -> None:
    result = contact_handler.push_record(EntityType.CUSTOMER, conflicted.id)

    assert result.outcome is RecordOutcome.CONFLICT
    assert fake_api.updated == []


def test_list_conflicts(conflicted, conflicts_service) -> None:
    (record,) = conflicts_service.list_conflicts()

    assert record.local_id == conflicted.id
    assert record.xero_id == "c-1"
    assert record.conflict_fields == ("name",)
    assert record.detected_at
    assert conflicts_service.count_conflicts() == 1


def test_use_remote_applies_the_xero_version(conflicted, conflicts_service, customer_repo, sync_state_repo) -> None:
    result = conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "use_remote")

    state = sync_state_repo.get(EntityType.CUSTOMER, conflicted.id)
    assert result.outcome is RecordOutcome.UPDATED
    assert customer_repo.find_by_id(conflicted.id).name == "Remote Name"
    assert state.status is SyncStatus.ACTIVE
    assert state.sync_origin is SyncOrigin.REMOTE
    assert conflicts_service.count_conflicts() == 0


def test_use_local_pushes_the_local_version(conflicted, conflicts_service, fake_api, sync_state_repo, sync_log_repo) -> None:
    result = conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "use_local")

    state = sync_state_repo.get(EntityType.CUSTOMER, conflicted.id)
    assert result.outcome is RecordOutcome.UPDATED
    assert fake_api.updated[0][0] == "c-1"
    assert fake_api.updated[0][1]["Name"] == "Local Name"
    assert state.status is SyncStatus.ACTIVE
    assert state.sync_origin is SyncOrigin.LOCAL
    operations = [entry.operation for entry in sync_log_repo.list_for_entity(EntityType.CUSTOMER, conflicted.id)]
    assert operations == [SyncOperation.CONFLICT, SyncOperation.UPDATE, SyncOperation.RESOLVE]


def test_manual_resolution_applies_known_fields_then_pushes(conflicted, conflicts_service, customer_repo, fake_api) -> None:
    conflicts_service.resolve_conflict(
        EntityType.CUSTOMER,
        conflicted.id,
        "manual",
        {"name": "Agreed Name", "favourite_colour": "blue"},
    )

    assert customer_repo.find_by_id(conflicted.id).name == "Agreed Name"
    assert fake_api.updated[0][1]["Name"] == "Agreed Name"


def test_failed_resolution_keeps_the_conflict(conflicted, conflicts_service, fake_api) -> None:
    fake_api.push_error = XeroServerError("down", status_code=503)

    with pytest.raises(XeroServerError):
        conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "use_local")

    assert conflicts_service.count_conflicts() == 1


def test_resolution_input_is_validated(conflicted, conflicts_service, customer_repo) -> None:
    with pytest.raises(ValidationError):
        conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "flip_a_coin")
    with pytest.raises(ValidationError):
        conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "manual")
    with pytest.raises(ValidationError):
        conflicts_service.resolve_conflict(EntityType.CUSTOMER, conflicted.id, "manual", {"colour": "blue"})

    other = customer_repo.create(LocalCustomer(id=None, name="Calm", customer_number="C-0002"))
    with pytest.raises(ConflictNotFoundError):
        conflicts_service.resolve_conflict(EntityType.CUSTOMER, other.id, "use_local")


def test_invoice_conflict_use_remote_reopens_for_the_next_pull(conflicts_service, sync_state_repo) -> None:
    sync_state_repo.upsert(
        SyncStateRecord(entity_type=EntityType.INVOICE, local_id=5, xero_id="inv-5", last_remote_hash="abc")
    )
    sync_state_repo.mark_conflict(EntityType.INVOICE, 5, {"conflict_fields": ["total"]}, "corr")

    with pytest.raises(ValidationError):
        conflicts_service.resolve_conflict(EntityType.INVOICE, 5, "manual", {"total": "10.00"})
    result = conflicts_service.resolve_conflict(EntityType.INVOICE, 5, "use_remote")

    state = sync_state_repo.get(EntityType.INVOICE, 5)
    assert result.outcome is RecordOutcome.SKIPPED
    assert state.status is SyncStatus.ACTIVE
    assert state.last_remote_hash is None


def test_invoice_conflict_use_local_pushes_the_erp_invoice(
    orchestrator, conflicts_service, invoice_repo, sync_state_repo, fake_api
) -> None:
    fake_api.add(XeroResource.CONTACTS, xero_contact("c-1", "Acme"))
    fake_api.add(XeroResource.INVOICES, xero_invoice("inv-1", "c-1", Reference="Phase 1"))
    orchestrator.sync_all(SyncDirection.PULL)
    invoice = invoice_repo.find_by_external_id("inv-1")
    sync_state_repo.mark_conflict(EntityType.INVOICE, invoice.id, {"conflict_fields": ["reference"]}, "corr")

    result = conflicts_service.resolve_conflict(EntityType.INVOICE, invoice.id, "use_local")

    state = sync_state_repo.get(EntityType.INVOICE, invoice.id)
    assert result.outcome is RecordOutcome.UPDATED
    assert fake_api.updated_invoices[0][0] == "inv-1"
    assert fake_api.updated_invoices[0][1]["Reference"] == "Phase 1"
    assert fake_api.updated_invoices[0][1]["Contact"]["ContactID"] == "c-1"
    assert state.status is SyncStatus.ACTIVE
    assert state.sync_origin is SyncOrigin.LOCAL
    assert conflicts_service.count_conflicts() == 0
