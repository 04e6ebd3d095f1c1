from __future__ import annotations

from xero_sync.domain.field_ownership import REMOTE_OWNED_FIELDS, merge_with_ownership, strip_remote_owned
from xero_sync.domain.models import SyncDirection


def _local() -> dict[str, object]:
    return {
        "name": "Local Name",
        "email": "local@test",
        "notes": "Site access via gate 3",
        "customer_number": "C-0004",
        "is_active": True,
        "xero_tax_number": "OLD",
        "xero_contact_id": "c-1",
    }


def _remote() -> dict[str, object]:
    return {
        "name": "Remote Name",
        "email": "remote@test",
        "notes": "should never land",
        "xero_tax_number": "GB999",
        "xero_contact_id": "c-1",
    }


def test_pull_takes_core_and_remote_owned_fields_and_keeps_local_owned() -> None:
    merged = merge_with_ownership(_local(), _remote(), SyncDirection.PULL)

    assert merged["name"] == "Remote Name"
    assert merged["email"] == "remote@test"
    assert merged["xero_tax_number"] == "GB999"
    assert merged["notes"] == "Site access via gate 3"
    assert merged["customer_number"] == "C-0004"


def test_push_payload_never_carries_remote_owned_fields() -> None:
    payload = merge_with_ownership(_local(), _remote(), SyncDirection.PUSH)

    assert payload["name"] == "Local Name"
    assert payload["notes"] == "Site access via gate 3"
    assert payload["xero_contact_id"] == "c-1"
    assert not REMOTE_OWNED_FIELDS & payload.keys()


def test_pull_into_new_record_uses_remote_values_only() -> None:
    merged = merge_with_ownership(None, _remote(), SyncDirection.PULL)

    assert merged["name"] == "Remote Name"
    assert "notes" not in merged


def test_strip_remote_owned() -> None:
    assert strip_remote_owned({"name": "x", "xero_ar_tax_type": "OUTPUT"}) == {"name": "x"}
