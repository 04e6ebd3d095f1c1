from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from xero_sync.domain.models import SyncDirection

# Written by Xero only: overwritten on every pull, never pushed.
REMOTE_OWNED_FIELDS: frozenset[str] = frozenset(
    {
        "xero_tax_number",
        "xero_ar_tax_type",
        "xero_ap_tax_type",
        "xero_default_currency",
    }
)

# Written by the ERP only: preserved on pull. company_reg is the ERP registration
# number and is never derived from the Xero TaxNumber.
LOCAL_OWNED_FIELDS: frozenset[str] = frozenset(
    {
        "notes",
        "company_reg",
        "customer_type",
        "supplier_type",
        "is_active",
        "customer_number",
        "supplier_number",
    }
)

CORE_CONTACT_FIELDS: tuple[str, ...] = (
    "name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "country",
    "postal_code",
    "contact_person",
    "website",
    "is_customer",
    "is_supplier",
)

_PULL_LINK_FIELDS: tuple[str, ...] = ("xero_contact_id", "xero_updated_at")


def merge_with_ownership(
    local: Mapping[str, Any] | None,
    remote: Mapping[str, Any],
    direction: SyncDirection,
) -> dict[str, Any]:
    """Combines a local and a remote contact field-by-field under the ownership partition.

    Both inputs use local column names. On pull the result is the new local
    row; on push it is the outbound payload, which never carries remote-owned
    fields even when the local row has values for them.
    """
    if direction is SyncDirection.PULL:
        merged = dict(local or {})
        for field_name in REMOTE_OWNED_FIELDS:
            if field_name in remote and remote[field_name] is not None:
                merged[field_name] = remote[field_name]
        for field_name in CORE_CONTACT_FIELDS + _PULL_LINK_FIELDS:
            if field_name in remote:
                merged[field_name] = remote[field_name]
        return merged

    source = dict(local or {})
    payload = {field_name: source[field_name] for field_name in CORE_CONTACT_FIELDS if field_name in source}
    for field_name in LOCAL_OWNED_FIELDS:
        if field_name in source:
            payload[field_name] = source[field_name]
    if source.get("xero_contact_id"):
        payload["xero_contact_id"] = source["xero_contact_id"]
    return payload


def strip_remote_owned(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in REMOTE_OWNED_FIELDS}
