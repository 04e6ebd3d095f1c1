from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any

from xero_sync.domain.models import XeroResource

_ID_PARAMS = {
    XeroResource.CONTACTS: "IDs",
    XeroResource.INVOICES: "IDs",
    XeroResource.PAYMENTS: None,
}
_ID_FIELDS = {
    XeroResource.CONTACTS: "ContactID",
    XeroResource.INVOICES: "InvoiceID",
    XeroResource.PAYMENTS: "PaymentID",
}


@dataclass(frozen=True)
class XeroQuery:
    modified_since: datetime | None = None
    where: str | None = None
    ids: tuple[str, ...] = ()
    include_archived: bool = False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    rate_limit_default_wait_seconds: float = 60.0
    max_rate_limit_retries: int = 10


def server_error_backoff_seconds(attempt: int, base: float, cap: float) -> float:
    return min(base * (2 ** max(attempt - 1, 0)), cap)


def parse_retry_after(value: str | None, default: float, *, now: datetime | None = None) -> float:
    """Retry-After is either delta-seconds or an HTTP-date; anything unparseable uses ``default``."""
    if value is None or not str(value).strip():
        return default
    raw = str(value).strip()
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return default
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max((target - reference).total_seconds(), 0.0)


def format_if_modified_since(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def build_list_params(resource: XeroResource, query: XeroQuery, page: int, page_size: int) -> dict[str, Any]:
    params: dict[str, Any] = {"page": page, "pageSize": page_size}
    where_clauses: list[str] = []
    if query.where:
        where_clauses.append(query.where)
    if resource is XeroResource.CONTACTS and not query.include_archived:
        where_clauses.append('ContactStatus=="ACTIVE"')
    if query.ids:
        id_param = _ID_PARAMS[resource]
        if id_param:
            params[id_param] = ",".join(query.ids)
        else:
            where_clauses.append(" OR ".join(f'{_ID_FIELDS[resource]}==Guid("{item}")' for item in query.ids))
    if where_clauses:
        params["where"] = " AND ".join(f"({clause})" for clause in where_clauses)
    if query.include_archived and resource is XeroResource.CONTACTS:
        params["includeArchived"] = "true"
    return params


def extract_records(resource: XeroResource, payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    records = payload.get(resource.value, [])
    return [record for record in records if isinstance(record, dict)] if isinstance(records, list) else []
