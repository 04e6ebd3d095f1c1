from __future__ import annotations

import logging
from typing import Any

import requests

from xero_sync.core.observability import get_correlation_id
from xero_sync.domain.models import XeroResource
from xero_sync.domain.ports import TokenProviderPort
from xero_sync.domain.xero_errors import XeroAuthError, XeroClientError
from xero_sync.infrastructure.xero_client_puros import (
    XeroQuery,
    build_list_params,
    extract_records,
    format_if_modified_since,
)
from xero_sync.infrastructure.xero_errors import classify_status, map_requests_exception

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 30.0


class XeroHttpClient:
    """Single-request adapter over the Xero accounting API.

    Retries are not done here: the paginator retries reads, and writes are
    never retried because a repeated create is not idempotent on Xero.
    """

    def __init__(
        self,
        token_provider: TokenProviderPort,
        *,
        base_url: str = "https://api.xero.com/api.xro/2.0",
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        rate_limit_default_wait: float = 60.0,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        self._rate_limit_default_wait = rate_limit_default_wait
        self._request_count = 0

    @property
    def request_count(self) -> int:
        return self._request_count

    def fetch_page(
        self,
        resource: XeroResource,
        page: int,
        page_size: int,
        query: XeroQuery,
    ) -> list[dict[str, Any]]:
        headers = {}
        if query.modified_since is not None:
            headers["If-Modified-Since"] = format_if_modified_since(query.modified_since)
        payload = self._request(
            "GET",
            f"/{resource.value}",
            params=build_list_params(resource, query, page, page_size),
            headers=headers,
        )
        return extract_records(resource, payload)

    def get_contact(self, xero_id: str) -> dict[str, Any] | None:
        return self._get_one(XeroResource.CONTACTS, xero_id)

    def create_contact(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PUT", f"/{XeroResource.CONTACTS.value}", json={"Contacts": [payload]})
        return self._single(XeroResource.CONTACTS, response, "create")

    def update_contact(self, xero_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post_update(XeroResource.CONTACTS, "ContactID", xero_id, payload)

    def get_invoice(self, xero_id: str) -> dict[str, Any] | None:
        return self._get_one(XeroResource.INVOICES, xero_id)

    def create_invoice(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PUT", f"/{XeroResource.INVOICES.value}", json={"Invoices": [payload]})
        return self._single(XeroResource.INVOICES, response, "create")

    def update_invoice(self, xero_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._post_update(XeroResource.INVOICES, "InvoiceID", xero_id, payload)

    def create_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._request("PUT", f"/{XeroResource.PAYMENTS.value}", json={"Payments": [payload]})
        return self._single(XeroResource.PAYMENTS, response, "create")

    def _get_one(self, resource: XeroResource, xero_id: str) -> dict[str, Any] | None:
        try:
            payload = self._request("GET", f"/{resource.value}/{xero_id}")
        except XeroClientError as exc:
            if exc.status_code == 404:
                return None
            raise
        records = extract_records(resource, payload)
        return records[0] if records else None

    def _post_update(self, resource: XeroResource, id_key: str, xero_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = dict(payload)
        body[id_key] = xero_id
        response = self._request("POST", f"/{resource.value}/{xero_id}", json={resource.value: [body]})
        return self._single(resource, response, "update")

    @staticmethod
    def _single(resource: XeroResource, payload: Any, operation: str) -> dict[str, Any]:
        records = extract_records(resource, payload)
        if not records:
            raise XeroClientError(f"Xero returned no {resource.value.lower()} record for {operation}")
        record = records[0]
        errors = record.get("ValidationErrors") or []
        if record.get("HasErrors") or errors:
            messages = [str(item.get("Message", "")) for item in errors if isinstance(item, dict)]
            detail = "; ".join(message for message in messages if message) or "validation failed"
            raise XeroClientError(f"Xero rejected the {operation} of {resource.value.lower()}: {detail}")
        return record

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        credential = self._token_provider.get_valid_token()
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {credential.access_token}"
        headers["xero-tenant-id"] = credential.tenant_id
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        self._request_count += 1
        try:
            response = self._session.request(
                method,
                f"{self._base_url}{path}",
                headers=headers,
                timeout=self._timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise map_requests_exception(exc, default_wait=self._rate_limit_default_wait) from exc

        if response.status_code >= 400:
            error = classify_status(
                response.status_code,
                (response.text or "")[:500],
                response.headers,
                default_wait=self._rate_limit_default_wait,
            )
            if isinstance(error, XeroAuthError):
                logger.error("Xero rejected the credential (%s %s -> %s)", method, path, response.status_code)
                self._token_provider.mark_inactive(f"HTTP {response.status_code} from Xero on {method} {path}")
            raise error
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise XeroClientError(f"Xero returned a non-JSON body for {method} {path}") from exc
