from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests

from tests.fakes import FakeResponse, FakeSession, FakeTokenProvider
from xero_sync.core.observability import OperationContext
from xero_sync.domain.models import XeroResource
from xero_sync.domain.xero_errors import XeroAuthError, XeroClientError, XeroRateLimitError, XeroServerError
from xero_sync.infrastructure.xero_client import XeroHttpClient
from xero_sync.infrastructure.xero_client_puros import XeroQuery, build_list_params, parse_retry_after
from xero_sync.infrastructure.xero_errors import classify_status, map_requests_exception


def _client(*responses: FakeResponse) -> tuple[XeroHttpClient, FakeSession, FakeTokenProvider]:
    session = FakeSession(*responses)
    tokens = FakeTokenProvider()
    return XeroHttpClient(tokens, session=session), session, tokens


def test_fetch_page_sends_auth_tenant_and_modified_since_headers() -> None:
    client, session, _ = _client(FakeResponse(200, {"Contacts": [{"ContactID": "c-1"}, "junk"]}))
    query = XeroQuery(modified_since=datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    records = client.fetch_page(XeroResource.CONTACTS, 2, 50, query)

    request = session.requests[0]
    assert records == [{"ContactID": "c-1"}]
    assert request["method"] == "GET"
    assert request["url"].endswith("/api.xro/2.0/Contacts")
    assert request["headers"]["Authorization"] == "Bearer access-token"
    assert request["headers"]["xero-tenant-id"] == "tenant-1"
    assert request["headers"]["If-Modified-Since"] == "Thu, 02 Jan 2025 03:04:05 GMT"
    assert request["params"]["page"] == 2
    assert request["params"]["pageSize"] == 50
    assert client.request_count == 1


def test_correlation_id_is_forwarded() -> None:
    client, session, _ = _client(FakeResponse(200, {"Invoices": []}))

    with OperationContext("xero_fetch") as operation:
        client.fetch_page(XeroResource.INVOICES, 1, 100, XeroQuery())

    assert session.requests[0]["headers"]["X-Correlation-Id"] == operation.correlation_id


def test_unauthorised_marks_connection_inactive() -> None:
    client, _, tokens = _client(FakeResponse(401, text="token expired"))

    with pytest.raises(XeroAuthError):
        client.fetch_page(XeroResource.CONTACTS, 1, 100, XeroQuery())

    assert tokens.inactive_reasons and "401" in tokens.inactive_reasons[0]


def test_rate_limit_carries_retry_after() -> None:
    client, _, _ = _client(FakeResponse(429, headers={"Retry-After": "12"}))

    with pytest.raises(XeroRateLimitError) as excinfo:
        client.fetch_page(XeroResource.CONTACTS, 1, 100, XeroQuery())

    assert excinfo.value.retry_after == 12.0


def test_server_error_is_transient() -> None:
    client, _, _ = _client(FakeResponse(502, text="bad gateway"))

    with pytest.raises(XeroServerError):
        client.fetch_page(XeroResource.PAYMENTS, 1, 100, XeroQuery())


def test_get_contact_returns_none_on_404() -> None:
    client, _, _ = _client(FakeResponse(404, text="not found"))

    assert client.get_contact("missing") is None


def test_update_contact_posts_contact_id_in_body() -> None:
    client, session, _ = _client(FakeResponse(200, {"Contacts": [{"ContactID": "c-9", "Name": "Acme"}]}))

    stored = client.update_contact("c-9", {"Name": "Acme"})

    request = session.requests[0]
    assert stored["ContactID"] == "c-9"
    assert request["method"] == "POST"
    assert request["json"] == {"Contacts": [{"Name": "Acme", "ContactID": "c-9"}]}


def test_create_without_contact_in_response_is_an_error() -> None:
    client, _, _ = _client(FakeResponse(200, {"Contacts": []}))

    with pytest.raises(XeroClientError):
        client.create_contact({"Name": "Acme"})


def test_create_invoice_puts_the_document() -> None:
    client, session, _ = _client(FakeResponse(200, {"Invoices": [{"InvoiceID": "inv-1", "Status": "DRAFT"}]}))

    stored = client.create_invoice({"Type": "ACCREC", "Contact": {"ContactID": "c-1"}})

    request = session.requests[0]
    assert stored["InvoiceID"] == "inv-1"
    assert request["method"] == "PUT"
    assert request["url"].endswith("/api.xro/2.0/Invoices")
    assert request["json"] == {"Invoices": [{"Type": "ACCREC", "Contact": {"ContactID": "c-1"}}]}


def test_update_invoice_posts_invoice_id_in_body() -> None:
    client, session, _ = _client(FakeResponse(200, {"Invoices": [{"InvoiceID": "inv-1"}]}))

    client.update_invoice("inv-1", {"Reference": "Phase 2"})

    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"].endswith("/api.xro/2.0/Invoices/inv-1")
    assert request["json"] == {"Invoices": [{"Reference": "Phase 2", "InvoiceID": "inv-1"}]}


def test_create_payment_puts_the_payment() -> None:
    client, session, _ = _client(FakeResponse(200, {"Payments": [{"PaymentID": "p-1"}]}))

    stored = client.create_payment({"Invoice": {"InvoiceID": "inv-1"}, "Amount": 40.0})

    assert stored["PaymentID"] == "p-1"
    assert session.requests[0]["method"] == "PUT"
    assert session.requests[0]["url"].endswith("/api.xro/2.0/Payments")


def test_validation_errors_in_the_response_are_raised() -> None:
    rejected = {
        "PaymentID": "00000000-0000-0000-0000-000000000000",
        "HasErrors": True,
        "ValidationErrors": [{"Message": "Payment amount exceeds the amount outstanding on this document"}],
    }
    client, _, _ = _client(FakeResponse(200, {"Payments": [rejected]}))

    with pytest.raises(XeroClientError) as excinfo:
        client.create_payment({"Invoice": {"InvoiceID": "inv-1"}, "Amount": 999.0})

    assert "exceeds the amount outstanding" in str(excinfo.value)


def test_list_params_filter_archived_contacts_by_default() -> None:
    params = build_list_params(XeroResource.CONTACTS, XeroQuery(), 1, 100)

    assert params == {"page": 1, "pageSize": 100, "where": '(ContactStatus=="ACTIVE")'}


def test_list_params_include_archived_and_ids() -> None:
    contacts = build_list_params(XeroResource.CONTACTS, XeroQuery(ids=("a", "b"), include_archived=True), 3, 10)
    payments = build_list_params(XeroResource.PAYMENTS, XeroQuery(ids=("p1",)), 1, 100)

    assert contacts["IDs"] == "a,b"
    assert contacts["includeArchived"] == "true"
    assert "where" not in contacts
    assert payments["where"] == '(PaymentID==Guid("p1"))'


def test_retry_after_parsing() -> None:
    now = datetime(2025, 1, 2, 3, 4, 0, tzinfo=timezone.utc)

    assert parse_retry_after("30", 60.0) == 30.0
    assert parse_retry_after(None, 60.0) == 60.0
    assert parse_retry_after("soon", 60.0) == 60.0
    assert parse_retry_after("Thu, 02 Jan 2025 03:04:05 GMT", 60.0, now=now) == 5.0


def test_requests_exceptions_are_mapped() -> None:
    assert isinstance(map_requests_exception(requests.Timeout("slow")), XeroServerError)
    assert isinstance(map_requests_exception(requests.ConnectionError("down")), XeroServerError)
    assert isinstance(map_requests_exception(ValueError("odd")), XeroClientError)


def test_status_classification() -> None:
    assert isinstance(classify_status(403), XeroAuthError)
    assert isinstance(classify_status(400), XeroClientError)
    assert classify_status(429, headers={}, default_wait=45.0).retry_after == 45.0
