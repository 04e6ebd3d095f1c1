from __future__ import annotations

import threading

import pytest

from tests.fakes import FakeXeroApi, RecordingSleep, xero_contact
from xero_sync.domain.models import XeroResource
from xero_sync.domain.xero_errors import XeroRateLimitError, XeroRetriesExhaustedError, XeroServerError
from xero_sync.infrastructure.xero_client_puros import RetryPolicy, XeroQuery
from xero_sync.infrastructure.xero_paginator import XeroPaginator


def _contacts(total: int) -> list[dict]:
    return [xero_contact(f"c-{index}", f"Contact {index}") for index in range(total)]


def _paginator(api: FakeXeroApi, sleep: RecordingSleep, **kwargs) -> XeroPaginator:
    kwargs.setdefault("inter_page_delay", 0)
    return XeroPaginator(api, sleep=sleep, **kwargs)


def test_short_final_page_ends_the_walk() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(137))
    paginator = _paginator(api, RecordingSleep())

    records = list(paginator.fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert len(records) == 137
    assert paginator.total_fetched == 137
    assert [call[1] for call in api.page_calls] == [1, 2]


def test_exact_multiple_needs_three_empty_pages_to_stop() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(100))
    paginator = _paginator(api, RecordingSleep())

    records = list(paginator.fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert len(records) == 100
    assert len(api.page_calls) == 4
    assert paginator.pages_fetched == 4


def test_inter_page_delay_only_after_full_pages() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(25))
    sleep = RecordingSleep()
    paginator = _paginator(api, sleep, page_size=10, inter_page_delay=0.25)

    list(paginator.fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert sleep.calls == [0.25, 0.25]


def test_rate_limit_retries_the_same_page_after_retry_after() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(15))
    api.errors[(XeroResource.CONTACTS, 2)].append(XeroRateLimitError("slow down", retry_after=7))
    sleep = RecordingSleep()
    paginator = _paginator(api, sleep, page_size=10)

    records = list(paginator.fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert len(records) == 15
    assert [call[1] for call in api.page_calls] == [1, 2, 2]
    assert sleep.calls == [7]


def test_rate_limit_without_retry_after_uses_default_wait() -> None:
    api = FakeXeroApi()
    api.errors[(XeroResource.CONTACTS, 1)].append(XeroRateLimitError("slow down"))
    api.add(XeroResource.CONTACTS, *_contacts(3))
    sleep = RecordingSleep()

    list(_paginator(api, sleep).fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert sleep.calls == [60.0]


def test_server_errors_back_off_exponentially_then_give_up() -> None:
    api = FakeXeroApi()
    api.errors[(XeroResource.INVOICES, 1)].extend(XeroServerError("boom", status_code=503) for _ in range(5))
    sleep = RecordingSleep()
    paginator = _paginator(api, sleep)

    with pytest.raises(XeroRetriesExhaustedError) as excinfo:
        list(paginator.fetch_all(XeroResource.INVOICES, XeroQuery()))

    assert sleep.calls == [1.0, 2.0, 4.0, 8.0]
    assert excinfo.value.page == 1
    assert excinfo.value.attempts == 5


def test_backoff_is_capped() -> None:
    api = FakeXeroApi()
    api.errors[(XeroResource.PAYMENTS, 1)].extend(XeroServerError("boom") for _ in range(3))
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=4, base_backoff_seconds=20.0, max_backoff_seconds=30.0)

    list(_paginator(api, sleep, policy=policy).fetch_all(XeroResource.PAYMENTS, XeroQuery()))

    assert sleep.calls == [20.0, 30.0, 30.0]


def test_rate_limit_retries_are_bounded() -> None:
    api = FakeXeroApi()
    api.errors[(XeroResource.CONTACTS, 1)].extend(XeroRateLimitError("no", retry_after=1) for _ in range(3))
    policy = RetryPolicy(max_rate_limit_retries=2)

    with pytest.raises(XeroRetriesExhaustedError):
        list(_paginator(api, RecordingSleep(), policy=policy).fetch_all(XeroResource.CONTACTS, XeroQuery()))


def test_cancelled_before_start_fetches_nothing() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(5))
    cancel_event = threading.Event()
    cancel_event.set()

    records = list(_paginator(api, RecordingSleep(), cancel_event=cancel_event).fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert records == []
    assert api.page_calls == []


def test_page_ceiling_is_reported() -> None:
    api = FakeXeroApi()
    api.add(XeroResource.CONTACTS, *_contacts(30))
    paginator = _paginator(api, RecordingSleep(), page_size=10, max_pages=2)

    records = list(paginator.fetch_all(XeroResource.CONTACTS, XeroQuery()))

    assert len(records) == 20
    assert paginator.hit_page_ceiling
