from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import Any, Callable

from xero_sync.domain.models import XeroResource
from xero_sync.domain.ports import XeroApiPort, XeroQuery
from xero_sync.domain.xero_errors import XeroRateLimitError, XeroRetriesExhaustedError, XeroServerError
from xero_sync.infrastructure.xero_client_puros import RetryPolicy, server_error_backoff_seconds

logger = logging.getLogger(__name__)


class XeroPaginator:
    """Walks a Xero list endpoint page by page, retrying each page in place.

    Stop conditions: a non-empty page shorter than ``page_size``, a run of
    ``max_consecutive_empty_pages`` empty pages, the ``max_pages`` ceiling, or
    a set ``cancel_event``. Xero sometimes returns sparse empty pages in the
    middle of a listing, so a single empty page does not end the walk.
    """

    def __init__(
        self,
        api: XeroApiPort,
        *,
        policy: RetryPolicy | None = None,
        page_size: int = 100,
        inter_page_delay: float = 0.25,
        max_pages: int = 2000,
        max_consecutive_empty_pages: int = 3,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api = api
        self._policy = policy or RetryPolicy()
        self._page_size = page_size
        self._inter_page_delay = inter_page_delay
        self._max_pages = max_pages
        self._max_consecutive_empty_pages = max_consecutive_empty_pages
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self.pages_fetched = 0
        self.total_fetched = 0
        self.hit_page_ceiling = False

    def fetch_all(
        self,
        resource: XeroResource,
        query: XeroQuery,
        page_size: int | None = None,
    ) -> Iterator[dict[str, Any]]:
        size = page_size or self._page_size
        self.pages_fetched = 0
        self.total_fetched = 0
        self.hit_page_ceiling = False
        consecutive_empty = 0
        page = 1
        while page <= self._max_pages:
            if self.cancel_event.is_set():
                logger.info("Pagination of %s cancelled before page %s", resource.value, page)
                return
            records = self._fetch_page_with_retry(resource, page, size, query)
            self.pages_fetched += 1
            if not records:
                consecutive_empty += 1
                logger.debug(
                    "Empty page %s for %s (%s/%s consecutive)",
                    page,
                    resource.value,
                    consecutive_empty,
                    self._max_consecutive_empty_pages,
                )
                if consecutive_empty >= self._max_consecutive_empty_pages:
                    return
                page += 1
                continue
            consecutive_empty = 0
            self.total_fetched += len(records)
            yield from records
            if len(records) < size:
                logger.info(
                    "Final page %s for %s (%s records, %s total)",
                    page,
                    resource.value,
                    len(records),
                    self.total_fetched,
                )
                return
            page += 1
            if self._inter_page_delay > 0:
                self._sleep(self._inter_page_delay)
        self.hit_page_ceiling = True
        logger.warning(
            "Stopped paging %s at the %s-page ceiling (%s records fetched)",
            resource.value,
            self._max_pages,
            self.total_fetched,
        )

    def _fetch_page_with_retry(
        self,
        resource: XeroResource,
        page: int,
        page_size: int,
        query: XeroQuery,
    ) -> list[dict[str, Any]]:
        server_attempts = 0
        rate_limit_retries = 0
        while True:
            try:
                return self._api.fetch_page(resource, page, page_size, query)
            except XeroRateLimitError as exc:
                rate_limit_retries += 1
                if rate_limit_retries > self._policy.max_rate_limit_retries:
                    raise XeroRetriesExhaustedError(
                        f"Xero kept rate limiting page {page} of {resource.value}",
                        page=page,
                        attempts=rate_limit_retries,
                    ) from exc
                wait_seconds = (
                    exc.retry_after if exc.retry_after is not None else self._policy.rate_limit_default_wait_seconds
                )
                logger.warning(
                    "Rate limited by Xero on %s page %s. retry=%s/%s wait=%.1fs",
                    resource.value,
                    page,
                    rate_limit_retries,
                    self._policy.max_rate_limit_retries,
                    wait_seconds,
                )
                self._sleep(wait_seconds)
            except XeroServerError as exc:
                server_attempts += 1
                if server_attempts >= self._policy.max_attempts:
                    logger.error(
                        "Xero failed %s page %s after %s attempts: %s",
                        resource.value,
                        page,
                        server_attempts,
                        exc,
                    )
                    raise XeroRetriesExhaustedError(
                        f"Xero failed page {page} of {resource.value} after {server_attempts} attempts",
                        page=page,
                        attempts=server_attempts,
                    ) from exc
                backoff_seconds = server_error_backoff_seconds(
                    server_attempts,
                    self._policy.base_backoff_seconds,
                    self._policy.max_backoff_seconds,
                )
                logger.warning(
                    "Xero error on %s page %s. attempt=%s/%s backoff=%.1fs",
                    resource.value,
                    page,
                    server_attempts,
                    self._policy.max_attempts,
                    backoff_seconds,
                )
                self._sleep(backoff_seconds)
