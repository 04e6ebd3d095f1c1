from __future__ import annotations

from typing import Any

import requests

from xero_sync.domain.xero_errors import XeroAuthError, XeroClientError, XeroRateLimitError, XeroServerError
from xero_sync.infrastructure.xero_client_puros import parse_retry_after


def extract_response_status_code(ex: Exception) -> int | None:
    response = getattr(ex, "response", None)
    return getattr(response, "status_code", None)


def _response_text(response: Any) -> str:
    text = getattr(response, "text", "") or ""
    return text[:500]


def classify_status(status_code: int, text: str = "", headers: Any = None, *, default_wait: float = 60.0) -> Exception:
    if status_code in (401, 403):
        return XeroAuthError(f"Xero rejected the credential ({status_code}): {text}", status_code=status_code)
    if status_code == 429:
        retry_after = parse_retry_after((headers or {}).get("Retry-After"), default_wait)
        return XeroRateLimitError(f"Xero rate limit reached: {text}", retry_after=retry_after)
    if status_code >= 500:
        return XeroServerError(f"Xero server error ({status_code}): {text}", status_code=status_code)
    return XeroClientError(f"Xero request rejected ({status_code}): {text}", status_code=status_code)


def map_requests_exception(ex: Exception, *, default_wait: float = 60.0) -> Exception:
    if isinstance(ex, (XeroAuthError, XeroClientError, XeroRateLimitError, XeroServerError)):
        return ex
    if isinstance(ex, requests.Timeout):
        return XeroServerError(f"Xero request timed out: {ex}")
    if isinstance(ex, requests.ConnectionError):
        return XeroServerError(f"Could not reach Xero: {ex}")
    if isinstance(ex, requests.HTTPError) and ex.response is not None:
        response = ex.response
        return classify_status(
            response.status_code,
            _response_text(response),
            response.headers,
            default_wait=default_wait,
        )
    return XeroClientError(str(ex))
