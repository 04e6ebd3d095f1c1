from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

import requests

from xero_sync.domain.models import XeroCredential
from xero_sync.domain.time_utils import utc_now
from xero_sync.domain.xero_errors import XeroAuthError
from xero_sync.infrastructure.repos_connections_sqlite import SQLiteXeroConnectionRepository, XeroConnection
from xero_sync.infrastructure.xero_errors import map_requests_exception

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(minutes=5)


class XeroTokenProvider:
    """Hands out a valid access token for the stored Xero connection.

    Xero rotates the refresh token on every refresh, so refreshes run one at a
    time and re-read the stored connection once the lock is held.
    """

    def __init__(
        self,
        repository: SQLiteXeroConnectionRepository,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = "https://identity.xero.com/connect/token",
        session: requests.Session | None = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._session = session or requests.Session()
        self._timeout = timeout
        self._clock = clock
        self._refresh_lock = threading.Lock()

    def get_valid_token(self) -> XeroCredential:
        connection = self._active_connection()
        if connection.expires_at - self._clock() <= REFRESH_WINDOW:
            return self.refresh_if_needed()
        return XeroCredential(connection.access_token, connection.tenant_id, connection.expires_at)

    def refresh_if_needed(self) -> XeroCredential:
        with self._refresh_lock:
            connection = self._active_connection()
            if connection.expires_at - self._clock() > REFRESH_WINDOW:
                return XeroCredential(connection.access_token, connection.tenant_id, connection.expires_at)
            return self._refresh(connection)

    def _refresh(self, connection: XeroConnection) -> XeroCredential:
        logger.info("Refreshing Xero access token for tenant %s", connection.tenant_id)
        try:
            response = self._session.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": connection.refresh_token},
                auth=(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise map_requests_exception(exc) from exc

        if response.status_code in (400, 401, 403):
            reason = f"Token refresh rejected ({response.status_code})"
            self._repository.deactivate(connection.tenant_id, reason)
            raise XeroAuthError(
                f"{reason}; the Xero organisation must be reauthorised",
                status_code=response.status_code,
            )
        try:
            response.raise_for_status()
            body = response.json()
        except (requests.HTTPError, ValueError) as exc:
            raise map_requests_exception(exc) from exc

        expires_at = self._clock() + timedelta(seconds=int(body.get("expires_in", 1800)))
        access_token = body["access_token"]
        refresh_token = body.get("refresh_token") or connection.refresh_token
        self._repository.save_tokens(connection.tenant_id, access_token, refresh_token, expires_at)
        return XeroCredential(access_token, connection.tenant_id, expires_at)

    def mark_inactive(self, reason: str) -> None:
        connection = self._repository.get_current()
        if connection is None:
            return
        logger.warning("Deactivating Xero connection for tenant %s: %s", connection.tenant_id, reason)
        self._repository.deactivate(connection.tenant_id, reason)

    def _active_connection(self) -> XeroConnection:
        connection = self._repository.get_current()
        if connection is None:
            raise XeroAuthError("No Xero connection configured; connect an organisation first")
        if not connection.is_active:
            raise XeroAuthError(
                f"Xero connection is inactive ({connection.deactivated_reason or 'no reason recorded'}); reauthorise"
            )
        return connection
