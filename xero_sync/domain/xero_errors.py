from __future__ import annotations

from xero_sync.core.errors import ExternalServiceError, TransientExternalError


class XeroAuthError(ExternalServiceError):
    """401/403 or an inactive connection; the organisation must be reauthorised."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class XeroClientError(ExternalServiceError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class XeroRateLimitError(TransientExternalError):
    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class XeroServerError(TransientExternalError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class XeroRetriesExhaustedError(ExternalServiceError):
    def __init__(self, message: str, *, page: int, attempts: int) -> None:
        super().__init__(message)
        self.page = page
        self.attempts = attempts
