from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class MissingParentError(ValidationError):
    """The record points at a parent entity that was never synced locally."""

    def __init__(self, message: str, *, parent_type: str, parent_xero_id: str) -> None:
        super().__init__(message)
        self.parent_type = parent_type
        self.parent_xero_id = parent_xero_id


class MalformedRecordError(ValidationError):
    pass


class ConflictNotFoundError(BusinessError):
    pass


class SyncAlreadyRunningError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass
