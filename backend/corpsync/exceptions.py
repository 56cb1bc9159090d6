"""
Sync Error Taxonomy

Every failure raised inside a sync pipeline carries the error kind it is
recorded under in the sync error log.
"""
from typing import Optional


# Error kinds (values match the persisted error log format)
KIND_ESI_API = 'esi_api'
KIND_DATABASE = 'database'
KIND_AUTH = 'auth'
KIND_NETWORK = 'network'
KIND_VALIDATION = 'validation'
KIND_UNKNOWN = 'unknown'


class SyncFailure(Exception):
    """Base class for failures raised by the sync core."""

    kind = KIND_UNKNOWN

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class EsiApiError(SyncFailure):
    """ESI answered with a non-success status (after retries where applicable)."""

    kind = KIND_ESI_API

    def __init__(self, message: str, status: Optional[int] = None,
                 url: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.status = status
        self.url = url


class EsiNetworkError(SyncFailure):
    """Transport failure talking to ESI (DNS, connection reset, timeout)."""

    kind = KIND_NETWORK

    def __init__(self, message: str, url: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message, detail)
        self.url = url


class AuthError(SyncFailure):
    """Credential missing, invalid, under-scoped or refresh rejected."""

    kind = KIND_AUTH


class StorageError(SyncFailure):
    """The storage collaborator failed to persist a batch."""

    kind = KIND_DATABASE


class ResponseValidationError(SyncFailure):
    """An ESI response body did not have the expected shape."""

    kind = KIND_VALIDATION


class ConflictError(Exception):
    """A run was requested for a process that is already running."""

    def __init__(self, process_id: str):
        super().__init__(f"Process '{process_id}' is already running")
        self.process_id = process_id
