"""
Error taxonomy for the CRM sync layer.

NetworkFailure is retryable (the mutation gets queued), RequestRejected is
terminal for the attempt and surfaces to the caller. AuthExpired is raised
after the one transparent refresh-and-retry has already failed.
"""
from typing import Optional

from config.sync_config import SyncConfig


class SyncError(Exception):
    """Base class for sync layer errors."""
    pass


class NetworkFailure(SyncError):
    """Connectivity error or timeout talking to the CRM API."""
    pass


class RequestRejected(SyncError):
    """The CRM API answered with a non-2xx status."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        self.message = message or SyncConfig.DEFAULT_ERROR_MESSAGE
        super().__init__(self.message)

    @property
    def is_not_found(self) -> bool:
        return self.status_code == SyncConfig.NOT_FOUND_STATUS


class AuthExpired(RequestRejected):
    """Session expired and the refresh token could not renew it."""

    def __init__(self, message: str = "Session expired"):
        super().__init__(401, message)


class EntityNotFound(SyncError):
    """No snapshot for the requested entity in memory or in the cache."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class PayloadInvalid(SyncError):
    """Mutation payload failed validation for its entity kind."""

    def __init__(self, kind: str, errors: list):
        self.kind = kind
        self.errors = errors
        super().__init__(f"Invalid {kind} payload: {errors}")


class UndoExpired(SyncError):
    """Restore requested after the undo window closed (or for an unknown delete)."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"Undo window for {kind} {entity_id} has expired")
