"""Error taxonomy shared by the sync engine, mutation queue and outbox."""

from typing import Optional

# Storage error kinds that a reopen or schema rebuild can fix.
RECOVERABLE_STORAGE_ERRORS = {
    "OperationalError",
    "VersionError",
    "InvalidStateError",
    "NotFoundError",
    "TimeoutError",
}


class MailSyncError(Exception):
    """Base class for all errors raised inside the sync core."""


class AuthError(MailSyncError):
    """No credentials were supplied for a remote operation."""


class RemoteError(MailSyncError):
    """A remote API call failed (transport error or non-2xx response).

    Transient failures and permanent rejections are not told apart by the
    retry policy; both consume one retry attempt.
    """

    def __init__(self, message: str, action: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.action = action
        self.status_code = status_code


class StorageError(MailSyncError):
    """Durable storage is unavailable or corrupt."""

    def __init__(self, message: str, error_name: str = "UnknownError", recoverable: Optional[bool] = None):
        super().__init__(message)
        self.error_name = error_name
        if recoverable is None:
            recoverable = error_name in RECOVERABLE_STORAGE_ERRORS
        self.recoverable = recoverable

    def to_event(self) -> dict:
        return {
            "type": "dbError",
            "error": str(self),
            "error_name": self.error_name,
            "recoverable": self.recoverable,
        }


class ConcurrentModificationError(StorageError):
    """A compare-and-swap write lost against another writer."""

    def __init__(self, key: str):
        super().__init__(f"Concurrent modification of {key}", "ConcurrentModificationError", True)
        self.key = key
