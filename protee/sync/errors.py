"""Error kinds raised by the sync engine."""


class SyncError(Exception):
    """Base class. ``retryable`` errors are expected to clear on a later pass."""

    retryable = False


class TransientTransportError(SyncError):
    """Network unreachable, timeout, or a 5xx / 429 from the backend."""

    retryable = True


class AuthorizationError(SyncError):
    """Not signed in, or the session was rejected / could not be refreshed."""


class RemoteRejectedError(SyncError):
    """The backend refused a specific request (validation, constraint)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedDataError(SyncError):
    """A remote row could not be parsed into a record."""


class LocalStorageError(SyncError):
    """A local transaction failed; fatal to the current pass."""


class SyncNotConfiguredError(SyncError):
    """Remote sync is disabled or the backend is not configured."""
