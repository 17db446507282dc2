class SyncError(Exception):
    """Base class for errors raised by the sync core."""


class RemoteError(SyncError):
    """A write or read against the remote tracking service failed."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network-level or throttling failure. Safe to retry later."""


class FatalRemoteError(RemoteError):
    """The remote service rejected the request. Retrying it unchanged will not help."""


class UnregisteredOperationError(SyncError):
    """Raised when a mutation is enqueued for an operation type with no processor."""

    def __init__(self, op_type: str):
        super().__init__(f"No processor registered for operation type '{op_type}'")
        self.op_type = op_type
