"""Exception hierarchy for the storage layer.

Corrupt or unreadable data is never raised; it is logged and skipped
where it is read. Subprocess failures travel as stream error events.
"""


class StorageError(Exception):
    """Base exception for all storage adapter errors."""


class InvalidArgumentError(StorageError):
    """Malformed session id or missing required field. Raised before any I/O."""


class NotFoundError(StorageError):
    """No backing record for the requested session."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class UnsupportedOperationError(StorageError):
    """The active store cannot perform this operation."""

    def __init__(self, operation: str, mode: str):
        self.operation = operation
        self.mode = mode
        super().__init__(f"{operation} is not supported in {mode} mode")
