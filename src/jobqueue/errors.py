"""
Job queue exceptions.

Validation errors are raised synchronously to the caller. Singleton
rejections are not errors: publish returns None instead.
"""


class QueueError(Exception):
    """Base exception for all job queue errors."""
    pass


class ValidationError(QueueError):
    """
    Raised when an operation receives bad arguments.

    Examples:
    - Publishing or subscribing without a name
    - Option values of the wrong type or out of range
    - complete/fail/cancel with an empty id list
    """
    pass


class SchemaError(QueueError):
    """
    Raised when the job tables are missing or at an unexpected version.

    Fatal at startup: surfaced before any worker begins polling.
    """

    def __init__(self, message: str, found_version: str | None = None):
        self.found_version = found_version
        super().__init__(message)


class WorkerStateError(QueueError):
    """Raised on an invalid worker lifecycle call (e.g. starting twice)."""

    def __init__(self, name: str, state: str):
        self.name = name
        self.state = state
        super().__init__(f"Cannot start worker for '{name}' in {state} state")
