"""
Learning Errors
===============

Exception types raised by the adaptive learning engine.

Not-found conditions are never errors: lookups return ``None`` or empty
lists. Errors are reserved for bad arguments, storage failures and
cancellation.
"""

from typing import Optional


class LearningError(Exception):
    """Base class for all adaptive learning errors."""


class ValidationError(LearningError, ValueError):
    """A required argument was missing or malformed."""


class InvalidEventType(ValidationError):
    """A progress event carried an event type outside the closed set."""

    def __init__(self, event_type: object):
        self.event_type = event_type
        super().__init__(f"invalid event type: {event_type}")


class InvalidExecutionID(ValidationError):
    """A task execution id was not a positive integer."""

    def __init__(self, execution_id: object):
        self.execution_id = execution_id
        super().__init__(f"invalid task execution ID: {execution_id}")


class StorageError(LearningError):
    """A database operation failed.

    Wraps the underlying driver error together with the name of the
    operation that failed, e.g. ``insert node`` or ``query edges``.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = operation if cause is None else f"{operation}: {cause}"
        super().__init__(message)


class OperationCancelled(LearningError):
    """The caller signalled cancellation before the operation started."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation}: context cancelled")


def check_cancelled(cancel_event, operation: str) -> None:
    """Raise OperationCancelled if ``cancel_event`` (an asyncio.Event) is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(operation)


class SwapRecommendationError(LearningError):
    """The model behind the intelligent agent swap failed or answered unusably."""
