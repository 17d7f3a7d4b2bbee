"""Error taxonomy for the event-sourcing core.

Every error raised by eventide derives from EventSourcingError so callers
can catch the whole family at a boundary, while the concrete classes carry
enough structured data to decide between retrying, reloading, or surfacing
the failure to the command initiator.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .event import DomainEvent


class EventSourcingError(Exception):
    """Base class for all eventide errors."""


class ConcurrencyConflict(EventSourcingError):
    """Raised when an optimistic concurrency check fails on append.

    The stream was modified between the moment the caller read its head and
    the moment it tried to append. This is recoverable: reload the aggregate
    and retry the operation.

    Attributes:
        stream_id: The stream the append targeted.
        expected_version: The head version the caller believed in.
        actual_version: The head version found in the store.
    """

    def __init__(self, stream_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Expected version {expected_version}, got {actual_version} "
            f"for stream {stream_id!r}"
        )
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StreamNotFound(EventSourcingError):
    """Raised when loading a stream that has no events and no snapshot."""

    def __init__(self, stream_id: str):
        super().__init__(f"Stream {stream_id!r} does not exist")
        self.stream_id = stream_id


class StreamTypeMismatch(EventSourcingError):
    """Raised when appending to a stream under a different stream type."""

    def __init__(self, stream_id: str, expected_type: str, actual_type: str):
        super().__init__(
            f"Stream {stream_id!r} has type {actual_type!r}, not {expected_type!r}"
        )
        self.stream_id = stream_id
        self.expected_type = expected_type
        self.actual_type = actual_type


class DomainRuleViolation(EventSourcingError):
    """Raised by aggregate logic when an operation is rejected.

    Terminal: the command is invalid for the current state and retrying it
    will not help. Surfaced to the command initiator as-is.
    """


class UpcastFailure(EventSourcingError):
    """Raised when a historical event cannot be brought to a known schema.

    Attributes:
        event_type: Type of the offending event.
        schema_version: Schema version the event was at when resolution failed.
    """

    def __init__(self, message: str, event_type: str, schema_version: int):
        super().__init__(message)
        self.event_type = event_type
        self.schema_version = schema_version


class ProjectionHandlerFailure(EventSourcingError):
    """Raised when a projection handler fails for an event.

    Attributes:
        projection_name: The projection whose handler failed.
        event: The event being handled.
        attempts: How many times the handler was tried.
    """

    def __init__(
        self,
        projection_name: str,
        event: "DomainEvent",
        attempts: int,
        cause: BaseException,
    ):
        super().__init__(
            f"Projection {projection_name!r} failed on event {event.event_id} "
            f"(position {event.position}) after {attempts} attempt(s): {cause!r}"
        )
        self.projection_name = projection_name
        self.event = event
        self.attempts = attempts
        self.__cause__ = cause


class RetriesExhausted(EventSourcingError):
    """Raised when a command kept conflicting until the retry bound was hit.

    This is the "please retry later" condition: nothing was written.
    """

    def __init__(self, stream_id: str, attempts: int, last_error: ConcurrencyConflict):
        super().__init__(
            f"Gave up on stream {stream_id!r} after {attempts} conflicting attempt(s)"
        )
        self.stream_id = stream_id
        self.attempts = attempts
        self.last_error = last_error
        self.__cause__ = last_error


class UnknownProjection(EventSourcingError):
    """Raised when an administrative operation names an unregistered projection."""

    def __init__(self, projection_name: str):
        super().__init__(f"No projection registered under {projection_name!r}")
        self.projection_name = projection_name
