"""Error taxonomy for calendar membership, caching, and recurrence operations.

Every error raised by the core derives from :class:`AlmanacError` and carries a
stable :class:`ErrorKind` so that callers (dialogs, toasts, CLI output) can map
failures to a distinct, actionable message via :func:`describe_error` instead
of matching on exception text.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable identifiers for every failure the core can report."""

    invalid_format = "invalid_format"
    already_present = "already_present"
    not_present = "not_present"
    container_not_found = "container_not_found"
    invalid_date = "invalid_date"
    cancelled = "cancelled"
    publish_failed = "publish_failed"
    not_authenticated = "not_authenticated"
    query_failed = "query_failed"
    invalid_recurrence = "invalid_recurrence"


class AlmanacError(Exception):
    """Base error for all core failures."""

    kind: ErrorKind

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self.kind]


class InvalidCoordinateError(AlmanacError, ValueError):
    """Raised when a string is not a well-formed ``type:author:slug`` coordinate."""

    kind = ErrorKind.invalid_format

    def __init__(self, value: str, reason: str) -> None:
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid coordinate {value!r}: {reason}")


class ReferenceAlreadyPresentError(AlmanacError):
    """Raised when adding a reference the container already lists."""

    kind = ErrorKind.already_present

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Event is already in this calendar: {reference}")


class ReferenceNotPresentError(AlmanacError):
    """Raised when removing a reference the container does not list."""

    kind = ErrorKind.not_present

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Event is not in this calendar: {reference}")


class ContainerNotFoundError(AlmanacError):
    """Raised when no version of a container is returned for its coordinate."""

    kind = ErrorKind.container_not_found

    def __init__(self, coordinate: str, *, timed_out: bool = False) -> None:
        self.coordinate = coordinate
        self.timed_out = timed_out
        suffix = " (query timed out)" if timed_out else ""
        super().__init__(f"Calendar not found: {coordinate}{suffix}")


class InvalidDateError(AlmanacError, ValueError):
    """Raised when a seed date does not parse as a calendar date."""

    kind = ErrorKind.invalid_date

    def __init__(self, label: str, value: object) -> None:
        self.label = label
        self.value = value
        super().__init__(f"Invalid {label}: {value}")


class MutationCancelledError(AlmanacError):
    """Raised when a caller-supplied cancellation signal aborts a network step."""

    kind = ErrorKind.cancelled

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"Operation cancelled during {stage}")


class PublishFailedError(AlmanacError):
    """Raised when the broadcast capability rejects, errors, or times out."""

    kind = ErrorKind.publish_failed

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Failed to publish record: {message}")


class NotAuthenticatedError(AlmanacError):
    """Raised by signers when no identity is available."""

    kind = ErrorKind.not_authenticated

    def __init__(self, message: str = "No signing identity is available") -> None:
        super().__init__(message)


class QueryFailedError(AlmanacError):
    """Raised when the network client fails a query outright."""

    kind = ErrorKind.query_failed

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Record query failed: {message}")


class InvalidRecurrenceError(AlmanacError, ValueError):
    """Raised when expansion is attempted on a configuration that fails validation."""

    kind = ErrorKind.invalid_recurrence

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid recurrence configuration: " + "; ".join(self.errors))


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.invalid_format: "That calendar link is not valid. Check the address and try again.",
    ErrorKind.already_present: "This event is already in the calendar.",
    ErrorKind.not_present: "This event is not in the calendar.",
    ErrorKind.container_not_found: (
        "The calendar could not be found on any relay. Try again in a moment."
    ),
    ErrorKind.invalid_date: "One of the event dates is not a valid date.",
    ErrorKind.cancelled: "The change was cancelled before it finished.",
    ErrorKind.publish_failed: "Relays did not accept the update. Try again.",
    ErrorKind.not_authenticated: "Log in to make this change.",
    ErrorKind.query_failed: "Relays could not be reached. Check your connection and retry.",
    ErrorKind.invalid_recurrence: "Fix the repeat settings before creating the series.",
}

_GENERIC_MESSAGE = "Something went wrong. Please try again."


def describe_error(exc: BaseException) -> str:
    """Return the user-facing message for *exc*."""
    if isinstance(exc, AlmanacError):
        return exc.user_message
    return _GENERIC_MESSAGE
