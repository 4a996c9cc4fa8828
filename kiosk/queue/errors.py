"""Domain errors raised by the queue engine."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base error for queue engine issues."""


class CustomerValidationError(QueueError):
    """Raised when kiosk customer fields are missing or malformed."""

    def __init__(self, message: str, *, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class NoWindowAvailableError(QueueError):
    """Raised when no open window serves the requested service."""


class ExhaustedRangeError(QueueError):
    """Raised when every queue number in the configured range is in use."""


class InvalidTransferError(QueueError):
    """Raised when a ticket cannot be moved to the requested window."""


class InvalidTicketTransitionError(QueueError):
    """Raised when attempting to transition to an invalid state."""


class DepartmentClosedError(QueueError):
    """Raised when a department's queue is disabled."""


class WindowUnavailableError(QueueError):
    """Raised when a closed or paused window is asked to serve."""


class QueueNotFoundError(QueueError):
    """Raised when an operation references something that does not exist."""


class TicketNotFoundError(QueueNotFoundError):
    """Raised when a ticket could not be located."""


class WindowNotFoundError(QueueNotFoundError):
    """Raised when a window could not be located."""


class ServiceNotFoundError(QueueNotFoundError):
    """Raised when a service name does not resolve within a department."""


class QueueEmptyError(QueueNotFoundError):
    """Raised when a scope has no ticket eligible for the requested command."""
