from __future__ import annotations

from enum import Enum

from .errors import InvalidTicketTransitionError


class TicketStatus(str, Enum):
    """Supported states for a queue ticket's lifecycle."""

    WAITING = "waiting"
    SERVING = "serving"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.COMPLETED, TicketStatus.CANCELLED)


class TicketStateMachine:
    """Validate queue ticket lifecycle transitions."""

    # serving -> waiting only happens when a ticket is transferred to another window
    _TRANSITIONS: dict[TicketStatus, set[TicketStatus]] = {
        TicketStatus.WAITING: {TicketStatus.SERVING, TicketStatus.SKIPPED, TicketStatus.CANCELLED},
        TicketStatus.SERVING: {TicketStatus.COMPLETED, TicketStatus.CANCELLED, TicketStatus.WAITING},
        TicketStatus.SKIPPED: {TicketStatus.WAITING, TicketStatus.CANCELLED},
        TicketStatus.COMPLETED: set(),
        TicketStatus.CANCELLED: set(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.WAITING

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, set())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise InvalidTicketTransitionError(f"Invalid ticket status transition: {current.value} -> {new.value}")
