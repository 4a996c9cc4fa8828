"""Queue-ticket lifecycle and window dispatch engine."""

from .allocator import TicketNumberAllocator
from .dispatcher import (
    CommandResult,
    PublicQueueView,
    PublicTicket,
    QueueDispatcher,
    ServiceListing,
    SubmissionResult,
    build_customer,
    validate_customer,
)
from .errors import (
    CustomerValidationError,
    DepartmentClosedError,
    ExhaustedRangeError,
    InvalidTicketTransitionError,
    InvalidTransferError,
    NoWindowAvailableError,
    QueueEmptyError,
    QueueError,
    QueueNotFoundError,
    ServiceNotFoundError,
    TicketNotFoundError,
    WindowNotFoundError,
    WindowUnavailableError,
)
from .events import EventBroadcaster, EventType, QueueEvent
from .models import CustomerInfo, CustomerRole, Department, PriorityCategory, QueueScope, Service, Ticket, Window
from .repository import InMemoryQueueRepository, PostgresQueueRepository, QueueRepository
from .routing import WindowRouter
from .state import TicketStateMachine, TicketStatus
from .store import QueueStore

__all__ = [
    "CommandResult",
    "CustomerInfo",
    "CustomerRole",
    "CustomerValidationError",
    "Department",
    "DepartmentClosedError",
    "EventBroadcaster",
    "EventType",
    "ExhaustedRangeError",
    "InMemoryQueueRepository",
    "InvalidTicketTransitionError",
    "InvalidTransferError",
    "NoWindowAvailableError",
    "PostgresQueueRepository",
    "PriorityCategory",
    "PublicQueueView",
    "PublicTicket",
    "QueueDispatcher",
    "ServiceListing",
    "QueueEmptyError",
    "QueueError",
    "QueueEvent",
    "QueueNotFoundError",
    "QueueRepository",
    "QueueScope",
    "QueueStore",
    "Service",
    "ServiceNotFoundError",
    "SubmissionResult",
    "Ticket",
    "TicketNotFoundError",
    "TicketNumberAllocator",
    "TicketStateMachine",
    "TicketStatus",
    "Window",
    "WindowNotFoundError",
    "WindowRouter",
    "WindowUnavailableError",
    "build_customer",
    "validate_customer",
]
