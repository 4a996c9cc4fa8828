from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from .state import TicketStatus


def utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class Department(str, Enum):
    """Offices that run a kiosk queue."""

    REGISTRAR = "registrar"
    ADMISSIONS = "admissions"


class CustomerRole(str, Enum):
    """Roles a kiosk customer can pick."""

    VISITOR = "Visitor"
    STUDENT = "Student"
    TEACHER = "Teacher"
    ALUMNI = "Alumni"


class PriorityCategory(str, Enum):
    """Priority lanes; everything except ``REGULAR`` jumps ahead of regular tickets."""

    REGULAR = "regular"
    PWD = "pwd"
    SENIOR_CITIZEN = "senior_citizen"
    PREGNANT = "pregnant"

    @property
    def is_priority(self) -> bool:
        return self is not PriorityCategory.REGULAR


@dataclass(slots=True, frozen=True)
class QueueScope:
    """A department queue, optionally narrowed to a single service window.

    ``window_id`` is ``None`` for departments that run one shared queue.
    """

    department: Department
    window_id: str | None = None

    @property
    def is_unscoped(self) -> bool:
        return self.window_id is None

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.department.value, self.window_id or "")

    def __str__(self) -> str:
        return f"{self.department.value}/{self.window_id or '*'}"


@dataclass(slots=True, frozen=True)
class Service:
    """Service offered by a department."""

    id: str
    department: Department
    name: str
    category: str = ""
    estimated_minutes: int = 5
    is_active: bool = True


@dataclass(slots=True, frozen=True)
class Window:
    """Service window staffed by an operator."""

    id: str
    department: Department
    name: str
    number: int
    service_ids: tuple[str, ...] = ()
    is_open: bool = False
    is_paused: bool = False
    operator: str | None = None

    def serves(self, service_id: str) -> bool:
        return service_id in self.service_ids


@dataclass(slots=True, frozen=True)
class CustomerInfo:
    """Customer details captured by the kiosk form."""

    name: str
    contact: str
    role: CustomerRole
    priority: PriorityCategory = PriorityCategory.REGULAR
    email: str | None = None
    address: str | None = None
    id_number: str | None = None


@dataclass(slots=True, frozen=True)
class Ticket:
    """Queue entry issued by the kiosk."""

    id: UUID
    queue_number: int
    department: Department
    service_id: str
    service_name: str
    window_id: str | None
    customer: CustomerInfo
    status: TicketStatus
    created_at: datetime
    queued_at: datetime
    status_changed_at: datetime
    called_at: datetime | None = None
    completed_at: datetime | None = None
    skipped_at: datetime | None = None
    cancelled_at: datetime | None = None
    rating: int | None = None
    processed_by: str | None = None

    @property
    def scope(self) -> QueueScope:
        return QueueScope(self.department, self.window_id)

    @property
    def is_priority(self) -> bool:
        return self.customer.priority.is_priority

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


@dataclass(slots=True, frozen=True)
class ScopeSnapshot:
    """Consistent view of a scope at one instant."""

    scope: QueueScope
    waiting: tuple[Ticket, ...]
    serving: Ticket | None
    skipped: tuple[Ticket, ...]
    displayed_number: int
    window: Window | None = None
    taken_at: datetime = field(default_factory=utcnow)

    @property
    def window_label(self) -> str | None:
        return self.window.name if self.window is not None else None
