from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from kiosk.metrics import MetricsRegistry, register_default_metrics
from kiosk.queue import (
    CustomerInfo,
    CustomerRole,
    Department,
    EventBroadcaster,
    InMemoryQueueRepository,
    PriorityCategory,
    QueueDispatcher,
    QueueStore,
    Service,
    Ticket,
    TicketNumberAllocator,
    TicketStatus,
    Window,
    WindowRouter,
)

SERVICES = (
    Service(id="reg-tor", department=Department.REGISTRAR, name="Transcript Request"),
    Service(id="reg-enroll", department=Department.REGISTRAR, name="Enrollment Verification"),
    Service(id="adm-app", department=Department.ADMISSIONS, name="Application Submission"),
)

WINDOWS = (
    Window(id="reg-w1", department=Department.REGISTRAR, name="Window 1", number=1, service_ids=("reg-tor",), is_open=True),
    Window(
        id="reg-w2",
        department=Department.REGISTRAR,
        name="Window 2",
        number=2,
        service_ids=("reg-tor", "reg-enroll"),
        is_open=True,
    ),
    Window(id="reg-w3", department=Department.REGISTRAR, name="Window 3", number=3, service_ids=("reg-tor",)),
    Window(id="adm-w1", department=Department.ADMISSIONS, name="Window 1", number=1, service_ids=("adm-app",), is_open=True),
)


class FakeClock:
    """Monotonic clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 3, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


def make_customer(
    name: str = "John Doe",
    *,
    priority: PriorityCategory = PriorityCategory.REGULAR,
    role: CustomerRole = CustomerRole.STUDENT,
) -> CustomerInfo:
    return CustomerInfo(name=name, contact="09171234567", role=role, priority=priority)


def make_ticket(
    number: int,
    *,
    department: Department = Department.REGISTRAR,
    window_id: str | None = "reg-w1",
    service_id: str = "reg-tor",
    service_name: str = "Transcript Request",
    priority: PriorityCategory = PriorityCategory.REGULAR,
    status: TicketStatus = TicketStatus.WAITING,
    at: datetime | None = None,
    **changes,
) -> Ticket:
    at = at or datetime(2024, 6, 3, 7, 0, tzinfo=timezone.utc) + timedelta(minutes=number)
    return Ticket(
        id=uuid4(),
        queue_number=number,
        department=department,
        service_id=service_id,
        service_name=service_name,
        window_id=window_id,
        customer=make_customer(f"Customer {number}", priority=priority),
        status=status,
        created_at=at,
        queued_at=at,
        status_changed_at=at,
        **changes,
    )


@pytest.fixture
def registry() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def repository() -> InMemoryQueueRepository:
    return InMemoryQueueRepository(services=SERVICES)


@pytest.fixture
def allocator() -> TicketNumberAllocator:
    return TicketNumberAllocator(minimum=1, maximum=99)


@pytest.fixture
def store(repository, allocator) -> QueueStore:
    return QueueStore(repository, allocator, clock=FakeClock())


@pytest.fixture
def dispatcher_factory(registry):
    """Build a dispatcher over in-memory storage with the standard catalog."""

    def build(
        *,
        windows=WINDOWS,
        shared=(),
        allow_priority: bool = True,
        maximum: int = 99,
        broadcaster: EventBroadcaster | None = None,
        repository: InMemoryQueueRepository | None = None,
    ) -> QueueDispatcher:
        repository = repository or InMemoryQueueRepository(services=SERVICES)
        allocator = TicketNumberAllocator(minimum=1, maximum=maximum)
        store = QueueStore(repository, allocator, clock=FakeClock())
        router = WindowRouter(SERVICES, windows, shared_departments=shared)
        return QueueDispatcher(
            store,
            router,
            allocator,
            broadcaster or EventBroadcaster(registry=registry),
            repository=repository,
            allow_priority=allow_priority,
            registry=registry,
        )

    return build


@pytest.fixture
def ticket_factory():
    return make_ticket


@pytest.fixture
def customer_factory():
    return make_customer


@pytest.fixture
def services() -> tuple[Service, ...]:
    return SERVICES


@pytest.fixture
def windows() -> tuple[Window, ...]:
    return WINDOWS
