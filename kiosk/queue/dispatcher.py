from __future__ import annotations

import asyncio
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Iterator
from uuid import UUID, uuid4

from opentelemetry import trace

from kiosk.core.config import Settings
from kiosk.core.logging import queue_log_scope
from kiosk.metrics import MetricsRegistry, metrics_registry
from kiosk.metrics.definitions import (
    ADMIN_COMMANDS,
    PUBLISH_FAILURES,
    TICKET_WAIT_SECONDS,
    TICKETS_ISSUED,
    WAITING_TICKETS,
)

from .allocator import TicketNumberAllocator
from .errors import (
    CustomerValidationError,
    DepartmentClosedError,
    QueueNotFoundError,
    WindowNotFoundError,
    WindowUnavailableError,
)
from .events import EventBroadcaster, EventType, QueueEvent
from .migration import migrate_window_documents
from .models import (
    CustomerInfo,
    CustomerRole,
    Department,
    PriorityCategory,
    QueueScope,
    ScopeSnapshot,
    Service,
    Ticket,
    Window,
)
from .repository import QueueRepository
from .routing import WindowRouter
from .state import TicketStateMachine
from .store import QueueStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_CONTACT_ALLOWED_RE = re.compile(r"^\+?[\d\s\-().]+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_department(value: Department | str) -> Department:
    if isinstance(value, Department):
        return value
    try:
        return Department(str(value).strip().lower())
    except ValueError as exc:
        raise QueueNotFoundError(f"Unknown department '{value}'") from exc


def validate_customer(customer: CustomerInfo) -> CustomerInfo:
    """Trim and check kiosk customer fields. Returns the normalized customer."""

    name = (customer.name or "").strip()
    contact = (customer.contact or "").strip()
    missing = tuple(field for field, value in (("name", name), ("contact", contact)) if not value)
    if missing:
        raise CustomerValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)

    digits = re.sub(r"\D", "", contact)
    if not _CONTACT_ALLOWED_RE.match(contact) or not 7 <= len(digits) <= 15:
        raise CustomerValidationError("Contact number must contain 7 to 15 digits", fields=("contact",))

    email = (customer.email or "").strip() or None
    if email is not None and not _EMAIL_RE.match(email):
        raise CustomerValidationError("Email address is malformed", fields=("email",))

    return replace(
        customer,
        name=name,
        contact=contact,
        email=email,
        address=(customer.address or "").strip() or None,
        id_number=(customer.id_number or "").strip() or None,
    )


def build_customer(
    *,
    name: str,
    contact: str,
    role: CustomerRole | str,
    priority: PriorityCategory | str = PriorityCategory.REGULAR,
    email: str | None = None,
    address: str | None = None,
    id_number: str | None = None,
) -> CustomerInfo:
    """Build a validated customer from raw kiosk form values."""

    try:
        parsed_role = role if isinstance(role, CustomerRole) else CustomerRole(str(role).strip())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in CustomerRole)
        raise CustomerValidationError(f"Invalid role. Must be one of: {allowed}", fields=("role",)) from exc
    try:
        parsed_priority = priority if isinstance(priority, PriorityCategory) else PriorityCategory(str(priority))
    except ValueError as exc:
        raise CustomerValidationError(f"Invalid priority category '{priority}'", fields=("priority",)) from exc

    return validate_customer(
        CustomerInfo(
            name=name,
            contact=contact,
            role=parsed_role,
            priority=parsed_priority,
            email=email,
            address=address,
            id_number=id_number,
        )
    )


def announcement_for(number: int, destination: str, *, verb: str = "proceed to") -> str:
    return f"Queue number {number:02d} please {verb} {destination}"


@dataclass(slots=True, frozen=True)
class PublicTicket:
    """Ticket fields safe to show on public displays."""

    id: UUID
    queue_number: int
    service_name: str
    window_id: str | None
    window_name: str | None
    is_priority: bool
    status: str
    queued_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "queue_number": self.queue_number,
            "service_name": self.service_name,
            "window_id": self.window_id,
            "window_name": self.window_name,
            "is_priority": self.is_priority,
            "status": self.status,
            "queued_at": self.queued_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    ticket: Ticket
    window: Window | None
    waiting_ahead: int
    estimated_wait_minutes: int

    @property
    def window_label(self) -> str | None:
        return self.window.name if self.window is not None else None

    @property
    def qr_code(self) -> str:
        return f"QR-{self.ticket.department.value.upper()}-{self.ticket.queue_number:02d}"


@dataclass(slots=True, frozen=True)
class CommandResult:
    command: str
    snapshot: ScopeSnapshot
    ticket: Ticket | None = None
    announcement: str | None = None


@dataclass(slots=True, frozen=True)
class WindowSummary:
    window: Window
    current_number: int
    next_number: int | None
    waiting_count: int


@dataclass(slots=True, frozen=True)
class PublicQueueView:
    department: Department
    is_enabled: bool
    window_id: str | None
    waiting: tuple[PublicTicket, ...]
    serving: PublicTicket | None
    current_number: int
    windows: tuple[WindowSummary, ...]
    message: str | None = None


@dataclass(slots=True, frozen=True)
class ServiceListing:
    department: Department
    is_enabled: bool
    services: tuple[Service, ...]
    message: str | None = None


def closed_message(department: Department) -> str:
    return f"{department.value.capitalize()} office is currently closed"


class QueueDispatcher:
    """Orchestrates kiosk submissions and staff commands over the queue store."""

    def __init__(
        self,
        store: QueueStore,
        router: WindowRouter,
        allocator: TicketNumberAllocator,
        broadcaster: EventBroadcaster,
        *,
        repository: QueueRepository | None = None,
        average_service_minutes: int = 5,
        allow_priority: bool = True,
        disabled_departments: Iterable[Department] = (),
        registry: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.router = router
        self.allocator = allocator
        self.broadcaster = broadcaster
        self._repository = repository
        self.average_service_minutes = average_service_minutes
        self.allow_priority = allow_priority
        self._disabled = set(disabled_departments)
        self._metrics = registry or metrics_registry
        self._window_lock = asyncio.Lock()
        self.router.bind_load(self.store.active_load)

    @classmethod
    async def bootstrap(
        cls,
        repository: QueueRepository,
        settings: Settings,
        *,
        broadcaster: EventBroadcaster | None = None,
    ) -> "QueueDispatcher":
        """Build a dispatcher from persisted state at process start."""

        await repository.ensure_schema()
        if settings.run_window_migration:
            await migrate_window_documents(repository)

        allocator = TicketNumberAllocator(minimum=settings.queue_number_min, maximum=settings.queue_number_max)
        store = QueueStore(repository, allocator)
        router = WindowRouter(
            await repository.list_services(),
            await repository.list_windows(),
            aliases=settings.service_aliases,
            shared_departments=[parse_department(value) for value in settings.shared_queue_departments],
        )
        await store.load(await repository.list_active_tickets())
        return cls(
            store,
            router,
            allocator,
            broadcaster or EventBroadcaster(queue_size=settings.subscriber_queue_size),
            repository=repository,
            average_service_minutes=settings.average_service_minutes,
            allow_priority=settings.allow_priority_queue,
            disabled_departments=[parse_department(value) for value in settings.disabled_departments],
        )

    # ------------------------------------------------------------------ departments

    def is_enabled(self, department: Department) -> bool:
        return department not in self._disabled

    def set_department_enabled(self, department: Department | str, enabled: bool) -> None:
        department = parse_department(department)
        if enabled:
            self._disabled.discard(department)
        else:
            self._disabled.add(department)
        logger.info("%s queue %s", department.value, "enabled" if enabled else "disabled")

    def resolve_scope(self, department: Department | str, window_id: str | None) -> QueueScope:
        return self.router.scope_for(parse_department(department), window_id)

    # ------------------------------------------------------------------ kiosk

    async def submit_ticket(
        self,
        department: Department | str,
        service_name: str,
        customer: CustomerInfo,
    ) -> SubmissionResult:
        with tracer.start_as_current_span("queue.submit_ticket"):
            customer = validate_customer(customer)
            try:
                department = parse_department(department)
            except QueueNotFoundError as exc:
                raise CustomerValidationError(str(exc), fields=("department",)) from exc
            if not self.is_enabled(department):
                raise DepartmentClosedError(closed_message(department))
            if customer.priority.is_priority and not self.allow_priority:
                logger.info("Priority queueing disabled; %s queued as regular", customer.priority.value)
                customer = replace(customer, priority=PriorityCategory.REGULAR)

            target = self.router.route(department, service_name)
            number = self.allocator.allocate(department)
            now = self.store.now()
            ticket = Ticket(
                id=uuid4(),
                queue_number=number,
                department=department,
                service_id=target.service.id,
                service_name=target.service.name,
                window_id=target.window.id if target.window else None,
                customer=customer,
                status=TicketStateMachine.initial_state(),
                created_at=now,
                queued_at=now,
                status_changed_at=now,
            )
            try:
                with queue_log_scope(ticket.scope):
                    ahead = await self.store.enqueue(ticket)
            except BaseException:
                self.allocator.release(department, number)
                raise

        self._metrics.counter(TICKETS_ISSUED, label_names=("department", "priority")).inc(
            labels={"department": department.value, "priority": customer.priority.value}
        )
        result = SubmissionResult(
            ticket=ticket,
            window=target.window,
            waiting_ahead=ahead,
            estimated_wait_minutes=ahead * self.average_service_minutes,
        )
        self._emit(
            EventType.TICKET_CREATED,
            ticket.scope,
            {
                "ticket": self._public_ticket(ticket).to_dict(),
                "current_number": number,
                "next_number": self.allocator.minimum if number >= self.allocator.maximum else number + 1,
            },
        )
        self._emit_snapshot("submit", ticket.scope)
        logger.info(
            "Issued #%02d for %s/%s at %s (wait ~%d min)",
            number,
            department.value,
            target.service.name,
            result.window_label or "shared queue",
            result.estimated_wait_minutes,
        )
        return result

    async def cancel(self, ticket_id: UUID, *, actor: str | None = None) -> Ticket:
        cancelled = await self.store.cancel(ticket_id, actor=actor)
        self._count_command(cancelled.department, "cancel")
        self._emit_snapshot("cancel", cancelled.scope)
        return cancelled

    async def rate_ticket(self, ticket_id: UUID, rating: int) -> Ticket:
        if not 1 <= rating <= 5:
            raise CustomerValidationError("Invalid rating. Must be between 1 and 5", fields=("rating",))
        return await self.store.rate(ticket_id, rating)

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        return await self.store.get_ticket(ticket_id)

    # ------------------------------------------------------------------ views

    def get_scope_snapshot(self, department: Department | str, window_id: str | None) -> ScopeSnapshot:
        scope = self.resolve_scope(department, window_id)
        return self._snapshot(scope)

    def get_public_view(self, department: Department | str, window_id: str | None = None) -> PublicQueueView:
        department = parse_department(department)
        summaries = tuple(self._window_summary(window) for window in self.router.windows_for(department, open_only=True))
        if not self.is_enabled(department):
            return PublicQueueView(
                department=department,
                is_enabled=False,
                window_id=window_id,
                waiting=(),
                serving=None,
                current_number=0,
                windows=(),
                message=closed_message(department),
            )

        if window_id is not None or self.router.is_shared(department):
            snapshot = self._snapshot(self.resolve_scope(department, window_id))
            return PublicQueueView(
                department=department,
                is_enabled=True,
                window_id=window_id,
                waiting=tuple(self._public_ticket(ticket) for ticket in snapshot.waiting),
                serving=self._public_ticket(snapshot.serving) if snapshot.serving else None,
                current_number=snapshot.displayed_number,
                windows=summaries,
            )

        snapshots = [self._snapshot(scope) for scope in self.store.scopes(department)]
        waiting = sorted(
            (ticket for snapshot in snapshots for ticket in snapshot.waiting),
            key=lambda ticket: (not ticket.is_priority, ticket.queued_at),
        )
        serving = [snapshot.serving for snapshot in snapshots if snapshot.serving is not None]
        latest = max(serving, key=lambda ticket: ticket.called_at or ticket.queued_at, default=None)
        return PublicQueueView(
            department=department,
            is_enabled=True,
            window_id=None,
            waiting=tuple(self._public_ticket(ticket) for ticket in waiting),
            serving=self._public_ticket(latest) if latest else None,
            current_number=latest.queue_number if latest else 0,
            windows=summaries,
        )

    def list_open_windows(self, department: Department | str) -> list[Window]:
        return self.router.windows_for(parse_department(department), open_only=True)

    def list_visible_services(self, department: Department | str) -> ServiceListing:
        """Services the kiosk may offer; empty while the department is closed."""

        department = parse_department(department)
        if not self.is_enabled(department):
            return ServiceListing(department, is_enabled=False, services=(), message=closed_message(department))
        return ServiceListing(department, is_enabled=True, services=tuple(self.router.visible_services(department)))

    # ------------------------------------------------------------------ staff commands

    async def call_next(self, department: Department | str, window_id: str | None, *, actor: str | None = None) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        window = self._require_serving_window(scope)
        with self._operation("call_next", scope):
            result = await self.store.advance(scope, actor=actor)
        serving = result.serving
        if serving.called_at is not None:
            self._metrics.distribution(TICKET_WAIT_SECONDS, label_names=("department",)).observe(
                (serving.called_at - serving.queued_at).total_seconds(),
                labels={"department": scope.department.value},
            )
        announcement = announcement_for(serving.queue_number, self._destination(scope, window))
        return self._finish("next", scope, ticket=serving, announcement=announcement)

    async def complete(self, department: Department | str, window_id: str | None, *, actor: str | None = None) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        with self._operation("complete", scope):
            completed = await self.store.complete(scope, actor=actor)
        return self._finish("complete", scope, ticket=completed)

    async def skip(self, department: Department | str, window_id: str | None, *, actor: str | None = None) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        with self._operation("skip", scope):
            skipped = await self.store.skip(scope, actor=actor)
        return self._finish("skip", scope, ticket=skipped)

    async def recall(self, department: Department | str, window_id: str | None) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        serving = self.store.recall(scope)
        window = self.router.get_window(scope.window_id) if scope.window_id else None
        announcement = announcement_for(serving.queue_number, self._destination(scope, window))
        return self._finish("recall", scope, ticket=serving, announcement=announcement)

    async def previous(self, department: Department | str, window_id: str | None) -> CommandResult:
        """Display correction only: shows the number before the current one."""

        scope = self.resolve_scope(department, window_id)
        number = await self.store.previous(scope)
        window = self.router.get_window(scope.window_id) if scope.window_id else None
        announcement = announcement_for(number, self._destination(scope, window), verb="return to")
        return self._finish("previous", scope, announcement=announcement)

    async def requeue_skipped(
        self, department: Department | str, window_id: str | None, ticket_id: UUID, *, actor: str | None = None
    ) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        with self._operation("requeue", scope):
            requeued = await self.store.requeue_skipped(scope, ticket_id, actor=actor)
        return self._finish("requeue", scope, ticket=requeued)

    async def requeue_all_skipped(
        self, department: Department | str, window_id: str | None, *, actor: str | None = None
    ) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        with self._operation("requeue_all", scope):
            requeued = await self.store.requeue_all_skipped(scope, actor=actor)
            logger.info("Re-queued %d skipped ticket(s) in %s", len(requeued), scope)
        return self._finish("requeue-all", scope)

    async def transfer(
        self,
        department: Department | str,
        window_id: str | None,
        ticket_id: UUID,
        target_window_id: str,
        *,
        actor: str | None = None,
    ) -> CommandResult:
        scope = self.resolve_scope(department, window_id)
        ticket = await self.store.get_ticket(ticket_id)
        if ticket.scope != scope:
            raise QueueNotFoundError(f"Ticket #{ticket.queue_number} is not queued in {scope}")
        target = self.router.get_window(target_window_id)
        with self._operation("transfer", scope):
            moved = await self.store.transfer(ticket_id, target, actor=actor)
        announcement = announcement_for(moved.queue_number, target.name)
        self._emit_snapshot("transfer", moved.scope, announcement=announcement)
        return self._finish("transfer", scope, ticket=moved, announcement=announcement)

    async def stop(self, department: Department | str, window_id: str | None, *, paused: bool = True) -> CommandResult:
        """Pause (or resume) calling at a window without closing it to new tickets."""

        scope = self.resolve_scope(department, window_id)
        if scope.window_id is None:
            raise WindowNotFoundError("Pausing requires a service window")
        await self._update_window(scope.window_id, is_paused=paused)
        return self._finish("stop" if paused else "resume", scope)

    async def set_window_open(self, window_id: str, is_open: bool) -> Window:
        window = await self._update_window(window_id, is_open=is_open)
        self._emit_snapshot("open" if is_open else "close", QueueScope(window.department, window.id))
        return window

    # ------------------------------------------------------------------ internals

    @contextmanager
    def _operation(self, name: str, scope: QueueScope) -> Iterator[None]:
        with queue_log_scope(scope), tracer.start_as_current_span(f"queue.{name}") as span:
            span.set_attribute("queue.department", scope.department.value)
            span.set_attribute("queue.window", scope.window_id or "shared")
            yield

    async def _update_window(self, window_id: str, **changes: Any) -> Window:
        async with self._window_lock:
            window = replace(self.router.get_window(window_id), **changes)
            if self._repository is not None:
                await self._repository.save_window(window)
            self.router.update_window(window)
        logger.info("Window %s updated: %s", window.name, changes)
        return window

    def _require_serving_window(self, scope: QueueScope) -> Window | None:
        if scope.window_id is None:
            return None
        window = self.router.get_window(scope.window_id)
        if not window.is_open:
            raise WindowUnavailableError(f"{window.name} is currently closed")
        if window.is_paused:
            raise WindowUnavailableError(f"{window.name} is paused")
        return window

    def _destination(self, scope: QueueScope, window: Window | None) -> str:
        if window is not None:
            return window.name
        return f"the {scope.department.value} office"

    def _snapshot(self, scope: QueueScope) -> ScopeSnapshot:
        window = self.router.get_window(scope.window_id) if scope.window_id else None
        return self.store.snapshot(scope, window=window)

    def _window_summary(self, window: Window) -> WindowSummary:
        snapshot = self.store.snapshot(QueueScope(window.department, window.id), window=window)
        return WindowSummary(
            window=window,
            current_number=snapshot.displayed_number,
            next_number=snapshot.waiting[0].queue_number if snapshot.waiting else None,
            waiting_count=len(snapshot.waiting),
        )

    def _public_ticket(self, ticket: Ticket) -> PublicTicket:
        window_name = None
        if ticket.window_id is not None:
            try:
                window_name = self.router.get_window(ticket.window_id).name
            except WindowNotFoundError:
                window_name = None
        return PublicTicket(
            id=ticket.id,
            queue_number=ticket.queue_number,
            service_name=ticket.service_name,
            window_id=ticket.window_id,
            window_name=window_name,
            is_priority=ticket.is_priority,
            status=ticket.status.value,
            queued_at=ticket.queued_at,
        )

    def _count_command(self, department: Department, command: str) -> None:
        self._metrics.counter(ADMIN_COMMANDS, label_names=("department", "command")).inc(
            labels={"department": department.value, "command": command}
        )

    def _finish(
        self,
        command: str,
        scope: QueueScope,
        *,
        ticket: Ticket | None = None,
        announcement: str | None = None,
    ) -> CommandResult:
        self._count_command(scope.department, command)
        snapshot = self._emit_snapshot(command, scope, announcement=announcement)
        return CommandResult(command=command, snapshot=snapshot, ticket=ticket, announcement=announcement)

    def _emit_snapshot(self, command: str, scope: QueueScope, *, announcement: str | None = None) -> ScopeSnapshot:
        snapshot = self._snapshot(scope)
        self._metrics.gauge(WAITING_TICKETS, label_names=("department", "window")).set(
            len(snapshot.waiting), labels={"department": scope.department.value, "window": scope.window_id or "shared"}
        )
        self._emit(EventType.QUEUE_UPDATE, scope, self.snapshot_payload(snapshot, command=command, announcement=announcement))
        return snapshot

    def snapshot_payload(
        self, snapshot: ScopeSnapshot, *, command: str | None = None, announcement: str | None = None
    ) -> dict[str, Any]:
        return {
            "command": command,
            "announcement": announcement,
            "window_name": snapshot.window_label,
            "current_number": snapshot.displayed_number,
            "serving": self._public_ticket(snapshot.serving).to_dict() if snapshot.serving else None,
            "waiting": [self._public_ticket(ticket).to_dict() for ticket in snapshot.waiting],
            "skipped": [ticket.queue_number for ticket in snapshot.skipped],
        }

    def _emit(self, event_type: EventType, scope: QueueScope, payload: dict[str, Any]) -> None:
        event = QueueEvent(
            type=event_type,
            department=scope.department.value,
            window_id=scope.window_id,
            payload=payload,
        )
        try:
            self.broadcaster.publish(scope.department.value, event)
        except Exception:
            # the mutation already stands; subscribers reconcile on their next full pull
            self._metrics.counter(PUBLISH_FAILURES).inc()
            logger.exception("Failed to publish %s for %s", event_type.value, scope)
