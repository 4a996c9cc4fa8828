from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from kiosk.core.config import Settings
from kiosk.core.logging import current_queue_scope
from kiosk.metrics.definitions import (
    ADMIN_COMMANDS,
    PUBLISH_FAILURES,
    TICKET_WAIT_SECONDS,
    TICKETS_ISSUED,
    WAITING_TICKETS,
)
from kiosk.queue import (
    CustomerValidationError,
    Department,
    DepartmentClosedError,
    EventBroadcaster,
    EventType,
    ExhaustedRangeError,
    InMemoryQueueRepository,
    NoWindowAvailableError,
    PriorityCategory,
    QueueDispatcher,
    QueueEmptyError,
    TicketStatus,
    WindowUnavailableError,
    build_customer,
)
from kiosk.queue.dispatcher import announcement_for, validate_customer


def _single_registrar_window(windows):
    return tuple(window for window in windows if window.id in ("reg-w1", "adm-w1"))


@pytest.mark.asyncio
async def test_first_submission_gets_number_one_and_no_wait(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()

    result = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("John Doe"))

    assert result.ticket.queue_number == 1
    assert result.ticket.status is TicketStatus.WAITING
    assert result.window.id == "reg-w1"
    assert result.window_label == "Window 1"
    assert result.waiting_ahead == 0
    assert result.estimated_wait_minutes == 0
    assert result.qr_code == "QR-REGISTRAR-01"


@pytest.mark.asyncio
async def test_estimated_wait_uses_tickets_ahead(dispatcher_factory, customer_factory, windows):
    dispatcher = dispatcher_factory(windows=_single_registrar_window(windows))

    await dispatcher.submit_ticket(Department.REGISTRAR, "tor", customer_factory("A"))
    await dispatcher.submit_ticket(Department.REGISTRAR, "tor", customer_factory("B"))
    third = await dispatcher.submit_ticket(Department.REGISTRAR, "tor", customer_factory("C"))

    assert third.ticket.queue_number == 3
    assert third.waiting_ahead == 2
    assert third.estimated_wait_minutes == 10


@pytest.mark.asyncio
async def test_new_tickets_spread_across_windows(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()

    first = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("A"))
    second = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("B"))

    assert first.ticket.window_id == "reg-w1"
    assert second.ticket.window_id == "reg-w2"
    assert second.waiting_ahead == 0


@pytest.mark.asyncio
async def test_priority_ticket_is_called_first(dispatcher_factory, customer_factory, windows):
    dispatcher = dispatcher_factory(windows=_single_registrar_window(windows))
    regular = [
        await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory(name))
        for name in ("A", "B", "C")
    ]
    priority = await dispatcher.submit_ticket(
        Department.REGISTRAR,
        "Transcript Request",
        customer_factory("D", priority=PriorityCategory.SENIOR_CITIZEN),
    )

    assert priority.waiting_ahead == 0

    first = await dispatcher.call_next(Department.REGISTRAR, "reg-w1", actor="registrar-staff")
    second = await dispatcher.call_next(Department.REGISTRAR, "reg-w1", actor="registrar-staff")

    assert first.ticket.id == priority.ticket.id
    assert first.announcement == "Queue number 04 please proceed to Window 1"
    assert second.ticket.id == regular[0].ticket.id
    assert second.snapshot.displayed_number == 1
    assert [ticket.queue_number for ticket in second.snapshot.waiting] == [2, 3]


@pytest.mark.asyncio
async def test_submitted_ticket_appears_in_public_view(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    result = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    window_view = dispatcher.get_public_view(Department.REGISTRAR, "reg-w1")
    department_view = dispatcher.get_public_view("registrar")

    assert [ticket.id for ticket in window_view.waiting] == [result.ticket.id]
    assert [ticket.id for ticket in department_view.waiting] == [result.ticket.id]
    assert window_view.waiting[0].window_name == "Window 1"
    assert [summary.window.id for summary in department_view.windows] == ["reg-w1", "reg-w2"]
    assert department_view.windows[0].next_number == 1


@pytest.mark.asyncio
async def test_department_view_shows_latest_called_ticket(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("A"))
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("B"))

    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")
    await dispatcher.call_next(Department.REGISTRAR, "reg-w2")
    view = dispatcher.get_public_view(Department.REGISTRAR)

    assert view.serving.queue_number == 2
    assert view.current_number == 2
    assert view.waiting == ()


@pytest.mark.asyncio
async def test_missing_fields_are_rejected_before_allocation(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()

    with pytest.raises(CustomerValidationError) as exc:
        await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("   "))

    assert exc.value.fields == ("name",)
    assert dispatcher.allocator.in_use(Department.REGISTRAR) == frozenset()


def test_build_customer_validates_role_contact_and_email():
    with pytest.raises(CustomerValidationError) as role_error:
        build_customer(name="Jane", contact="09171234567", role="Dean")
    with pytest.raises(CustomerValidationError) as contact_error:
        build_customer(name="Jane", contact="12-34", role="Student")
    with pytest.raises(CustomerValidationError) as email_error:
        build_customer(name="Jane", contact="09171234567", role="Student", email="jane-at-example")

    assert role_error.value.fields == ("role",)
    assert contact_error.value.fields == ("contact",)
    assert email_error.value.fields == ("email",)


def test_validate_customer_trims_values():
    customer = validate_customer(
        build_customer(name="  Jane Cruz ", contact=" +63 917 123 4567 ", role="Alumni", address="  ")
    )

    assert customer.name == "Jane Cruz"
    assert customer.contact == "+63 917 123 4567"
    assert customer.address is None


@pytest.mark.asyncio
async def test_department_without_open_window_rejects_tickets(dispatcher_factory, customer_factory, windows):
    dispatcher = dispatcher_factory(windows=[window for window in windows if window.department is Department.REGISTRAR])

    with pytest.raises(NoWindowAvailableError):
        await dispatcher.submit_ticket(Department.ADMISSIONS, "Application Submission", customer_factory())


@pytest.mark.asyncio
async def test_disabled_department_rejects_tickets(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    dispatcher.set_department_enabled(Department.ADMISSIONS, False)

    with pytest.raises(DepartmentClosedError):
        await dispatcher.submit_ticket(Department.ADMISSIONS, "Application Submission", customer_factory())

    view = dispatcher.get_public_view(Department.ADMISSIONS)
    assert view.is_enabled is False
    assert view.message == "Admissions office is currently closed"


@pytest.mark.asyncio
async def test_priority_is_downgraded_when_disabled(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory(allow_priority=False)

    result = await dispatcher.submit_ticket(
        Department.REGISTRAR, "Transcript Request", customer_factory(priority=PriorityCategory.PWD)
    )

    assert result.ticket.customer.priority is PriorityCategory.REGULAR


@pytest.mark.asyncio
async def test_exhausted_numbers_raise(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory(maximum=2)
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("A"))
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("B"))

    with pytest.raises(ExhaustedRangeError):
        await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("C"))


@pytest.mark.asyncio
async def test_failed_enqueue_releases_number(dispatcher_factory, customer_factory):
    repository = InMemoryQueueRepository()
    repository.save_tickets = AsyncMock(side_effect=ConnectionError("down"))
    dispatcher = dispatcher_factory(repository=repository)

    with pytest.raises(ConnectionError):
        await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    assert dispatcher.allocator.in_use(Department.REGISTRAR) == frozenset()


@pytest.mark.asyncio
async def test_call_next_requires_open_unpaused_window(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    with pytest.raises(WindowUnavailableError):
        await dispatcher.call_next(Department.REGISTRAR, "reg-w3")

    await dispatcher.stop(Department.REGISTRAR, "reg-w1")
    with pytest.raises(WindowUnavailableError):
        await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    await dispatcher.stop(Department.REGISTRAR, "reg-w1", paused=False)
    result = await dispatcher.call_next(Department.REGISTRAR, "reg-w1")
    assert result.ticket.queue_number == 1


@pytest.mark.asyncio
async def test_empty_queue_commands_leave_state_alone(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    with pytest.raises(QueueEmptyError):
        await dispatcher.call_next(Department.REGISTRAR, "reg-w1")
    with pytest.raises(QueueEmptyError):
        await dispatcher.skip(Department.REGISTRAR, "reg-w1")

    snapshot = dispatcher.get_scope_snapshot(Department.REGISTRAR, "reg-w1")
    assert snapshot.serving.queue_number == 1


@pytest.mark.asyncio
async def test_previous_is_display_only(dispatcher_factory, customer_factory, windows):
    dispatcher = dispatcher_factory(windows=_single_registrar_window(windows))
    for name in ("A", "B"):
        await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory(name))
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    result = await dispatcher.previous(Department.REGISTRAR, "reg-w1")

    assert result.snapshot.displayed_number == 1
    assert result.snapshot.serving.queue_number == 2
    assert result.announcement == "Queue number 01 please return to Window 1"


@pytest.mark.asyncio
async def test_recall_repeats_announcement(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    result = await dispatcher.recall(Department.REGISTRAR, "reg-w1")

    assert result.announcement == announcement_for(1, "Window 1")
    assert result.ticket.status is TicketStatus.SERVING


@pytest.mark.asyncio
async def test_skip_and_requeue_through_dispatcher(dispatcher_factory, customer_factory, windows):
    dispatcher = dispatcher_factory(windows=_single_registrar_window(windows))
    first = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("A"))
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory("B"))

    skipped = await dispatcher.skip(Department.REGISTRAR, "reg-w1")
    requeued = await dispatcher.requeue_skipped(Department.REGISTRAR, "reg-w1", first.ticket.id)

    assert skipped.ticket.id == first.ticket.id
    assert [ticket.queue_number for ticket in skipped.snapshot.skipped] == [1]
    assert [ticket.queue_number for ticket in requeued.snapshot.waiting] == [2, 1]

    await dispatcher.skip(Department.REGISTRAR, "reg-w1")
    result = await dispatcher.requeue_all_skipped(Department.REGISTRAR, "reg-w1")
    assert [ticket.queue_number for ticket in result.snapshot.waiting] == [1, 2]


@pytest.mark.asyncio
async def test_transfer_announces_target_window(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    submitted = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    result = await dispatcher.transfer(Department.REGISTRAR, "reg-w1", submitted.ticket.id, "reg-w2")

    assert result.ticket.window_id == "reg-w2"
    assert result.announcement == "Queue number 01 please proceed to Window 2"
    assert result.snapshot.waiting == ()
    assert dispatcher.get_scope_snapshot(Department.REGISTRAR, "reg-w2").waiting[0].id == submitted.ticket.id


@pytest.mark.asyncio
async def test_shared_department_uses_single_queue(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory(shared=[Department.ADMISSIONS])
    submitted = await dispatcher.submit_ticket(Department.ADMISSIONS, "Application Submission", customer_factory())

    result = await dispatcher.call_next(Department.ADMISSIONS, None)

    assert submitted.window is None
    assert submitted.window_label is None
    assert result.ticket.id == submitted.ticket.id
    assert result.announcement == "Queue number 01 please proceed to the admissions office"


@pytest.mark.asyncio
async def test_cancel_and_rate(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()
    submitted = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    cancelled = await dispatcher.cancel(submitted.ticket.id)
    rated = await dispatcher.rate_ticket(submitted.ticket.id, 4)

    assert cancelled.status is TicketStatus.CANCELLED
    assert rated.rating == 4
    assert 1 not in dispatcher.allocator.in_use(Department.REGISTRAR)
    with pytest.raises(CustomerValidationError):
        await dispatcher.rate_ticket(submitted.ticket.id, 6)


@pytest.mark.asyncio
async def test_set_window_open_persists_and_routes(dispatcher_factory, customer_factory):
    dispatcher = dispatcher_factory()

    window = await dispatcher.set_window_open("reg-w3", True)

    assert window.is_open is True
    assert [window.id for window in dispatcher.list_open_windows(Department.REGISTRAR)] == ["reg-w1", "reg-w2", "reg-w3"]
    stored = {window.id: window for window in await dispatcher._repository.list_windows()}
    assert stored["reg-w3"].is_open is True


@pytest.mark.asyncio
async def test_events_are_published_after_each_change(dispatcher_factory, customer_factory):
    broadcaster = EventBroadcaster()
    dispatcher = dispatcher_factory(broadcaster=broadcaster)
    subscription = broadcaster.subscribe("registrar")

    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    events = [await subscription.__anext__() for _ in range(subscription.pending)]
    assert [event.type for event in events] == [EventType.TICKET_CREATED, EventType.QUEUE_UPDATE, EventType.QUEUE_UPDATE]
    assert events[0].payload["ticket"]["queue_number"] == 1
    assert events[0].payload["next_number"] == 2
    assert events[2].window_id == "reg-w1"
    assert events[2].payload["command"] == "next"
    assert events[2].payload["serving"]["queue_number"] == 1
    subscription.close()


@pytest.mark.asyncio
async def test_publish_failure_does_not_undo_mutation(dispatcher_factory, customer_factory, registry):
    broadcaster = MagicMock()
    broadcaster.publish.side_effect = RuntimeError("subscriber bus down")
    dispatcher = dispatcher_factory(broadcaster=broadcaster)

    result = await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())

    snapshot = dispatcher.get_scope_snapshot(Department.REGISTRAR, "reg-w1")
    assert snapshot.waiting[0].id == result.ticket.id
    assert registry.counter(PUBLISH_FAILURES).value() == 2


@pytest.mark.asyncio
async def test_metrics_are_recorded(dispatcher_factory, customer_factory, registry):
    dispatcher = dispatcher_factory()
    await dispatcher.submit_ticket(
        Department.REGISTRAR, "Transcript Request", customer_factory(priority=PriorityCategory.PREGNANT)
    )
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    issued = registry.counter(TICKETS_ISSUED, label_names=("department", "priority"))
    commands = registry.counter(ADMIN_COMMANDS, label_names=("department", "command"))
    waits = registry.distribution(TICKET_WAIT_SECONDS, label_names=("department",)).snapshot()

    assert issued.value(labels={"department": "registrar", "priority": "pregnant"}) == 1
    assert commands.value(labels={"department": "registrar", "command": "next"}) == 1
    assert waits[("registrar",)]["count"] == 1.0
    assert waits[("registrar",)]["sum"] > 0
    assert waits[("registrar",)]["le:60"] == 1.0
    depth = registry.gauge(WAITING_TICKETS, label_names=("department", "window"))
    assert depth.value(labels={"department": "registrar", "window": "reg-w1"}) == 0.0


@pytest.mark.asyncio
async def test_bootstrap_migrates_windows_and_restores_queue(services, ticket_factory):
    repository = InMemoryQueueRepository(
        services=services,
        window_documents=[
            {"id": "reg-w1", "department": "registrar", "name": "Window 1", "number": 1, "serviceId": "reg-tor", "is_open": True},
            {"id": "adm-w1", "department": "admissions", "name": "Window 1", "number": 1, "service_ids": ["adm-app"]},
        ],
    )
    await repository.save_tickets([ticket_factory(5), ticket_factory(6)])
    settings = Settings(storage_backend="memory", queue_number_max=10, shared_queue_departments=("admissions",))

    dispatcher = await QueueDispatcher.bootstrap(repository, settings)

    assert dispatcher.router.get_window("reg-w1").service_ids == ("reg-tor",)
    assert dispatcher.router.is_shared(Department.ADMISSIONS)
    assert [ticket.queue_number for ticket in dispatcher.get_scope_snapshot("registrar", "reg-w1").waiting] == [5, 6]
    assert dispatcher.allocator.allocate(Department.REGISTRAR) == 7
    documents = {document["id"]: document for document in await repository.list_window_documents()}
    assert "serviceId" not in documents["reg-w1"]


@pytest.mark.asyncio
async def test_visible_services_hide_services_without_open_window(dispatcher_factory):
    dispatcher = dispatcher_factory()

    before = dispatcher.list_visible_services("registrar")
    await dispatcher.set_window_open("reg-w2", False)
    after = dispatcher.list_visible_services(Department.REGISTRAR)

    assert before.is_enabled is True
    assert [service.name for service in before.services] == ["Enrollment Verification", "Transcript Request"]
    assert [service.name for service in after.services] == ["Transcript Request"]
    assert after.message is None


def test_visible_services_of_disabled_department_are_empty(dispatcher_factory):
    dispatcher = dispatcher_factory(shared=[Department.ADMISSIONS])
    dispatcher.set_department_enabled(Department.ADMISSIONS, False)

    listing = dispatcher.list_visible_services(Department.ADMISSIONS)

    assert listing.is_enabled is False
    assert listing.services == ()
    assert listing.message == "Admissions office is currently closed"


@pytest.mark.asyncio
async def test_queue_writes_run_inside_their_log_scope(dispatcher_factory, customer_factory, services):
    repository = InMemoryQueueRepository(services=services)
    save_tickets = repository.save_tickets
    scopes = []

    async def recording_save(tickets):
        scopes.append(current_queue_scope())
        await save_tickets(tickets)

    repository.save_tickets = recording_save
    dispatcher = dispatcher_factory(repository=repository)
    await dispatcher.submit_ticket(Department.REGISTRAR, "Transcript Request", customer_factory())
    await dispatcher.call_next(Department.REGISTRAR, "reg-w1")

    assert scopes == ["registrar/reg-w1", "registrar/reg-w1"]
    assert current_queue_scope() == "-"
