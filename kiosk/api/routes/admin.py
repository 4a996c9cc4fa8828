from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from kiosk.api.errors import queue_http_error
from kiosk.api.routes.queue import WindowResponse, window_response
from kiosk.dependencies.queue import AdminUser, DispatcherDep, StaffUser
from kiosk.queue.dispatcher import CommandResult
from kiosk.queue.errors import QueueError, TicketNotFoundError
from kiosk.queue.models import Department, ScopeSnapshot, Ticket

router = APIRouter(prefix="/admin", tags=["admin"])


class WindowCommandRequest(BaseModel):
    window_id: str | None = Field(default=None, description="Omit for departments with a shared queue")


class TicketCommandRequest(WindowCommandRequest):
    ticket_id: UUID


class TransferRequest(TicketCommandRequest):
    target_window_id: str = Field(..., min_length=1)


class StopRequest(WindowCommandRequest):
    action: Literal["pause", "resume"] = "pause"


class WindowOpenRequest(BaseModel):
    is_open: bool


class DepartmentEnabledRequest(BaseModel):
    enabled: bool


class StaffTicketResponse(BaseModel):
    id: UUID
    queue_number: int
    status: str
    service_id: str
    service_name: str
    window_id: str | None
    customer_name: str
    contact_number: str
    email: str | None
    role: str
    priority: str
    is_priority: bool
    queued_at: datetime
    called_at: datetime | None
    processed_by: str | None


class ScopeSnapshotResponse(BaseModel):
    department: Department
    window_id: str | None
    window_name: str | None
    current_number: int
    serving: StaffTicketResponse | None
    waiting: list[StaffTicketResponse]
    skipped: list[StaffTicketResponse]
    taken_at: datetime


class CommandResponse(BaseModel):
    command: str
    announcement: str | None
    ticket: StaffTicketResponse | None
    snapshot: ScopeSnapshotResponse


def _ticket_response(ticket: Ticket) -> StaffTicketResponse:
    return StaffTicketResponse(
        id=ticket.id,
        queue_number=ticket.queue_number,
        status=ticket.status.value,
        service_id=ticket.service_id,
        service_name=ticket.service_name,
        window_id=ticket.window_id,
        customer_name=ticket.customer.name,
        contact_number=ticket.customer.contact,
        email=ticket.customer.email,
        role=ticket.customer.role.value,
        priority=ticket.customer.priority.value,
        is_priority=ticket.is_priority,
        queued_at=ticket.queued_at,
        called_at=ticket.called_at,
        processed_by=ticket.processed_by,
    )


def _snapshot_response(snapshot: ScopeSnapshot) -> ScopeSnapshotResponse:
    return ScopeSnapshotResponse(
        department=snapshot.scope.department,
        window_id=snapshot.scope.window_id,
        window_name=snapshot.window_label,
        current_number=snapshot.displayed_number,
        serving=_ticket_response(snapshot.serving) if snapshot.serving else None,
        waiting=[_ticket_response(ticket) for ticket in snapshot.waiting],
        skipped=[_ticket_response(ticket) for ticket in snapshot.skipped],
        taken_at=snapshot.taken_at,
    )


def _command_response(result: CommandResult) -> CommandResponse:
    return CommandResponse(
        command=result.command,
        announcement=result.announcement,
        ticket=_ticket_response(result.ticket) if result.ticket else None,
        snapshot=_snapshot_response(result.snapshot),
    )


@router.get("/queue/{department}", response_model=ScopeSnapshotResponse)
async def get_scope_snapshot(
    department: Department,
    dispatcher: DispatcherDep,
    _: StaffUser,
    window_id: str | None = Query(default=None),
) -> ScopeSnapshotResponse:
    try:
        snapshot = dispatcher.get_scope_snapshot(department, window_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _snapshot_response(snapshot)


@router.post("/queue/{department}/next", response_model=CommandResponse)
async def call_next(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.call_next(department, payload.window_id, actor=user.username)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/complete", response_model=CommandResponse)
async def complete_serving(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.complete(department, payload.window_id, actor=user.username)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/skip", response_model=CommandResponse)
async def skip_next(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.skip(department, payload.window_id, actor=user.username)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/recall", response_model=CommandResponse)
async def recall_serving(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, _: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.recall(department, payload.window_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/previous", response_model=CommandResponse)
async def show_previous_number(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, _: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.previous(department, payload.window_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/stop", response_model=CommandResponse)
async def stop_window(
    department: Department, payload: StopRequest, dispatcher: DispatcherDep, _: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.stop(department, payload.window_id, paused=payload.action == "pause")
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/transfer", response_model=CommandResponse)
async def transfer_ticket(
    department: Department, payload: TransferRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.transfer(
            department,
            payload.window_id,
            payload.ticket_id,
            payload.target_window_id,
            actor=user.username,
        )
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/requeue", response_model=CommandResponse)
async def requeue_skipped(
    department: Department, payload: TicketCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.requeue_skipped(
            department, payload.window_id, payload.ticket_id, actor=user.username
        )
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/requeue-all", response_model=CommandResponse)
async def requeue_all_skipped(
    department: Department, payload: WindowCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> CommandResponse:
    try:
        result = await dispatcher.requeue_all_skipped(department, payload.window_id, actor=user.username)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _command_response(result)


@router.post("/queue/{department}/cancel", response_model=StaffTicketResponse)
async def cancel_ticket(
    department: Department, payload: TicketCommandRequest, dispatcher: DispatcherDep, user: StaffUser
) -> StaffTicketResponse:
    try:
        ticket = await dispatcher.get_ticket(payload.ticket_id)
        if ticket.department != department:
            raise TicketNotFoundError(f"Ticket #{ticket.queue_number} is not queued in {department.value}")
        ticket = await dispatcher.cancel(payload.ticket_id, actor=user.username)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _ticket_response(ticket)


@router.put("/windows/{window_id}/open", response_model=WindowResponse)
async def set_window_open(
    window_id: str, payload: WindowOpenRequest, dispatcher: DispatcherDep, user: StaffUser
) -> WindowResponse:
    try:
        department = dispatcher.router.get_window(window_id).department
        if not user.can_operate(department.value):
            raise HTTPException(status_code=403, detail=f"Not allowed to operate the {department.value} queue")
        window = await dispatcher.set_window_open(window_id, payload.is_open)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return window_response(window)


@router.put("/departments/{department}/enabled", response_model=DepartmentEnabledRequest)
async def set_department_enabled(
    department: Department, payload: DepartmentEnabledRequest, dispatcher: DispatcherDep, _: AdminUser
) -> DepartmentEnabledRequest:
    dispatcher.set_department_enabled(department, payload.enabled)
    return DepartmentEnabledRequest(enabled=dispatcher.is_enabled(department))
