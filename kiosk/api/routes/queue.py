from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from kiosk.api.errors import queue_http_error
from kiosk.dependencies.queue import DispatcherDep
from kiosk.queue.dispatcher import (
    PublicQueueView,
    PublicTicket,
    ServiceListing,
    SubmissionResult,
    WindowSummary,
    build_customer,
)
from kiosk.queue.errors import QueueError
from kiosk.queue.models import Department, PriorityCategory, Service, Ticket, Window

router = APIRouter(prefix="/queue", tags=["queue"])


class TicketSubmitRequest(BaseModel):
    department: Department
    service: str = Field(..., min_length=1, max_length=200)
    customer_name: str = Field(default="", max_length=200)
    contact_number: str = Field(default="", max_length=50)
    role: str = Field(..., max_length=20)
    priority: PriorityCategory = PriorityCategory.REGULAR
    email: str | None = Field(default=None, max_length=200)
    address: str | None = Field(default=None, max_length=500)
    id_number: str | None = Field(default=None, max_length=50)


class TicketSubmitResponse(BaseModel):
    ticket_id: UUID
    queue_number: int
    department: Department
    service: str
    window_id: str | None
    window_name: str | None
    role: str
    is_priority: bool
    waiting_ahead: int
    estimated_wait_minutes: int
    queued_at: datetime
    qr_code: str


class PublicTicketResponse(BaseModel):
    id: UUID
    queue_number: int
    service_name: str
    window_id: str | None
    window_name: str | None
    is_priority: bool
    status: str
    queued_at: datetime


class WindowResponse(BaseModel):
    id: str
    name: str
    number: int
    department: Department
    service_ids: list[str]
    is_open: bool
    is_paused: bool


class WindowSummaryResponse(WindowResponse):
    current_number: int
    next_number: int | None
    waiting_count: int


class PublicQueueResponse(BaseModel):
    department: Department
    is_enabled: bool
    window_id: str | None
    current_number: int
    serving: PublicTicketResponse | None
    waiting: list[PublicTicketResponse]
    windows: list[WindowSummaryResponse]
    message: str | None = None


class ServiceResponse(BaseModel):
    id: str
    name: str
    department: Department
    category: str
    estimated_minutes: int


class ServiceListingResponse(BaseModel):
    department: Department
    is_enabled: bool
    services: list[ServiceResponse]
    message: str | None = None


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


class TicketStatusResponse(BaseModel):
    id: UUID
    queue_number: int
    department: Department
    status: str
    rating: int | None
    status_changed_at: datetime


def public_ticket_response(ticket: PublicTicket) -> PublicTicketResponse:
    return PublicTicketResponse(**ticket.to_dict())


def window_response(window: Window) -> WindowResponse:
    return WindowResponse(
        id=window.id,
        name=window.name,
        number=window.number,
        department=window.department,
        service_ids=list(window.service_ids),
        is_open=window.is_open,
        is_paused=window.is_paused,
    )


def _service_response(service: Service) -> ServiceResponse:
    return ServiceResponse(
        id=service.id,
        name=service.name,
        department=service.department,
        category=service.category,
        estimated_minutes=service.estimated_minutes,
    )


def _listing_response(listing: ServiceListing) -> ServiceListingResponse:
    return ServiceListingResponse(
        department=listing.department,
        is_enabled=listing.is_enabled,
        services=[_service_response(service) for service in listing.services],
        message=listing.message,
    )


def _summary_response(summary: WindowSummary) -> WindowSummaryResponse:
    return WindowSummaryResponse(
        **window_response(summary.window).model_dump(),
        current_number=summary.current_number,
        next_number=summary.next_number,
        waiting_count=summary.waiting_count,
    )


def public_view_response(view: PublicQueueView) -> PublicQueueResponse:
    return PublicQueueResponse(
        department=view.department,
        is_enabled=view.is_enabled,
        window_id=view.window_id,
        current_number=view.current_number,
        serving=public_ticket_response(view.serving) if view.serving else None,
        waiting=[public_ticket_response(ticket) for ticket in view.waiting],
        windows=[_summary_response(summary) for summary in view.windows],
        message=view.message,
    )


def _submission_response(result: SubmissionResult) -> TicketSubmitResponse:
    ticket = result.ticket
    return TicketSubmitResponse(
        ticket_id=ticket.id,
        queue_number=ticket.queue_number,
        department=ticket.department,
        service=ticket.service_name,
        window_id=ticket.window_id,
        window_name=result.window_label,
        role=ticket.customer.role.value,
        is_priority=ticket.is_priority,
        waiting_ahead=result.waiting_ahead,
        estimated_wait_minutes=result.estimated_wait_minutes,
        queued_at=ticket.queued_at,
        qr_code=result.qr_code,
    )


def _status_response(ticket: Ticket) -> TicketStatusResponse:
    return TicketStatusResponse(
        id=ticket.id,
        queue_number=ticket.queue_number,
        department=ticket.department,
        status=ticket.status.value,
        rating=ticket.rating,
        status_changed_at=ticket.status_changed_at,
    )


@router.post("", response_model=TicketSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_ticket(payload: TicketSubmitRequest, dispatcher: DispatcherDep) -> TicketSubmitResponse:
    try:
        customer = build_customer(
            name=payload.customer_name,
            contact=payload.contact_number,
            role=payload.role,
            priority=payload.priority,
            email=payload.email,
            address=payload.address,
            id_number=payload.id_number,
        )
        result = await dispatcher.submit_ticket(payload.department, payload.service, customer)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _submission_response(result)


@router.get("/{department}", response_model=PublicQueueResponse)
async def get_public_queue(
    department: Department,
    dispatcher: DispatcherDep,
    window_id: str | None = Query(default=None),
) -> PublicQueueResponse:
    try:
        view = dispatcher.get_public_view(department, window_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return public_view_response(view)


@router.get("/{department}/windows", response_model=list[WindowResponse])
async def list_open_windows(department: Department, dispatcher: DispatcherDep) -> list[WindowResponse]:
    return [window_response(window) for window in dispatcher.list_open_windows(department)]


@router.get("/{department}/services", response_model=ServiceListingResponse)
async def list_visible_services(department: Department, dispatcher: DispatcherDep) -> ServiceListingResponse:
    return _listing_response(dispatcher.list_visible_services(department))


@router.post("/tickets/{ticket_id}/cancel", response_model=TicketStatusResponse)
async def cancel_ticket(ticket_id: UUID, dispatcher: DispatcherDep) -> TicketStatusResponse:
    try:
        ticket = await dispatcher.cancel(ticket_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _status_response(ticket)


@router.post("/tickets/{ticket_id}/rating", response_model=TicketStatusResponse)
async def rate_ticket(ticket_id: UUID, payload: RatingRequest, dispatcher: DispatcherDep) -> TicketStatusResponse:
    try:
        ticket = await dispatcher.rate_ticket(ticket_id, payload.rating)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _status_response(ticket)


@router.get("/tickets/{ticket_id}", response_model=TicketStatusResponse)
async def get_ticket_status(ticket_id: UUID, dispatcher: DispatcherDep) -> TicketStatusResponse:
    try:
        ticket = await dispatcher.get_ticket(ticket_id)
    except QueueError as exc:
        raise queue_http_error(exc) from exc
    return _status_response(ticket)
