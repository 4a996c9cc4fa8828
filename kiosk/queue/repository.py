from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID

import asyncpg

from .models import CustomerInfo, CustomerRole, Department, PriorityCategory, Service, Ticket, Window
from .state import TicketStatus


class QueueRepository(Protocol):
    """Persistence collaborator used by the queue engine."""

    async def ensure_schema(self) -> None:
        ...

    async def list_services(self) -> list[Service]:
        ...

    async def list_window_documents(self) -> list[dict[str, Any]]:
        ...

    async def save_window_document(self, document: Mapping[str, Any]) -> None:
        ...

    async def list_windows(self) -> list[Window]:
        ...

    async def save_window(self, window: Window) -> None:
        ...

    async def list_active_tickets(self) -> list[Ticket]:
        ...

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        ...

    async def save_tickets(self, tickets: Sequence[Ticket]) -> None:
        ...


class PostgresQueueRepository:
    """Document-style storage on PostgreSQL JSONB columns."""

    _CREATE_SERVICES_SQL = """
    CREATE TABLE IF NOT EXISTS services (
        id TEXT PRIMARY KEY,
        department TEXT NOT NULL,
        document JSONB NOT NULL
    )
    """

    _CREATE_WINDOWS_SQL = """
    CREATE TABLE IF NOT EXISTS windows (
        id TEXT PRIMARY KEY,
        department TEXT NOT NULL,
        document JSONB NOT NULL
    )
    """

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS queue_tickets (
        id UUID PRIMARY KEY,
        department TEXT NOT NULL,
        window_id TEXT NULL,
        status TEXT NOT NULL,
        queue_number INTEGER NOT NULL,
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_TICKETS_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS queue_tickets_department_status_idx
    ON queue_tickets (department, status)
    """

    _SELECT_SERVICES_SQL = """
    SELECT id, department, document FROM services ORDER BY id
    """

    _SELECT_WINDOWS_SQL = """
    SELECT id, department, document FROM windows ORDER BY id
    """

    _UPSERT_WINDOW_SQL = """
    INSERT INTO windows (id, department, document)
    VALUES ($1, $2, $3::jsonb)
    ON CONFLICT (id) DO UPDATE SET department = EXCLUDED.department, document = EXCLUDED.document
    """

    _SELECT_ACTIVE_TICKETS_SQL = """
    SELECT document FROM queue_tickets
    WHERE status NOT IN ('completed', 'cancelled')
    ORDER BY created_at ASC
    """

    _SELECT_TICKET_SQL = """
    SELECT document FROM queue_tickets WHERE id = $1
    """

    _UPSERT_TICKET_SQL = """
    INSERT INTO queue_tickets (id, department, window_id, status, queue_number, document, created_at)
    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
    ON CONFLICT (id) DO UPDATE SET
        window_id = EXCLUDED.window_id,
        status = EXCLUDED.status,
        document = EXCLUDED.document,
        updated_at = CURRENT_TIMESTAMP
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_SERVICES_SQL)
            await connection.execute(self._CREATE_WINDOWS_SQL)
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_TICKETS_INDEX_SQL)

    async def list_services(self) -> list[Service]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_SERVICES_SQL)
        return [service_from_document({"id": row["id"], **_load_json(row["document"])}) for row in rows]

    async def list_window_documents(self) -> list[dict[str, Any]]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_WINDOWS_SQL)
        return [{"id": row["id"], **_load_json(row["document"])} for row in rows]

    async def save_window_document(self, document: Mapping[str, Any]) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                self._UPSERT_WINDOW_SQL,
                str(document["id"]),
                str(document["department"]),
                json.dumps(dict(document)),
            )

    async def list_windows(self) -> list[Window]:
        return [window_from_document(document) for document in await self.list_window_documents()]

    async def save_window(self, window: Window) -> None:
        await self.save_window_document(window_to_document(window))

    async def list_active_tickets(self) -> list[Ticket]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_ACTIVE_TICKETS_SQL)
        return [ticket_from_document(_load_json(row["document"])) for row in rows]

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return ticket_from_document(_load_json(row["document"]))

    async def save_tickets(self, tickets: Sequence[Ticket]) -> None:
        if not tickets:
            return
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                for ticket in tickets:
                    await connection.execute(
                        self._UPSERT_TICKET_SQL,
                        ticket.id,
                        ticket.department.value,
                        ticket.window_id,
                        ticket.status.value,
                        ticket.queue_number,
                        json.dumps(ticket_to_document(ticket)),
                        ticket.created_at,
                    )


class InMemoryQueueRepository:
    """Process-local storage for development kiosks and tests."""

    def __init__(
        self,
        *,
        services: Sequence[Service] = (),
        window_documents: Sequence[Mapping[str, Any]] = (),
    ) -> None:
        self._services = {service.id: service for service in services}
        self._windows: dict[str, dict[str, Any]] = {
            str(document["id"]): dict(document) for document in window_documents
        }
        self._tickets: dict[UUID, dict[str, Any]] = {}

    @classmethod
    def from_catalog_file(cls, path: str | Path) -> "InMemoryQueueRepository":
        """Build a repository from a JSON file with ``services`` and ``windows`` arrays."""

        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        services = [service_from_document(document) for document in payload.get("services", [])]
        return cls(services=services, window_documents=payload.get("windows", []))

    async def ensure_schema(self) -> None:
        return None

    async def list_services(self) -> list[Service]:
        return list(self._services.values())

    async def list_window_documents(self) -> list[dict[str, Any]]:
        return [dict(document) for document in self._windows.values()]

    async def save_window_document(self, document: Mapping[str, Any]) -> None:
        self._windows[str(document["id"])] = dict(document)

    async def list_windows(self) -> list[Window]:
        return [window_from_document(document) for document in self._windows.values()]

    async def save_window(self, window: Window) -> None:
        self._windows[window.id] = window_to_document(window)

    async def list_active_tickets(self) -> list[Ticket]:
        tickets = [ticket_from_document(document) for document in self._tickets.values()]
        return sorted((ticket for ticket in tickets if ticket.is_active), key=lambda ticket: ticket.created_at)

    async def get_ticket(self, ticket_id: UUID) -> Ticket | None:
        document = self._tickets.get(ticket_id)
        return ticket_from_document(document) if document is not None else None

    async def save_tickets(self, tickets: Sequence[Ticket]) -> None:
        documents = {ticket.id: ticket_to_document(ticket) for ticket in tickets}
        self._tickets.update(documents)


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        return dict(json.loads(value))
    return dict(value)


def _to_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def service_from_document(document: Mapping[str, Any]) -> Service:
    return Service(
        id=str(document["id"]),
        department=Department(str(document["department"])),
        name=str(document["name"]),
        category=str(document.get("category") or ""),
        estimated_minutes=int(document.get("estimated_minutes", 5)),
        is_active=bool(document.get("is_active", True)),
    )


def window_from_document(document: Mapping[str, Any]) -> Window:
    """Build a window from a document in the plural ``service_ids`` shape."""

    return Window(
        id=str(document["id"]),
        department=Department(str(document["department"])),
        name=str(document["name"]),
        number=int(document.get("number", 0)),
        service_ids=tuple(str(service_id) for service_id in document.get("service_ids") or ()),
        is_open=bool(document.get("is_open", False)),
        is_paused=bool(document.get("is_paused", False)),
        operator=document.get("operator"),
    )


def window_to_document(window: Window) -> dict[str, Any]:
    return {
        "id": window.id,
        "department": window.department.value,
        "name": window.name,
        "number": window.number,
        "service_ids": list(window.service_ids),
        "is_open": window.is_open,
        "is_paused": window.is_paused,
        "operator": window.operator,
    }


def ticket_to_document(ticket: Ticket) -> dict[str, Any]:
    customer = ticket.customer
    return {
        "id": str(ticket.id),
        "queue_number": ticket.queue_number,
        "department": ticket.department.value,
        "service_id": ticket.service_id,
        "service_name": ticket.service_name,
        "window_id": ticket.window_id,
        "customer": {
            "name": customer.name,
            "contact": customer.contact,
            "role": customer.role.value,
            "priority": customer.priority.value,
            "email": customer.email,
            "address": customer.address,
            "id_number": customer.id_number,
        },
        "status": ticket.status.value,
        "created_at": _iso(ticket.created_at),
        "queued_at": _iso(ticket.queued_at),
        "status_changed_at": _iso(ticket.status_changed_at),
        "called_at": _iso(ticket.called_at),
        "completed_at": _iso(ticket.completed_at),
        "skipped_at": _iso(ticket.skipped_at),
        "cancelled_at": _iso(ticket.cancelled_at),
        "rating": ticket.rating,
        "processed_by": ticket.processed_by,
    }


def ticket_from_document(document: Mapping[str, Any]) -> Ticket:
    customer = document.get("customer") or {}
    created_at = _parse_datetime(document["created_at"])
    return Ticket(
        id=_to_uuid(document["id"]),
        queue_number=int(document["queue_number"]),
        department=Department(str(document["department"])),
        service_id=str(document["service_id"]),
        service_name=str(document.get("service_name") or ""),
        window_id=document.get("window_id"),
        customer=CustomerInfo(
            name=str(customer.get("name") or ""),
            contact=str(customer.get("contact") or ""),
            role=CustomerRole(str(customer.get("role") or CustomerRole.VISITOR.value)),
            priority=PriorityCategory(str(customer.get("priority") or PriorityCategory.REGULAR.value)),
            email=customer.get("email"),
            address=customer.get("address"),
            id_number=customer.get("id_number"),
        ),
        status=TicketStatus(str(document["status"])),
        created_at=created_at,
        queued_at=_parse_datetime(document.get("queued_at")) or created_at,
        status_changed_at=_parse_datetime(document.get("status_changed_at")) or created_at,
        called_at=_parse_datetime(document.get("called_at")),
        completed_at=_parse_datetime(document.get("completed_at")),
        skipped_at=_parse_datetime(document.get("skipped_at")),
        cancelled_at=_parse_datetime(document.get("cancelled_at")),
        rating=document.get("rating"),
        processed_by=document.get("processed_by"),
    )
