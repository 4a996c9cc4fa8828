from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import AsyncIterator, Callable, Iterable, Sequence
from uuid import UUID

from .allocator import TicketNumberAllocator
from .errors import (
    InvalidTransferError,
    QueueEmptyError,
    TicketNotFoundError,
    WindowUnavailableError,
)
from .models import Department, QueueScope, ScopeSnapshot, Ticket, Window, utcnow
from .repository import QueueRepository
from .state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _ScopeState:
    """Ordering of the active tickets of one scope, by ticket id."""

    priority: list[UUID] = field(default_factory=list)
    regular: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    serving: UUID | None = None
    displayed_number: int = 0

    def waiting(self) -> list[UUID]:
        return [*self.priority, *self.regular]

    def copy(self) -> "_ScopeState":
        return _ScopeState(
            priority=list(self.priority),
            regular=list(self.regular),
            skipped=list(self.skipped),
            serving=self.serving,
            displayed_number=self.displayed_number,
        )

    def append_waiting(self, ticket: Ticket) -> int:
        """Queue ``ticket`` at the tail of its priority class; return how many wait ahead of it."""

        if ticket.is_priority:
            self.priority.append(ticket.id)
            return len(self.priority) - 1
        self.regular.append(ticket.id)
        return len(self.priority) + len(self.regular) - 1

    def discard(self, ticket_id: UUID) -> None:
        for sequence in (self.priority, self.regular, self.skipped):
            if ticket_id in sequence:
                sequence.remove(ticket_id)
        if self.serving == ticket_id:
            self.serving = None


@dataclass(slots=True, frozen=True)
class AdvanceResult:
    serving: Ticket
    completed: Ticket | None = None


class QueueStore:
    """Authoritative in-memory queues, flushed to the repository on every mutation.

    Mutations hold the scope lock, work on copies, persist the changed tickets
    in one call and only then swap the copies in. A failed flush leaves the
    queues exactly as they were.
    """

    def __init__(
        self,
        repository: QueueRepository,
        allocator: TicketNumberAllocator,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._allocator = allocator
        self._clock = clock
        self._tickets: dict[UUID, Ticket] = {}
        self._scopes: dict[QueueScope, _ScopeState] = defaultdict(_ScopeState)
        self._locks: dict[QueueScope, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------ loading

    async def load(self, tickets: Iterable[Ticket]) -> None:
        """Rebuild queue state from persisted non-terminal tickets."""

        self._tickets.clear()
        self._scopes.clear()
        corrections: list[Ticket] = []
        active = sorted((ticket for ticket in tickets if ticket.is_active), key=lambda ticket: ticket.queued_at)

        serving_by_scope: dict[QueueScope, list[Ticket]] = defaultdict(list)
        for ticket in active:
            state = self._scopes[ticket.scope]
            self._tickets[ticket.id] = ticket
            if ticket.status is TicketStatus.WAITING:
                state.append_waiting(ticket)
            elif ticket.status is TicketStatus.SKIPPED:
                state.skipped.append(ticket.id)
            elif ticket.status is TicketStatus.SERVING:
                serving_by_scope[ticket.scope].append(ticket)

        for scope, serving in serving_by_scope.items():
            serving.sort(key=lambda ticket: ticket.called_at or ticket.queued_at)
            current = serving.pop()
            self._scopes[scope].serving = current.id
            self._scopes[scope].displayed_number = current.queue_number
            for stale in serving:
                logger.error("Scope %s had more than one serving ticket; completing #%s", scope, stale.queue_number)
                corrections.append(self._transition(stale, TicketStatus.COMPLETED, self._clock()))

        for scope, state in self._scopes.items():
            state.skipped.sort(key=lambda ticket_id: self._tickets[ticket_id].skipped_at or self._clock())

        if corrections:
            await self._repository.save_tickets(corrections)
            for ticket in corrections:
                self._tickets.pop(ticket.id, None)

        self._seed_allocator()
        logger.info("Loaded %d active ticket(s) across %d scope(s)", len(self._tickets), len(self._scopes))

    def _seed_allocator(self) -> None:
        by_department: dict[Department, list[Ticket]] = defaultdict(list)
        for ticket in self._tickets.values():
            if ticket.is_active:
                by_department[ticket.department].append(ticket)
        for department in Department:
            tickets = by_department.get(department, [])
            latest = max(tickets, key=lambda ticket: ticket.created_at, default=None)
            self._allocator.seed(
                department,
                (ticket.queue_number for ticket in tickets),
                latest.queue_number if latest is not None else None,
            )

    # ------------------------------------------------------------------ helpers

    @asynccontextmanager
    async def _locked(self, *scopes: QueueScope) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for scope in sorted(set(scopes), key=lambda scope: scope.sort_key):
                await stack.enter_async_context(self._locks[scope])
            yield

    def _transition(
        self,
        ticket: Ticket,
        status: TicketStatus,
        now: datetime,
        *,
        actor: str | None = None,
        **changes,
    ) -> Ticket:
        TicketStateMachine.assert_transition(ticket.status, status)
        stamps: dict[str, datetime] = {}
        if status is TicketStatus.SERVING:
            stamps["called_at"] = now
        elif status is TicketStatus.COMPLETED:
            stamps["completed_at"] = now
        elif status is TicketStatus.SKIPPED:
            stamps["skipped_at"] = now
        elif status is TicketStatus.CANCELLED:
            stamps["cancelled_at"] = now
        return replace(
            ticket,
            status=status,
            status_changed_at=now,
            processed_by=actor or ticket.processed_by,
            **stamps,
            **changes,
        )

    async def _commit(self, changed: Sequence[Ticket], states: dict[QueueScope, _ScopeState]) -> None:
        await self._repository.save_tickets(changed)
        for ticket in changed:
            if ticket.is_active:
                self._tickets[ticket.id] = ticket
                continue
            # finished tickets live on in the repository only
            self._tickets.pop(ticket.id, None)
            self._allocator.release(ticket.department, ticket.queue_number)
        self._scopes.update(states)

    def _require_active(self, ticket_id: UUID) -> Ticket:
        ticket = self._tickets.get(ticket_id)
        if ticket is None or not ticket.is_active:
            raise TicketNotFoundError(f"Active ticket {ticket_id} not found")
        return ticket

    # ------------------------------------------------------------------ reads

    def now(self) -> datetime:
        return self._clock()

    def peek_next(self, scope: QueueScope) -> Ticket | None:
        waiting = self._scopes[scope].waiting() if scope in self._scopes else []
        return self._tickets[waiting[0]] if waiting else None

    def serving(self, scope: QueueScope) -> Ticket | None:
        state = self._scopes.get(scope)
        if state is None or state.serving is None:
            return None
        return self._tickets[state.serving]

    def active_load(self, scope: QueueScope) -> int:
        state = self._scopes.get(scope)
        if state is None:
            return 0
        return len(state.priority) + len(state.regular) + (1 if state.serving is not None else 0)

    def waiting_ahead(self, ticket_id: UUID) -> int:
        ticket = self._require_active(ticket_id)
        waiting = self._scopes[ticket.scope].waiting()
        return waiting.index(ticket_id) if ticket_id in waiting else 0

    def scopes(self, department: Department) -> list[QueueScope]:
        return sorted((scope for scope in self._scopes if scope.department == department), key=lambda s: s.sort_key)

    def snapshot(self, scope: QueueScope, *, window: Window | None = None) -> ScopeSnapshot:
        state = self._scopes.get(scope) or _ScopeState()
        return ScopeSnapshot(
            scope=scope,
            waiting=tuple(self._tickets[ticket_id] for ticket_id in state.waiting()),
            serving=self._tickets[state.serving] if state.serving is not None else None,
            skipped=tuple(self._tickets[ticket_id] for ticket_id in state.skipped),
            displayed_number=state.displayed_number,
            window=window,
            taken_at=self._clock(),
        )

    async def get_ticket(self, ticket_id: UUID) -> Ticket:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    # ------------------------------------------------------------------ mutations

    async def enqueue(self, ticket: Ticket) -> int:
        """Persist a new waiting ticket; return how many tickets wait ahead of it."""

        if ticket.status is not TicketStatus.WAITING:
            raise ValueError("Only waiting tickets can be enqueued")
        scope = ticket.scope
        async with self._locked(scope):
            state = self._scopes[scope].copy()
            ahead = state.append_waiting(ticket)
            await self._commit([ticket], {scope: state})
        logger.info("Queued #%s (%s) in %s, %d ahead", ticket.queue_number, ticket.service_name, scope, ahead)
        return ahead

    async def advance(self, scope: QueueScope, *, actor: str | None = None) -> AdvanceResult:
        """Serve the next ticket, completing whoever was being served."""

        async with self._locked(scope):
            state = self._scopes[scope].copy()
            waiting = state.waiting()
            if not waiting:
                raise QueueEmptyError(f"No tickets waiting in {scope}")

            now = self._clock()
            changed: list[Ticket] = []
            completed: Ticket | None = None
            if state.serving is not None:
                completed = self._transition(self._tickets[state.serving], TicketStatus.COMPLETED, now, actor=actor)
                changed.append(completed)

            next_id = waiting[0]
            state.discard(next_id)
            serving = self._transition(self._tickets[next_id], TicketStatus.SERVING, now, actor=actor)
            changed.append(serving)
            state.serving = serving.id
            state.displayed_number = serving.queue_number

            await self._commit(changed, {scope: state})
        return AdvanceResult(serving=serving, completed=completed)

    async def complete(self, scope: QueueScope, *, actor: str | None = None) -> Ticket:
        async with self._locked(scope):
            state = self._scopes[scope].copy()
            if state.serving is None:
                raise QueueEmptyError(f"No ticket is being served in {scope}")
            completed = self._transition(self._tickets[state.serving], TicketStatus.COMPLETED, self._clock(), actor=actor)
            state.serving = None
            await self._commit([completed], {scope: state})
        return completed

    async def skip(self, scope: QueueScope, *, actor: str | None = None) -> Ticket:
        """Move the next waiting ticket to the skipped list; the serving slot is untouched."""

        async with self._locked(scope):
            state = self._scopes[scope].copy()
            waiting = state.waiting()
            if not waiting:
                raise QueueEmptyError(f"No tickets waiting in {scope}")
            skipped = self._transition(self._tickets[waiting[0]], TicketStatus.SKIPPED, self._clock(), actor=actor)
            state.discard(skipped.id)
            state.skipped.append(skipped.id)
            await self._commit([skipped], {scope: state})
        return skipped

    def recall(self, scope: QueueScope) -> Ticket:
        serving = self.serving(scope)
        if serving is None:
            raise QueueEmptyError(f"No ticket is being served in {scope}")
        return serving

    async def previous(self, scope: QueueScope) -> int:
        """Step the displayed number back by one. Tickets are not touched."""

        async with self._locked(scope):
            state = self._scopes[scope]
            if state.displayed_number <= self._allocator.minimum:
                raise QueueEmptyError(f"No previous number to display in {scope}")
            state.displayed_number -= 1
            return state.displayed_number

    async def requeue_skipped(self, scope: QueueScope, ticket_id: UUID, *, actor: str | None = None) -> Ticket:
        async with self._locked(scope):
            state = self._scopes[scope].copy()
            if ticket_id not in state.skipped:
                raise TicketNotFoundError(f"Ticket {ticket_id} is not skipped in {scope}")
            now = self._clock()
            requeued = self._transition(self._tickets[ticket_id], TicketStatus.WAITING, now, actor=actor, queued_at=now)
            state.discard(ticket_id)
            state.append_waiting(requeued)
            await self._commit([requeued], {scope: state})
        return requeued

    async def requeue_all_skipped(self, scope: QueueScope, *, actor: str | None = None) -> list[Ticket]:
        async with self._locked(scope):
            state = self._scopes[scope].copy()
            if not state.skipped:
                raise QueueEmptyError(f"No skipped tickets in {scope}")
            now = self._clock()
            requeued: list[Ticket] = []
            for ticket_id in list(state.skipped):
                ticket = self._transition(self._tickets[ticket_id], TicketStatus.WAITING, now, actor=actor, queued_at=now)
                state.discard(ticket_id)
                state.append_waiting(ticket)
                requeued.append(ticket)
            await self._commit(requeued, {scope: state})
        return requeued

    async def transfer(self, ticket_id: UUID, target: Window, *, actor: str | None = None) -> Ticket:
        """Move a waiting or serving ticket to the tail of another window's queue."""

        source = self._require_active(ticket_id).scope
        target_scope = QueueScope(target.department, target.id)
        async with self._locked(source, target_scope):
            ticket = self._require_active(ticket_id)
            if ticket.scope != source:
                raise InvalidTransferError(f"Ticket #{ticket.queue_number} moved while the transfer was pending")
            if ticket.status not in (TicketStatus.WAITING, TicketStatus.SERVING):
                raise InvalidTransferError(f"Cannot transfer a {ticket.status.value} ticket")
            if target.department != ticket.department:
                raise InvalidTransferError("Cannot transfer between different departments")
            if target_scope == source:
                raise InvalidTransferError("Cannot transfer to the same window")
            if not target.serves(ticket.service_id):
                raise InvalidTransferError(f"{target.name} does not serve {ticket.service_name}")
            if not target.is_open:
                raise WindowUnavailableError(f"{target.name} is currently closed")

            source_state = self._scopes[source].copy()
            target_state = self._scopes[target_scope].copy()
            now = self._clock()
            if ticket.status is TicketStatus.SERVING:
                moved = self._transition(
                    ticket, TicketStatus.WAITING, now, actor=actor, window_id=target.id, queued_at=now, called_at=None
                )
            else:
                moved = replace(ticket, window_id=target.id, queued_at=now, processed_by=actor or ticket.processed_by)
            source_state.discard(ticket_id)
            target_state.append_waiting(moved)
            await self._commit([moved], {source: source_state, target_scope: target_state})
        logger.info("Transferred #%s from %s to %s", moved.queue_number, source, target_scope)
        return moved

    async def cancel(self, ticket_id: UUID, *, actor: str | None = None) -> Ticket:
        while True:
            scope = self._require_active(ticket_id).scope
            async with self._locked(scope):
                ticket = self._require_active(ticket_id)
                if ticket.scope != scope:
                    continue
                state = self._scopes[scope].copy()
                cancelled = self._transition(ticket, TicketStatus.CANCELLED, self._clock(), actor=actor)
                state.discard(ticket_id)
                await self._commit([cancelled], {scope: state})
                return cancelled

    async def rate(self, ticket_id: UUID, rating: int) -> Ticket:
        while True:
            scope = (await self.get_ticket(ticket_id)).scope
            async with self._locked(scope):
                # re-read under the lock; the ticket may have finished or moved meanwhile
                current = await self.get_ticket(ticket_id)
                if current.scope != scope:
                    continue
                rated = replace(current, rating=rating)
                await self._repository.save_tickets([rated])
                if rated.is_active:
                    self._tickets[ticket_id] = rated
                return rated
