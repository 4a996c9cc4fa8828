from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterable

from .errors import ExhaustedRangeError
from .models import Department

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _NumberingState:
    last_issued: int | None = None
    in_use: set[int] = field(default_factory=set)


class TicketNumberAllocator:
    """Issue cycling queue numbers, unique per department among active tickets.

    Numbers are shared by every window of a department. After ``maximum`` the
    counter wraps to ``minimum``; numbers still held by a non-terminal ticket
    are skipped.
    """

    def __init__(self, *, minimum: int = 1, maximum: int = 99) -> None:
        if minimum < 1 or maximum < minimum:
            raise ValueError("queue number range must satisfy 1 <= minimum <= maximum")
        self.minimum = minimum
        self.maximum = maximum
        self._states: dict[Department, _NumberingState] = defaultdict(_NumberingState)
        self._locks: dict[Department, Lock] = defaultdict(Lock)
        self._registry_lock = Lock()

    @property
    def capacity(self) -> int:
        return self.maximum - self.minimum + 1

    def _successor(self, number: int) -> int:
        return self.minimum if number >= self.maximum else number + 1

    def _lock_for(self, department: Department) -> Lock:
        with self._registry_lock:
            return self._locks[department]

    def seed(self, department: Department, in_use: Iterable[int], last_issued: int | None) -> None:
        """Initialise a department from persisted active tickets."""

        with self._lock_for(department):
            state = self._states[department]
            state.in_use = {number for number in in_use if self.minimum <= number <= self.maximum}
            state.last_issued = last_issued

    def allocate(self, department: Department) -> int:
        with self._lock_for(department):
            state = self._states[department]
            if len(state.in_use) >= self.capacity:
                raise ExhaustedRangeError(
                    f"All queue numbers {self.minimum}-{self.maximum} are in use for {department.value}"
                )

            candidate = self.minimum if state.last_issued is None else self._successor(state.last_issued)
            for _ in range(self.capacity):
                if candidate not in state.in_use:
                    state.in_use.add(candidate)
                    state.last_issued = candidate
                    return candidate
                candidate = self._successor(candidate)

            raise ExhaustedRangeError(  # pragma: no cover - guarded by the capacity check above
                f"All queue numbers {self.minimum}-{self.maximum} are in use for {department.value}"
            )

    def release(self, department: Department, number: int) -> None:
        with self._lock_for(department):
            self._states[department].in_use.discard(number)
        logger.debug("Released queue number %s for %s", number, department.value)

    def in_use(self, department: Department) -> frozenset[int]:
        with self._lock_for(department):
            return frozenset(self._states[department].in_use)

    def last_issued(self, department: Department) -> int | None:
        with self._lock_for(department):
            return self._states[department].last_issued
