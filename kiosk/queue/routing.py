from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from .errors import NoWindowAvailableError, ServiceNotFoundError, WindowNotFoundError
from .models import Department, QueueScope, Service, Window

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# Legacy kiosk builds submit short names for some services.
DEFAULT_SERVICE_ALIASES: Mapping[str, str] = {
    "enroll": "Enrollment Verification",
    "transcript": "Transcript Request",
    "tor": "Transcript Request",
}


def normalize_service_name(name: str) -> str:
    """Collapse whitespace, casefold and unicode-normalize a service name."""

    normalized = unicodedata.normalize("NFKC", name or "")
    normalized = _WHITESPACE_RE.sub(" ", normalized.strip())
    return normalized.casefold()


@dataclass(slots=True, frozen=True)
class RouteTarget:
    """Where a new ticket should be queued."""

    service: Service
    window: Window | None

    @property
    def scope(self) -> QueueScope:
        return QueueScope(self.service.department, self.window.id if self.window else None)


class WindowRouter:
    """Resolve (department, service name) pairs to a service window."""

    def __init__(
        self,
        services: Iterable[Service],
        windows: Iterable[Window],
        *,
        aliases: Mapping[str, str] | None = None,
        shared_departments: Iterable[Department] = (),
        load: Callable[[QueueScope], int] | None = None,
    ) -> None:
        self._services: dict[str, Service] = {service.id: service for service in services}
        self._windows: dict[str, Window] = {window.id: window for window in windows}
        merged_aliases = {**DEFAULT_SERVICE_ALIASES, **(aliases or {})}
        self._aliases = {normalize_service_name(key): value for key, value in merged_aliases.items()}
        self._shared_departments = frozenset(shared_departments)
        self._load = load or (lambda scope: 0)

    def bind_load(self, load: Callable[[QueueScope], int]) -> None:
        self._load = load

    def is_shared(self, department: Department) -> bool:
        return department in self._shared_departments

    def services_for(self, department: Department, *, active_only: bool = True) -> list[Service]:
        services = [
            service
            for service in self._services.values()
            if service.department == department and (service.is_active or not active_only)
        ]
        return sorted(services, key=lambda service: service.name)

    def get_service(self, service_id: str) -> Service:
        service = self._services.get(service_id)
        if service is None:
            raise ServiceNotFoundError(f"Service {service_id} not found")
        return service

    def visible_services(self, department: Department) -> list[Service]:
        """Active services a kiosk can offer right now.

        Shared-queue departments offer every active service. Elsewhere a service
        is visible while at least one open window serves it.
        """

        if self.is_shared(department):
            return self.services_for(department)

        visible: dict[str, Service] = {}
        for window in self.windows_for(department, open_only=True):
            for service_id in window.service_ids:
                if service_id in visible:
                    continue
                try:
                    service = self.get_service(service_id)
                except ServiceNotFoundError:
                    logger.warning("Window %s lists unknown service %s", window.id, service_id)
                    continue
                if service.department == department and service.is_active:
                    visible[service_id] = service
        return sorted(visible.values(), key=lambda service: service.name)

    def resolve_service(self, department: Department, service_name: str) -> Service:
        wanted = normalize_service_name(service_name)
        if not wanted:
            raise ServiceNotFoundError("Service name is required")
        canonical = self._aliases.get(wanted)
        candidates = {wanted}
        if canonical is not None:
            candidates.add(normalize_service_name(canonical))

        for service in self.services_for(department):
            if normalize_service_name(service.name) in candidates:
                return service
        raise ServiceNotFoundError(f"Service '{service_name}' is not offered by {department.value}")

    def get_window(self, window_id: str) -> Window:
        window = self._windows.get(window_id)
        if window is None:
            raise WindowNotFoundError(f"Window {window_id} not found")
        return window

    def windows_for(self, department: Department, *, open_only: bool = False) -> list[Window]:
        windows = [
            window
            for window in self._windows.values()
            if window.department == department and (window.is_open or not open_only)
        ]
        return sorted(windows, key=lambda window: (window.number, window.name))

    def update_window(self, window: Window) -> None:
        if window.id not in self._windows:
            raise WindowNotFoundError(f"Window {window.id} not found")
        self._windows[window.id] = window

    def scope_for(self, department: Department, window_id: str | None) -> QueueScope:
        """Validate a (department, window) pair coming from a caller."""

        if window_id is None:
            if not self.is_shared(department):
                raise WindowNotFoundError(f"{department.value} requires a window to be selected")
            return QueueScope(department)
        window = self.get_window(window_id)
        if window.department != department:
            raise WindowNotFoundError(f"Window {window_id} does not belong to {department.value}")
        return QueueScope(department, window.id)

    def route(self, department: Department, service_name: str) -> RouteTarget:
        service = self.resolve_service(department, service_name)
        if self.is_shared(department):
            return RouteTarget(service=service, window=None)

        candidates = [window for window in self.windows_for(department, open_only=True) if window.serves(service.id)]
        if not candidates:
            logger.warning("No open window serves %s in %s", service.name, department.value)
            raise NoWindowAvailableError(f"Service '{service.name}' is currently unavailable - no open window")

        chosen = min(
            candidates,
            key=lambda window: (self._load(QueueScope(department, window.id)), window.number, window.name),
        )
        logger.debug("Routed %s/%s to window %s", department.value, service.name, chosen.name)
        return RouteTarget(service=service, window=chosen)
