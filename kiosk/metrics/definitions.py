"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .base import DEFAULT_WAIT_BUCKETS

TICKETS_ISSUED = "queue_tickets_issued_total"
ADMIN_COMMANDS = "queue_admin_commands_total"
TICKET_WAIT_SECONDS = "queue_ticket_wait_seconds"
WAITING_TICKETS = "queue_waiting_tickets"
EVENTS_PUBLISHED = "queue_events_published_total"
EVENTS_DROPPED = "queue_events_dropped_total"
PUBLISH_FAILURES = "queue_event_publish_failures_total"


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()
    buckets: Tuple[float, ...] | None = None


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=TICKETS_ISSUED,
        metric_type="counter",
        description="Queue tickets issued by the kiosk.",
        label_names=("department", "priority"),
    ),
    MetricDefinition(
        name=ADMIN_COMMANDS,
        metric_type="counter",
        description="Staff console commands applied to a queue.",
        label_names=("department", "command"),
    ),
    MetricDefinition(
        name=TICKET_WAIT_SECONDS,
        metric_type="distribution",
        description="Seconds between queueing and being called to a window.",
        label_names=("department",),
        buckets=DEFAULT_WAIT_BUCKETS,
    ),
    MetricDefinition(
        name=WAITING_TICKETS,
        metric_type="gauge",
        description="Tickets waiting in a queue after its last change.",
        label_names=("department", "window"),
    ),
    MetricDefinition(
        name=EVENTS_PUBLISHED,
        metric_type="counter",
        description="Real-time events published to subscribers.",
        label_names=("type",),
    ),
    MetricDefinition(
        name=EVENTS_DROPPED,
        metric_type="counter",
        description="Events dropped because a subscriber buffer was full.",
    ),
    MetricDefinition(
        name=PUBLISH_FAILURES,
        metric_type="counter",
        description="Queue updates whose event publication failed.",
    ),
)
