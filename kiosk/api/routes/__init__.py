"""Route modules exposed by the API package."""

from . import admin, events, metrics, ping, queue

__all__ = ["admin", "events", "metrics", "ping", "queue"]
