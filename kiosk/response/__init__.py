"""Streaming helpers for live queue displays."""

from .streaming import QueueEventStreamer

__all__ = ["QueueEventStreamer"]
