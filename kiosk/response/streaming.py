from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Mapping

from kiosk.queue.events import QueueEvent, Subscription


class QueueEventStreamer:
    """Turn a channel subscription into SSE/WebSocket friendly payloads.

    Every stream starts with a ``snapshot`` message holding the full public
    view, since events missed while disconnected are never replayed.
    """

    def __init__(self, *, keepalive_seconds: float = 15.0) -> None:
        if keepalive_seconds <= 0:
            raise ValueError("keepalive_seconds must be greater than zero")

        self.keepalive_seconds = keepalive_seconds

    @staticmethod
    def matches(event: QueueEvent, window_id: str | None) -> bool:
        return window_id is None or event.window_id in (None, window_id)

    @staticmethod
    def format_sse(event: str, data: Mapping[str, Any]) -> str:
        return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"

    async def _next_event(self, subscription: Subscription) -> QueueEvent | None:
        try:
            return await asyncio.wait_for(subscription.__anext__(), timeout=self.keepalive_seconds)
        except asyncio.TimeoutError:
            return None

    async def iter_sse(
        self,
        subscription: Subscription,
        snapshot: Mapping[str, Any],
        *,
        window_id: str | None = None,
    ) -> AsyncIterator[str]:
        """Yield Server-Sent Event formatted strings until the client goes away."""

        try:
            yield self.format_sse("snapshot", snapshot)
            while True:
                event = await self._next_event(subscription)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                if self.matches(event, window_id):
                    yield self.format_sse(event.type.value, event.to_dict())
        finally:
            subscription.close()

    @staticmethod
    async def _wait_for_disconnect(websocket) -> None:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

    async def stream_websocket(
        self,
        websocket,
        subscription: Subscription,
        snapshot: Mapping[str, Any],
        *,
        window_id: str | None = None,
    ) -> None:
        """Send events over an accepted WebSocket connection.

        Incoming frames are read and ignored so a client that leaves is noticed
        even while no event passes its window filter.
        """

        disconnected = asyncio.ensure_future(self._wait_for_disconnect(websocket))
        pending: asyncio.Future[QueueEvent] | None = None
        try:
            await websocket.send_json({"type": "snapshot", "payload": json.loads(json.dumps(snapshot, default=str))})
            while True:
                pending = asyncio.ensure_future(subscription.__anext__())
                await asyncio.wait({pending, disconnected}, return_when=asyncio.FIRST_COMPLETED)
                if not pending.done():
                    return
                try:
                    event = pending.result()
                except StopAsyncIteration:
                    return
                pending = None
                if self.matches(event, window_id):
                    await websocket.send_json(event.to_dict())
        finally:
            for task in (pending, disconnected):
                if task is not None and not task.done():
                    task.cancel()
            subscription.close()
