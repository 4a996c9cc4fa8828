from __future__ import annotations

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from kiosk.api.errors import queue_http_error
from kiosk.api.routes.queue import public_view_response
from kiosk.dependencies.queue import DispatcherDep
from kiosk.queue.errors import QueueError
from kiosk.queue.models import Department
from kiosk.response import QueueEventStreamer

router = APIRouter(prefix="/events", tags=["events"])


@router.get(
    "/{department}",
    response_class=StreamingResponse,
    summary="Stream queue updates via Server-Sent Events",
)
async def stream_queue_events(
    department: Department,
    dispatcher: DispatcherDep,
    window_id: str | None = Query(default=None, description="Only forward events for this window"),
    keepalive: float = Query(15.0, gt=0, le=120, description="Seconds between keepalive comments"),
) -> StreamingResponse:
    # subscribe first so nothing published after the snapshot is missed
    subscription = dispatcher.broadcaster.subscribe(department.value)
    try:
        snapshot = public_view_response(dispatcher.get_public_view(department, window_id)).model_dump(mode="json")
    except QueueError as exc:
        subscription.close()
        raise queue_http_error(exc) from exc

    streamer = QueueEventStreamer(keepalive_seconds=keepalive)
    return StreamingResponse(
        streamer.iter_sse(subscription, snapshot, window_id=window_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.websocket("/{department}/ws")
async def stream_queue_events_websocket(
    websocket: WebSocket,
    department: Department,
    window_id: str | None = None,
) -> None:
    dispatcher = getattr(websocket.app.state, "dispatcher", None)
    await websocket.accept()
    if dispatcher is None:
        await websocket.close(code=1013, reason="Queue service is not configured")
        return

    subscription = dispatcher.broadcaster.subscribe(department.value)
    try:
        snapshot = public_view_response(dispatcher.get_public_view(department, window_id)).model_dump(mode="json")
    except QueueError as exc:
        subscription.close()
        await websocket.close(code=1008, reason=str(exc))
        return

    streamer = QueueEventStreamer()
    try:
        await streamer.stream_websocket(websocket, subscription, snapshot, window_id=window_id)
    except WebSocketDisconnect:  # pragma: no cover - connection closed by client
        return
    finally:
        subscription.close()
