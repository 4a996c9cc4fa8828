from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from kiosk.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def export_metrics() -> PlainTextResponse:
    payload = PrometheusExporter(metrics_registry).export()
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4")
