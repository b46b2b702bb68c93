"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Request, Response

from app.monitoring.metrics import realtime_active_calls, realtime_rooms
from app.monitoring.registry import registry


router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=Response)
def export_metrics(request: Request) -> Response:
    """Render every metric, sampling hub gauges at scrape time."""

    hub = getattr(request.app.state, "hub", None)
    if hub is not None:
        realtime_active_calls.set(len(hub.calls.calls()))
        realtime_rooms.set(len(hub.rooms.rooms()))

    payload = registry.render()
    return Response(content=payload, media_type="text/plain; version=0.0.4")
