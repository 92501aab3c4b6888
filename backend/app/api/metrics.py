"""Prometheus-compatible metrics endpoint."""

from fastapi import APIRouter, Depends, Response

from app.api.deps import get_realtime_services
from app.monitoring.metrics import realtime_background_work, realtime_connections
from app.monitoring.registry import registry
from app.services.runtime import RealtimeServices


router = APIRouter(tags=["metrics"])


def _snapshot(services: RealtimeServices) -> None:
    realtime_connections.labels("users").set(len(services.presence.online_user_ids()))
    realtime_background_work.labels("timer_keys").set(len(services.timers.keys()))
    realtime_background_work.labels("detached_tasks").set(len(services.tasks))


@router.get("/metrics", response_class=Response)
def export_metrics(services: RealtimeServices = Depends(get_realtime_services)) -> Response:
    """Expose collected metrics for Prometheus scraping."""

    _snapshot(services)
    return Response(content=registry.render(), media_type="text/plain; version=0.0.4")
