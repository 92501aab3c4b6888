"""Presence lookup for clients that are not holding a websocket."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_realtime_services
from app.models import User
from app.services.runtime import RealtimeServices

router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("", response_model=dict[str, str])
def get_presence(
    user_ids: str = Query(default="", alias="userIds", description="Comma separated user ids"),
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> dict[str, str]:
    ids = [value.strip() for value in user_ids.split(",") if value.strip()]
    return services.presence.statuses(ids)
