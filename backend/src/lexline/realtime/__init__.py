"""Realtime helpers for websocket presence, channel routing and timers."""

from .presence import InMemoryPresenceTracker, PresenceTracker  # noqa: F401
from .rooms import (  # noqa: F401
    ConnectionSession,
    ConsultationParticipants,
    RoomRouter,
    safe_send_json,
)
from .tasks import DetachedTaskGroup  # noqa: F401
from .timers import AsyncioTimerRegistry, TimerRegistry  # noqa: F401

__all__ = [
    "PresenceTracker",
    "InMemoryPresenceTracker",
    "ConnectionSession",
    "ConsultationParticipants",
    "RoomRouter",
    "safe_send_json",
    "DetachedTaskGroup",
    "TimerRegistry",
    "AsyncioTimerRegistry",
]
