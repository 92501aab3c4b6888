"""Channel membership and fan-out over live websocket connections.

Two kinds of audiences exist. Every authenticated connection joins the
personal channel of its user on connect; a connection may additionally be
joined to at most one consultation channel. Consultation scoped events are
emitted to the consultation channel and to both participants' personal
channels, and a single connection receives each event once even when it
belongs to several of those audiences.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.core.errors import ForbiddenError, NotFoundError
from app.monitoring.metrics import realtime_connections, realtime_events_total

from .presence import OFFLINE, ONLINE, PresenceTracker

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


@dataclass
class ConnectionSession:
    websocket: WebSocket
    user_id: str
    role: str
    display_name: str
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    consultation_id: str | None = None


@dataclass(frozen=True, slots=True)
class ConsultationParticipants:
    """The two parties of a consultation as seen by the router."""

    consultation_id: str
    client_id: str
    lawyer_user_id: str
    status: str | None = None

    def includes(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.lawyer_user_id)

    def counterpart(self, user_id: str) -> str:
        return self.lawyer_user_id if user_id == self.client_id else self.client_id

    @property
    def user_ids(self) -> tuple[str, str]:
        return (self.client_id, self.lawyer_user_id)


ParticipantResolver = Callable[[str], ConsultationParticipants | None]
# online is True on connect transition, False on disconnect transition and
# None when a connection closed while the user still has others open.
PresenceHook = Callable[[ConnectionSession, bool | None], Awaitable[None]]


class RoomRouter:
    """Map logical audiences onto the set of live connections."""

    def __init__(
        self,
        presence: PresenceTracker,
        participant_resolver: ParticipantResolver,
        *,
        on_presence_change: PresenceHook | None = None,
    ) -> None:
        self._presence = presence
        self._resolve_participants = participant_resolver
        self._on_presence_change = on_presence_change
        self._sessions: Dict[str, ConnectionSession] = {}
        self._personal: Dict[str, Set[str]] = defaultdict(set)
        self._consultations: Dict[str, Set[str]] = defaultdict(set)

    @property
    def presence(self) -> PresenceTracker:
        return self._presence

    def session(self, connection_id: str) -> ConnectionSession | None:
        return self._sessions.get(connection_id)

    def sessions_for_user(self, user_id: str) -> list[ConnectionSession]:
        return [self._sessions[cid] for cid in self._personal.get(user_id, ()) if cid in self._sessions]

    # -- membership -------------------------------------------------------

    async def connect(self, session: ConnectionSession) -> bool:
        """Register a connection and announce the user if they just came online."""

        self._sessions[session.connection_id] = session
        self._personal[session.user_id].add(session.connection_id)
        realtime_connections.labels("sessions").inc()
        came_online = self._presence.record_connect(session.user_id, session.connection_id)
        if came_online:
            await self.broadcast_all(
                {"type": "user-status-change", "userId": session.user_id, "status": ONLINE}
            )
            await self._notify_presence_change(session, True)
        return came_online

    async def disconnect(self, session: ConnectionSession) -> bool:
        """Drop a connection and announce the user if it was their last one."""

        if self._sessions.pop(session.connection_id, None) is None:
            return False
        realtime_connections.labels("sessions").dec()
        self._discard(self._personal, session.user_id, session.connection_id)
        self.leave_consultation(session)
        went_offline = self._presence.record_disconnect(session.user_id, session.connection_id)
        if went_offline:
            await self.broadcast_all(
                {"type": "user-status-change", "userId": session.user_id, "status": OFFLINE}
            )
        await self._notify_presence_change(session, False if went_offline else None)
        return went_offline

    async def _notify_presence_change(self, session: ConnectionSession, online: bool | None) -> None:
        if self._on_presence_change is None:
            return
        try:
            await self._on_presence_change(session, online)
        except Exception:
            logger.exception("Presence hook failed for user %s", session.user_id)

    def join_consultation(
        self, session: ConnectionSession, consultation_id: str
    ) -> ConsultationParticipants:
        """Move *session* into the consultation channel after a participant check."""

        participants = self._resolve_participants(consultation_id)
        if participants is None:
            raise NotFoundError("Consultation not found")
        if not participants.includes(session.user_id):
            raise ForbiddenError("Not a participant of this consultation")
        if session.consultation_id and session.consultation_id != consultation_id:
            self.leave_consultation(session)
        self._consultations[consultation_id].add(session.connection_id)
        session.consultation_id = consultation_id
        return participants

    def leave_consultation(self, session: ConnectionSession) -> None:
        if session.consultation_id is None:
            return
        self._discard(self._consultations, session.consultation_id, session.connection_id)
        session.consultation_id = None

    def is_joined(self, session: ConnectionSession, consultation_id: str) -> bool:
        return session.connection_id in self._consultations.get(consultation_id, ())

    def channel_size(self, consultation_id: str) -> int:
        return len(self._consultations.get(consultation_id, ()))

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, connection_id: str) -> None:
        bucket = index.get(key)
        if not bucket:
            return
        bucket.discard(connection_id)
        if not bucket:
            index.pop(key, None)

    # -- emission ---------------------------------------------------------

    async def send(self, session: ConnectionSession, payload: dict[str, Any]) -> bool:
        delivered = await safe_send_json(session.websocket, payload)
        if delivered:
            realtime_events_total.labels(str(payload.get("type")), "outbound").inc()
        return delivered

    async def _deliver(
        self,
        connection_ids: Iterable[str],
        payload: dict[str, Any],
        exclude: Iterable[str] | None,
    ) -> int:
        excluded = set(exclude or ())
        delivered = 0
        for connection_id in list(dict.fromkeys(connection_ids)):
            if connection_id in excluded:
                continue
            session = self._sessions.get(connection_id)
            if session is None:
                continue
            if await self.send(session, payload):
                delivered += 1
        return delivered

    async def emit_to_user(
        self, user_id: str, payload: dict[str, Any], *, exclude: Iterable[str] | None = None
    ) -> int:
        return await self._deliver(list(self._personal.get(user_id, ())), payload, exclude)

    async def emit_to_consultation(
        self,
        consultation_id: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[str] | None = None,
    ) -> int:
        return await self._deliver(list(self._consultations.get(consultation_id, ())), payload, exclude)

    async def emit_to_participants(
        self,
        participants: ConsultationParticipants,
        payload: dict[str, Any],
        *,
        exclude: Iterable[str] | None = None,
    ) -> int:
        """Emit to the consultation channel and both personal channels."""

        targets = list(self._consultations.get(participants.consultation_id, ()))
        for user_id in participants.user_ids:
            targets.extend(self._personal.get(user_id, ()))
        return await self._deliver(targets, payload, exclude)

    async def broadcast_all(
        self, payload: dict[str, Any], *, exclude: Iterable[str] | None = None
    ) -> int:
        return await self._deliver(list(self._sessions), payload, exclude)


__all__ = [
    "safe_send_json",
    "ConnectionSession",
    "ConsultationParticipants",
    "ParticipantResolver",
    "PresenceHook",
    "RoomRouter",
]
