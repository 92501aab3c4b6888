"""WebSocket gateway for consultation chat, presence and call signaling."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lexline.realtime import ConnectionSession, safe_send_json

from app.api.deps import get_user_from_token
from app.core.errors import ContentBlockedError, ErrorKind, ServiceError
from app.models import User
from app.monitoring.metrics import realtime_events_total
from app.schemas.events import (
    ErrorEvent,
    JoinConsultationEvent,
    JoinedConsultation,
    MessageBlocked,
    OnlineLawyersQuery,
    OnlineLawyersResponse,
    PingEvent,
    Pong,
    ReadReceiptEvent,
    SendMessageEvent,
    TypingEvent,
    UsersStatusQuery,
    UsersStatusResponse,
    inbound_event_adapter,
)
from app.services.messaging import Attachment, Sender
from app.services.runtime import RealtimeServices, get_services

router = APIRouter(tags=["ws"])

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_FAILED_REASON = "Authentication failed"


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = False
            if interval <= 0:
                should_ping = True
            else:
                if now - last_activity >= interval and (
                    last_ping_sent is None or now - last_ping_sent >= interval
                ):
                    should_ping = True

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _resolve_user(websocket: WebSocket, session_factory: Callable[[], Session]) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=AUTH_FAILED_REASON)
        return None

    try:
        with session_factory() as db:
            user = get_user_from_token(token, db)
            db.expunge(user)
            return user
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=AUTH_FAILED_REASON)
        return None


async def _send_error(websocket: WebSocket, detail: str, code: str | None = None) -> None:
    await safe_send_json(websocket, ErrorEvent(message=detail, code=code).to_wire())


async def _handle_send_message(
    services: RealtimeServices, session: ConnectionSession, event: SendMessageEvent
) -> None:
    try:
        await services.pipeline.send_message(
            event.consultation_id,
            Sender.from_session(session),
            event.content,
            event.message_type,
            reply_to_id=event.reply_to_id,
            attachment=Attachment(
                file_url=event.file_url,
                file_name=event.file_name,
                file_size=event.file_size,
                mime_type=event.mime_type,
            ),
        )
    except ContentBlockedError as exc:
        await services.router.send(
            session,
            MessageBlocked(
                consultation_id=event.consultation_id, reason=exc.reason, category=exc.category
            ).to_wire(),
        )


async def _dispatch(services: RealtimeServices, session: ConnectionSession, event: Any) -> None:
    router = services.router
    if isinstance(event, JoinConsultationEvent):
        router.join_consultation(session, event.consultation_id)
        await router.send(session, JoinedConsultation(consultation_id=event.consultation_id).to_wire())
    elif isinstance(event, SendMessageEvent):
        await _handle_send_message(services, session, event)
    elif isinstance(event, TypingEvent):
        await services.pipeline.relay_typing(session, event.consultation_id, event.type == "typing-start")
    elif isinstance(event, ReadReceiptEvent):
        await services.pipeline.relay_read_receipt(session, event.consultation_id)
    elif isinstance(event, UsersStatusQuery):
        statuses = router.presence.statuses(event.user_ids)
        await router.send(session, UsersStatusResponse(statuses=statuses).to_wire())
    elif isinstance(event, OnlineLawyersQuery):
        try:
            lawyers = services.online_lawyers()
        except SQLAlchemyError:
            logger.exception("Failed to load online lawyers")
            lawyers = {}
        await router.send(session, OnlineLawyersResponse(statuses=lawyers).to_wire())
    elif isinstance(event, PingEvent):
        if event.type == "ping":
            await router.send(session, Pong().to_wire())


@router.websocket("/ws")
async def websocket_gateway(websocket: WebSocket) -> None:
    """Handle the single multiplexed realtime connection of a user."""

    services = get_services()
    user = await _resolve_user(websocket, services.session_factory)
    if user is None:
        return

    await websocket.accept()
    session = ConnectionSession(
        websocket=websocket,
        user_id=user.id,
        role=user.role.value,
        display_name=user.display_name,
    )
    await services.router.connect(session)

    pending = services.calls.pending_call_for(user.id)
    if pending is not None:
        await services.router.send(session, pending.to_wire())

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=services.settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=services.settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format", "VALIDATION")
                continue

            if not isinstance(payload, dict):
                await _send_error(websocket, "Message payload must be a JSON object", "VALIDATION")
                continue

            try:
                event = inbound_event_adapter.validate_python(payload)
            except ValidationError as exc:
                logger.debug("Rejected websocket payload from %s: %s", user.id, exc)
                await _send_error(websocket, f"Unsupported or malformed event: {payload.get('type')}", "VALIDATION")
                continue

            realtime_events_total.labels(event.type, "inbound").inc()
            try:
                await _dispatch(services, session, event)
            except ServiceError as exc:
                await _send_error(websocket, exc.message, exc.kind.value)
            except Exception:
                logger.exception("Failed to handle %s event from %s", event.type, user.id)
                await _send_error(websocket, "Internal error", ErrorKind.UPSTREAM_FAILURE.value)
    finally:
        await services.router.disconnect(session)
