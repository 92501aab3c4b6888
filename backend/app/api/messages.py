"""HTTP endpoints for consultation chat messages."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_user, get_realtime_services
from app.models import User
from app.schemas import MessageCreate, MessageHistory, MessageRead, ReadReceiptResult, UnreadCount
from app.services.messaging import Attachment, Sender
from app.services.runtime import RealtimeServices

router = APIRouter(prefix="/consultations", tags=["messages"])


@router.get("/unread-message-count", response_model=UnreadCount)
def get_unread_message_count(
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> UnreadCount:
    """Count unread messages addressed to the current user across consultations."""

    return UnreadCount(count=services.pipeline.unread_count(current_user.id))


@router.post(
    "/{consultation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_message(
    consultation_id: str,
    payload: MessageCreate,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> MessageRead:
    """Send a message through the same pipeline as the websocket gateway."""

    return await services.pipeline.send_message(
        consultation_id,
        Sender(user_id=current_user.id, role=current_user.role, display_name=current_user.display_name),
        payload.content,
        payload.message_type,
        reply_to_id=payload.reply_to_id,
        attachment=Attachment(
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_size=payload.file_size,
            mime_type=payload.mime_type,
        ),
    )


@router.get("/{consultation_id}/messages", response_model=MessageHistory)
def list_messages(
    consultation_id: str,
    limit: int | None = Query(default=None, ge=1),
    before: datetime | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> MessageHistory:
    return services.pipeline.history(consultation_id, current_user.id, limit=limit, before=before)


@router.put("/{consultation_id}/messages/read", response_model=ReadReceiptResult)
async def mark_messages_read(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> ReadReceiptResult:
    return await services.pipeline.mark_read(consultation_id, current_user.id)
