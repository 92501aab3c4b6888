"""Tagged websocket event payloads, one closed set per direction.

Every frame is a JSON object whose ``type`` field names the event. Inbound
frames are parsed through :data:`inbound_event_adapter`; outbound events are
built from the models below and serialized with ``to_wire()``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter, field_serializer

from app.core.clock import as_utc
from app.models.enums import ConsultationStatus, MessageType
from app.schemas.messages import CamelModel, MessageRead


class _Inbound(CamelModel):
    pass


class JoinConsultationEvent(_Inbound):
    type: Literal["join-consultation"]
    consultation_id: str


class SendMessageEvent(_Inbound):
    type: Literal["send-message"]
    consultation_id: str
    content: str | None = None
    message_type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class TypingEvent(_Inbound):
    type: Literal["typing-start", "typing-stop"]
    consultation_id: str


class ReadReceiptEvent(_Inbound):
    type: Literal["read-receipt"]
    consultation_id: str


class UsersStatusQuery(_Inbound):
    type: Literal["get-users-status"]
    user_ids: list[str] = Field(default_factory=list)


class OnlineLawyersQuery(_Inbound):
    type: Literal["get-online-lawyers"]


class PingEvent(_Inbound):
    type: Literal["ping", "pong"]


InboundEvent = Annotated[
    Union[
        JoinConsultationEvent,
        SendMessageEvent,
        TypingEvent,
        ReadReceiptEvent,
        UsersStatusQuery,
        OnlineLawyersQuery,
        PingEvent,
    ],
    Field(discriminator="type"),
]

inbound_event_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


# -- outbound -----------------------------------------------------------------


class _Outbound(CamelModel):
    pass


class JoinedConsultation(_Outbound):
    type: Literal["joined-consultation"] = "joined-consultation"
    consultation_id: str


class NewMessage(_Outbound):
    type: Literal["new-message"] = "new-message"
    consultation_id: str
    message: MessageRead


class MessageBlocked(_Outbound):
    type: Literal["message-blocked"] = "message-blocked"
    consultation_id: str
    reason: str
    category: str | None = None


class TypingSignal(_Outbound):
    type: Literal["typing-start", "typing-stop"]
    consultation_id: str
    user_id: str
    name: str | None = None


class MessagesRead(_Outbound):
    type: Literal["messages-read"] = "messages-read"
    consultation_id: str
    read_by: str


class UnreadMessageCount(_Outbound):
    type: Literal["unread-message-count"] = "unread-message-count"
    count: int


class UsersStatusResponse(_Outbound):
    type: Literal["users-status-response"] = "users-status-response"
    statuses: dict[str, str]


class OnlineLawyersResponse(_Outbound):
    """Lawyer profile id to status for every lawyer currently connected."""

    type: Literal["online-lawyers-response"] = "online-lawyers-response"
    statuses: dict[str, str]


class ConsultationStatusChange(_Outbound):
    type: Literal["consultation-status-change"] = "consultation-status-change"
    consultation_id: str
    status: ConsultationStatus
    previous_status: ConsultationStatus | None = None
    trial_end_at: datetime | None = None
    ended_at: datetime | None = None
    payment_received: bool = False
    reason: str | None = None

    @field_serializer("trial_end_at", "ended_at")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        value = as_utc(value)
        return value.isoformat() if value is not None else None


class LawyerStatusChange(_Outbound):
    type: Literal["lawyer-status-change"] = "lawyer-status-change"
    lawyer_id: str
    user_id: str
    status: str


class IncomingCall(_Outbound):
    type: Literal["incoming-call"] = "incoming-call"
    call_id: str
    consultation_id: str
    caller_id: str
    caller_name: str
    call_type: str
    is_video: bool


class CallEvent(_Outbound):
    """call-accepted, call-declined, call-missed and call-ended share one shape."""

    type: Literal["call-accepted", "call-declined", "call-missed", "call-ended"]
    call_id: str
    consultation_id: str | None = None
    accepted_at: str | None = None
    ended_at: str | None = None
    duration: int | None = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ErrorEvent(_Outbound):
    type: Literal["error"] = "error"
    message: str
    code: str | None = None


class Pong(_Outbound):
    type: Literal["pong"] = "pong"


__all__ = [
    "InboundEvent",
    "inbound_event_adapter",
    "JoinConsultationEvent",
    "SendMessageEvent",
    "TypingEvent",
    "ReadReceiptEvent",
    "UsersStatusQuery",
    "OnlineLawyersQuery",
    "PingEvent",
    "JoinedConsultation",
    "NewMessage",
    "MessageBlocked",
    "TypingSignal",
    "MessagesRead",
    "UnreadMessageCount",
    "UsersStatusResponse",
    "OnlineLawyersResponse",
    "ConsultationStatusChange",
    "LawyerStatusChange",
    "IncomingCall",
    "CallEvent",
    "ErrorEvent",
    "Pong",
]
