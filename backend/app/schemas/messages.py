"""Schemas related to consultation chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from app.core.clock import as_utc
from app.models.enums import MessageType


class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class MessageSender(CamelModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: str | None = None


class ReplyPreview(CamelModel):
    id: str
    content: str | None = None
    sender_id: str
    message_type: MessageType
    sender: MessageSender | None = None


class MessageRead(CamelModel):
    """Serialized representation of a persisted message."""

    id: str
    consultation_id: str
    sender_id: str
    sender: MessageSender | None = None
    message_type: MessageType
    content: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None
    reply_to_id: str | None = None
    reply_to: ReplyPreview | None = None
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime

    @field_serializer("read_at", "created_at")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        value = as_utc(value)
        return value.isoformat() if value is not None else None


class MessageCreate(CamelModel):
    """Body of the HTTP send-message fallback."""

    content: str | None = Field(default=None, description="Text body; required for TEXT messages")
    message_type: MessageType = MessageType.TEXT
    reply_to_id: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = Field(default=None, ge=0)
    mime_type: str | None = None


class MessageHistory(CamelModel):
    items: list[MessageRead]
    has_more: bool = False


class ReadReceiptResult(CamelModel):
    consultation_id: str
    updated: int
    unread_count: int


class UnreadCount(CamelModel):
    count: int
