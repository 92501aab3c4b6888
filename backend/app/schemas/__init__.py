"""Pydantic schemas for API payloads and websocket events."""

from .calls import CallCredentials, CallInitiateRequest, CallResponse
from .consultations import (
    ConsultationRead,
    PaymentWebhookEvent,
    PaymentWebhookResult,
    ReasonRequest,
)
from .messages import (
    CamelModel,
    MessageCreate,
    MessageHistory,
    MessageRead,
    MessageSender,
    ReadReceiptResult,
    ReplyPreview,
    UnreadCount,
)

__all__ = [
    "CamelModel",
    "CallCredentials",
    "CallInitiateRequest",
    "CallResponse",
    "ConsultationRead",
    "PaymentWebhookEvent",
    "PaymentWebhookResult",
    "ReasonRequest",
    "MessageCreate",
    "MessageHistory",
    "MessageRead",
    "MessageSender",
    "ReadReceiptResult",
    "ReplyPreview",
    "UnreadCount",
]
