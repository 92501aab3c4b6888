"""Schemas for consultation lifecycle endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_serializer

from app.core.clock import as_utc
from app.models.enums import ConsultationStatus, PaymentStatus
from app.schemas.messages import CamelModel


class ConsultationRead(CamelModel):
    id: str
    client_id: str
    lawyer_id: str
    status: ConsultationStatus
    started_at: datetime | None = None
    trial_end_at: datetime | None = None
    ended_at: datetime | None = None
    notes: str | None = None
    updated_at: datetime | None = None

    @field_serializer("started_at", "trial_end_at", "ended_at", "updated_at")
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        value = as_utc(value)
        return value.isoformat() if value is not None else None


class ReasonRequest(CamelModel):
    """Optional free-text reason for decline and cancel."""

    reason: str | None = Field(default=None, max_length=1000)


class PaymentWebhookEvent(CamelModel):
    """Payment provider notification relayed by the payment collaborator."""

    consultation_id: str
    status: PaymentStatus
    amount_cents: int | None = Field(default=None, ge=0)
    provider_reference: str | None = None


class PaymentWebhookResult(CamelModel):
    received: bool = True
    consultation_id: str
    status: ConsultationStatus
