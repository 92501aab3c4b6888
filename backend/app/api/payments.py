"""Payment provider webhook that moves trials to paid consultations."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from app.api.deps import get_realtime_services
from app.core.errors import ConflictError
from app.core.webhooks import verify_signed_request
from app.models import ConsultationStatus, PaymentStatus
from app.schemas import PaymentWebhookEvent, PaymentWebhookResult
from app.services.runtime import RealtimeServices

router = APIRouter(prefix="/payments", tags=["payments"])

logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=PaymentWebhookResult)
async def payment_webhook(
    request: Request,
    services: RealtimeServices = Depends(get_realtime_services),
) -> PaymentWebhookResult:
    settings = services.settings
    raw_body = await verify_signed_request(
        request, settings.payment_webhook_secret, max_age=settings.payment_webhook_max_age_seconds
    )
    try:
        event = PaymentWebhookEvent.model_validate_json(raw_body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors(include_url=False)
        ) from exc

    lifecycle = services.lifecycle
    if event.status == PaymentStatus.SUCCEEDED:
        try:
            consultation = await lifecycle.mark_paid(
                event.consultation_id,
                amount_cents=event.amount_cents,
                provider_reference=event.provider_reference,
            )
        except ConflictError as exc:
            if exc.extra["currentStatus"] == ConsultationStatus.PENDING.value:
                # Not recorded; the provider redelivers once the trial has started.
                raise
            # Recorded, but the consultation can no longer become ACTIVE.
            logger.warning("Payment for consultation %s not applied: %s", event.consultation_id, exc.message)
            return PaymentWebhookResult(
                consultation_id=event.consultation_id, status=exc.extra["currentStatus"]
            )
    elif event.status == PaymentStatus.FAILED:
        consultation = lifecycle.record_failed_payment(
            event.consultation_id,
            amount_cents=event.amount_cents,
            provider_reference=event.provider_reference,
        )
    else:
        consultation = lifecycle.current(event.consultation_id)

    return PaymentWebhookResult(consultation_id=consultation.id, status=consultation.status)
