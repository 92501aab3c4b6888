"""Consultation lookups shared by messaging, lifecycle and call services."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from lexline.realtime import ConsultationParticipants

from app.core.clock import as_utc, utcnow
from app.core.errors import ForbiddenError, NotFoundError
from app.models import Consultation, ConsultationStatus, Payment, PaymentStatus


def load_consultation(db: Session, consultation_id: str) -> Consultation:
    consultation = db.get(Consultation, consultation_id)
    if consultation is None:
        raise NotFoundError("Consultation not found")
    return consultation


def require_participant(
    consultation: Consultation, user_id: str, detail: str = "Not a participant of this consultation"
) -> None:
    if not consultation.is_participant(user_id):
        raise ForbiddenError(detail)


def participants_of(consultation: Consultation) -> ConsultationParticipants:
    return ConsultationParticipants(
        consultation_id=consultation.id,
        client_id=consultation.client_id,
        lawyer_user_id=consultation.lawyer_user_id,
        status=consultation.status.value,
    )


def has_succeeded_payment(db: Session, consultation_id: str) -> bool:
    status = db.execute(
        select(Payment.status).where(Payment.consultation_id == consultation_id)
    ).scalar_one_or_none()
    return status == PaymentStatus.SUCCEEDED


def trial_has_lapsed(consultation: Consultation, now: datetime | None = None) -> bool:
    """True when the consultation is in TRIAL and its trial end is in the past."""

    if consultation.status != ConsultationStatus.TRIAL or consultation.trial_end_at is None:
        return False
    return as_utc(consultation.trial_end_at) < (now or utcnow())


class ParticipantDirectory:
    """Resolve consultation participants for channel membership checks."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def __call__(self, consultation_id: str) -> ConsultationParticipants | None:
        with self._session_factory() as db:
            consultation = db.get(Consultation, consultation_id)
            if consultation is None:
                return None
            return participants_of(consultation)
