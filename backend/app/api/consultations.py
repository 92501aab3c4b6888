"""Consultation lifecycle transitions exposed over HTTP."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from app.api.deps import get_current_user, get_realtime_services
from app.models import User
from app.schemas import ConsultationRead, ReasonRequest
from app.services.runtime import RealtimeServices

router = APIRouter(prefix="/consultations", tags=["consultations"])


@router.post("/{consultation_id}/accept", response_model=ConsultationRead)
async def accept_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> ConsultationRead:
    """Start the free trial of a pending consultation."""

    return await services.lifecycle.accept(consultation_id, current_user.id)


@router.post("/{consultation_id}/decline", response_model=ConsultationRead)
async def decline_consultation(
    consultation_id: str,
    payload: ReasonRequest | None = Body(default=None),
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> ConsultationRead:
    reason = payload.reason if payload else None
    return await services.lifecycle.decline(consultation_id, current_user.id, reason)


@router.post("/{consultation_id}/complete", response_model=ConsultationRead)
async def complete_consultation(
    consultation_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> ConsultationRead:
    return await services.lifecycle.complete(consultation_id, current_user.id)


@router.post("/{consultation_id}/cancel", response_model=ConsultationRead)
async def cancel_consultation(
    consultation_id: str,
    payload: ReasonRequest | None = Body(default=None),
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> ConsultationRead:
    reason = payload.reason if payload else None
    return await services.lifecycle.cancel(consultation_id, current_user.id, reason)
