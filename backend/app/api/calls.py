"""HTTP endpoints for voice and video call signaling."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_user, get_realtime_services
from app.models import User
from app.schemas import CallCredentials, CallInitiateRequest, CallResponse
from app.services.runtime import RealtimeServices

router = APIRouter(prefix="/calls", tags=["calls"])


@router.post("", response_model=CallResponse, status_code=status.HTTP_201_CREATED)
async def initiate_call(
    payload: CallInitiateRequest,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallResponse:
    """Ring the other participant of a consultation."""

    return await services.calls.initiate_call(payload.consultation_id, current_user.id, payload.type)


@router.post("/{call_id}/accept", response_model=CallResponse)
async def accept_call(
    call_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallResponse:
    return await services.calls.accept_call(call_id, current_user.id)


@router.post("/{call_id}/decline", response_model=CallResponse)
async def decline_call(
    call_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallResponse:
    return await services.calls.decline_call(call_id, current_user.id)


@router.post("/{call_id}/end", response_model=CallResponse)
async def end_call(
    call_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallResponse:
    return await services.calls.end_call(call_id, current_user.id)


@router.get("/{call_id}/token", response_model=CallCredentials)
def get_call_token(
    call_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallCredentials:
    """Issue a fresh RTC token for an existing call, e.g. after the old one expired."""

    return services.calls.get_call_token(call_id, current_user.id)


@router.get("/{call_id}", response_model=CallResponse)
def get_call(
    call_id: str,
    current_user: User = Depends(get_current_user),
    services: RealtimeServices = Depends(get_realtime_services),
) -> CallResponse:
    return services.calls.get_call(call_id, current_user.id)
