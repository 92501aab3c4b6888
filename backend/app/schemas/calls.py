"""Schemas for call signaling endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from lexline.calls import CallType

from app.schemas.messages import CamelModel


class CallInitiateRequest(CamelModel):
    consultation_id: str
    type: CallType = Field(description="voice or video")


class CallCredentials(CamelModel):
    rtc_app_id: str | None = None
    rtc_token: str
    rtc_uid: int
    channel_name: str


class CallResponse(CamelModel):
    call: dict[str, Any]
    credentials: CallCredentials | None = None
