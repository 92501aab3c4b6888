"""Call signaling state and RTC credential helpers."""

from .signaling import (  # noqa: F401
    CallSession,
    CallStatus,
    CallStore,
    CallType,
    InMemoryCallStore,
    build_channel_name,
    compute_duration,
    user_id_to_uid,
)
from .tokens import RtcTokenIssuer, AgoraRtcTokenIssuer  # noqa: F401

__all__ = [
    "CallSession",
    "CallStatus",
    "CallStore",
    "CallType",
    "InMemoryCallStore",
    "RtcTokenIssuer",
    "AgoraRtcTokenIssuer",
    "build_channel_name",
    "compute_duration",
    "user_id_to_uid",
]
