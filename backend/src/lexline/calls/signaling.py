"""Helpers for ephemeral voice and video call records.

Call sessions live in process memory only. The transport UID handed to the
RTC provider is derived from the user id with a 31-multiplier string hash,
so the same user always gets the same UID. Two distinct user ids can in
theory map onto the same UID; that collision is accepted as a known
limitation and is not guarded against.
"""

from __future__ import annotations

import math
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Protocol

# UIDs stay inside the positive signed 32-bit range with 0 excluded.
UID_MODULUS = 0x7FFFFFFE
_CHANNEL_ALPHABET = string.ascii_lowercase + string.digits


class CallStatus(str, Enum):
    RINGING = "RINGING"
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"
    MISSED = "MISSED"
    ENDED = "ENDED"


class CallType(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


TERMINAL_CALL_STATUSES = frozenset({CallStatus.DECLINED, CallStatus.MISSED, CallStatus.ENDED})


def user_id_to_uid(user_id: str) -> int:
    """Return the stable numeric transport UID for *user_id* (1..2,147,483,646)."""

    value = 0
    for char in str(user_id):
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    return (value % UID_MODULUS) + 1


def build_channel_name(now_ms: int | None = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_CHANNEL_ALPHABET) for _ in range(7))
    return f"call_{stamp}_{suffix}"


def compute_duration(started_at: datetime | None, ended_at: datetime) -> int:
    """Whole seconds between start and end; zero for calls that never connected."""

    if started_at is None:
        return 0
    seconds = (ended_at - started_at).total_seconds()
    return max(math.floor(seconds + 0.5), 0)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class CallSession:
    call_id: str
    consultation_id: str
    initiator_id: str
    receiver_id: str
    call_type: CallType
    channel_name: str
    initiator_uid: int
    receiver_uid: int
    initiator_name: str
    receiver_name: str
    created_at: datetime
    status: CallStatus = CallStatus.RINGING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int = 0

    def party_of(self, user_id: str) -> str | None:
        if user_id == self.initiator_id:
            return "initiator"
        if user_id == self.receiver_id:
            return "receiver"
        return None

    def uid_for(self, user_id: str) -> int:
        return self.initiator_uid if user_id == self.initiator_id else self.receiver_uid

    @property
    def is_video(self) -> bool:
        return self.call_type == CallType.VIDEO

    def to_public(self) -> dict[str, Any]:
        return {
            "callId": self.call_id,
            "consultationId": self.consultation_id,
            "initiatorId": self.initiator_id,
            "receiverId": self.receiver_id,
            "initiatorName": self.initiator_name,
            "receiverName": self.receiver_name,
            "callType": self.call_type.value,
            "status": self.status.value,
            "channelName": self.channel_name,
            "initiatorUid": self.initiator_uid,
            "receiverUid": self.receiver_uid,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "duration": self.duration,
        }


class CallStore(Protocol):
    """Storage seam for call sessions."""

    def add(self, call: CallSession) -> None: ...

    def get(self, call_id: str) -> CallSession | None: ...

    def remove(self, call_id: str) -> CallSession | None: ...

    def find_ringing_for(self, receiver_id: str) -> CallSession | None: ...


class InMemoryCallStore:
    def __init__(self) -> None:
        self._calls: Dict[str, CallSession] = {}

    def add(self, call: CallSession) -> None:
        self._calls[call.call_id] = call

    def get(self, call_id: str) -> CallSession | None:
        return self._calls.get(call_id)

    def remove(self, call_id: str) -> CallSession | None:
        return self._calls.pop(call_id, None)

    def find_ringing_for(self, receiver_id: str) -> CallSession | None:
        ringing = [
            call
            for call in self._calls.values()
            if call.receiver_id == receiver_id and call.status == CallStatus.RINGING
        ]
        if not ringing:
            return None
        return max(ringing, key=lambda call: call.created_at)

    def __len__(self) -> int:
        return len(self._calls)


__all__ = [
    "UID_MODULUS",
    "CallStatus",
    "CallType",
    "TERMINAL_CALL_STATUSES",
    "CallSession",
    "CallStore",
    "InMemoryCallStore",
    "build_channel_name",
    "compute_duration",
    "user_id_to_uid",
]
