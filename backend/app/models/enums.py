from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Account roles known to the realtime layer."""

    CLIENT = "CLIENT"
    LAWYER = "LAWYER"
    ADMIN = "ADMIN"


class ConsultationStatus(str, Enum):
    """Lifecycle states of a consultation."""

    PENDING = "PENDING"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsultationStatus.COMPLETED, ConsultationStatus.CANCELLED)


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    SYSTEM = "SYSTEM"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class LawyerOnlineStatus(str, Enum):
    """Advisory status persisted on lawyer profiles."""

    ONLINE = "online"
    OFFLINE = "offline"
