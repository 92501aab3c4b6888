"""Database models package."""

from .base import Base
from .consultation import Consultation, LawyerProfile, Message, Payment, User
from .enums import (
    ConsultationStatus,
    LawyerOnlineStatus,
    MessageType,
    PaymentStatus,
    UserRole,
)

__all__ = [
    "Base",
    "User",
    "LawyerProfile",
    "Consultation",
    "Message",
    "Payment",
    "UserRole",
    "ConsultationStatus",
    "MessageType",
    "PaymentStatus",
    "LawyerOnlineStatus",
]
