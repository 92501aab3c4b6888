from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.clock import utcnow
from app.models.base import Base, new_id
from app.models.enums import (
    ConsultationStatus,
    LawyerOnlineStatus,
    MessageType,
    PaymentStatus,
    UserRole,
)


def _enum(enum_cls: type, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    """Marketplace account (client, lawyer or admin)."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole, "user_role"), default=UserRole.CLIENT, nullable=False)
    first_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(512))
    expo_push_token: Mapped[str | None] = mapped_column(String(255))
    notification_preferences: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    lawyer_profile: Mapped["LawyerProfile | None"] = relationship(back_populates="user", uselist=False)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class LawyerProfile(Base):
    __tablename__ = "lawyer_profiles"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    online_status: Mapped[LawyerOnlineStatus] = mapped_column(
        _enum(LawyerOnlineStatus, "lawyer_online_status"),
        default=LawyerOnlineStatus.OFFLINE,
        nullable=False,
    )
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    user: Mapped[User] = relationship(back_populates="lawyer_profile")


class Consultation(Base):
    """A bounded session between one client and one lawyer."""

    __tablename__ = "consultations"
    __table_args__ = (Index("ix_consultations_status_created", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    lawyer_id: Mapped[str] = mapped_column(ForeignKey("lawyer_profiles.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[ConsultationStatus] = mapped_column(
        _enum(ConsultationStatus, "consultation_status"),
        default=ConsultationStatus.PENDING,
        nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trial_end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    client: Mapped[User] = relationship(foreign_keys=[client_id])
    lawyer: Mapped[LawyerProfile] = relationship()
    payment: Mapped["Payment | None"] = relationship(back_populates="consultation", uselist=False)

    @property
    def lawyer_user_id(self) -> str:
        return self.lawyer.user_id

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.lawyer_user_id)


class Message(Base):
    """Chat message; content never changes after creation."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_consultation_created", "consultation_id", "created_at"),
        Index("ix_messages_unread", "consultation_id", "is_read"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    consultation_id: Mapped[str] = mapped_column(
        ForeignKey("consultations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        _enum(MessageType, "message_type"), default=MessageType.TEXT, nullable=False
    )
    content: Mapped[str | None] = mapped_column(Text)
    file_url: Mapped[str | None] = mapped_column(String(1024))
    file_name: Mapped[str | None] = mapped_column(String(255))
    file_size: Mapped[int | None] = mapped_column(Integer)
    mime_type: Mapped[str | None] = mapped_column(String(128))
    reply_to_id: Mapped[str | None] = mapped_column(ForeignKey("messages.id", ondelete="SET NULL"))
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    sender: Mapped[User] = relationship()
    reply_to: Mapped["Message | None"] = relationship(remote_side="Message.id")


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    consultation_id: Mapped[str] = mapped_column(
        ForeignKey("consultations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, "payment_status"), default=PaymentStatus.PENDING, nullable=False
    )
    provider_reference: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    consultation: Mapped[Consultation] = relationship(back_populates="payment")
