"""Message pipeline shared by the websocket gateway and the HTTP fallback.

Every send goes through the same steps: load, participant check, trial
gate, moderation, re-check, persist, fan-out, detached push and the
``updated_at`` touch. Moderation is the only suspension point before the
write, so the trial gate is evaluated again once it returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from lexline.realtime import ConnectionSession, DetachedTaskGroup, RoomRouter

from app.core.clock import as_utc, utcnow
from app.core.errors import ContentBlockedError, InvalidInputError, TrialExpiredError
from app.models import Consultation, LawyerProfile, Message, MessageType, UserRole
from app.monitoring.metrics import realtime_events_total
from app.schemas.events import MessagesRead, NewMessage, TypingSignal, UnreadMessageCount
from app.schemas.messages import MessageHistory, MessageRead, ReadReceiptResult
from app.services.moderation import ModerationService
from app.services.notifications import PushNotifier
from app.services.participants import (
    has_succeeded_payment,
    load_consultation,
    participants_of,
    require_participant,
    trial_has_lapsed,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Sender:
    user_id: str
    role: UserRole | str
    display_name: str = ""

    @classmethod
    def from_session(cls, session: ConnectionSession) -> "Sender":
        return cls(user_id=session.user_id, role=session.role, display_name=session.display_name)

    @property
    def role_name(self) -> str:
        return self.role.value if isinstance(self.role, UserRole) else str(self.role)


@dataclass(frozen=True, slots=True)
class Attachment:
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None


def _message_options():
    return (
        selectinload(Message.sender),
        selectinload(Message.reply_to).selectinload(Message.sender),
    )


def serialize_message(db: Session, message_id: str) -> MessageRead:
    message = db.execute(
        select(Message).where(Message.id == message_id).options(*_message_options())
    ).scalar_one()
    return MessageRead.model_validate(message)


class MessagePipeline:
    def __init__(
        self,
        settings,
        session_factory: Callable[[], Session],
        router: RoomRouter,
        moderation: ModerationService,
        notifier: PushNotifier,
        tasks: DetachedTaskGroup,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._router = router
        self._moderation = moderation
        self._notifier = notifier
        self._tasks = tasks

    # -- send ---------------------------------------------------------------

    def _validate(
        self, content: str | None, message_type: MessageType, attachment: Attachment | None
    ) -> str | None:
        if message_type == MessageType.SYSTEM:
            raise InvalidInputError("System messages cannot be sent by users")
        text = content.strip() if content else None
        if message_type == MessageType.TEXT:
            if not text:
                raise InvalidInputError("Message content is required")
            limit = self._settings.chat_message_max_length
            if len(text) > limit:
                raise InvalidInputError(f"Message content exceeds {limit} characters")
        elif not text and not (attachment and attachment.file_url):
            raise InvalidInputError("A file URL or content is required for attachments")
        return text

    def _check_trial(self, db: Session, consultation: Consultation) -> None:
        if trial_has_lapsed(consultation) and not has_succeeded_payment(db, consultation.id):
            raise TrialExpiredError()

    async def send_message(
        self,
        consultation_id: str,
        sender: Sender,
        content: str | None,
        message_type: MessageType = MessageType.TEXT,
        *,
        reply_to_id: str | None = None,
        attachment: Attachment | None = None,
    ) -> MessageRead:
        text = self._validate(content, message_type, attachment)

        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, sender.user_id)
            self._check_trial(db, consultation)
            if reply_to_id is not None:
                parent = db.get(Message, reply_to_id)
                if parent is None or parent.consultation_id != consultation_id:
                    raise InvalidInputError("Reply target does not belong to this consultation")

        if message_type == MessageType.TEXT:
            verdict = await self._moderation.moderate(
                text, sender_role=sender.role_name, sender_id=sender.user_id
            )
            if not verdict.allowed:
                raise ContentBlockedError(verdict.reason, verdict.category)

        attachment = attachment or Attachment()
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            self._check_trial(db, consultation)
            message = Message(
                consultation_id=consultation_id,
                sender_id=sender.user_id,
                message_type=message_type,
                content=text,
                file_url=attachment.file_url,
                file_name=attachment.file_name,
                file_size=attachment.file_size,
                mime_type=attachment.mime_type,
                reply_to_id=reply_to_id,
            )
            db.add(message)
            db.commit()
            payload = serialize_message(db, message.id)
            participants = participants_of(consultation)
            sender_name = message.sender.display_name if message.sender else sender.display_name

        await self.publish(participants, payload)
        await self._router.emit_to_consultation(
            consultation_id,
            TypingSignal(type="typing-stop", consultation_id=consultation_id, user_id=sender.user_id).to_wire(),
            exclude=[s.connection_id for s in self._router.sessions_for_user(sender.user_id)],
        )
        self._tasks.spawn(
            self._notifier.notify_new_message(
                participants.counterpart(sender.user_id),
                sender_name or sender.display_name,
                message_type,
                text,
                consultation_id,
            ),
            name=f"push:new-message:{payload.id}",
        )
        self._touch(consultation_id)
        realtime_events_total.labels("send-message", "processed").inc()
        return payload

    async def publish(self, participants, payload: MessageRead) -> int:
        """Fan out an already persisted message to every audience of its consultation."""

        event = NewMessage(consultation_id=participants.consultation_id, message=payload)
        return await self._router.emit_to_participants(participants, event.to_wire())

    def _touch(self, consultation_id: str) -> None:
        with self._session_factory() as db:
            consultation = db.get(Consultation, consultation_id)
            if consultation is None:
                return
            consultation.updated_at = utcnow()
            db.commit()

    # -- read receipts --------------------------------------------------------

    def _mark_read(self, db: Session, consultation_id: str, reader_id: str) -> int:
        result = db.execute(
            update(Message)
            .where(
                Message.consultation_id == consultation_id,
                Message.sender_id != reader_id,
                Message.is_read.is_(False),
            )
            .values(is_read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount or 0

    async def mark_read(
        self, consultation_id: str, reader_id: str, *, origin_connection_id: str | None = None
    ) -> ReadReceiptResult:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, reader_id)
            updated = self._mark_read(db, consultation_id, reader_id)
            unread = self._unread_count(db, reader_id)

        exclude = [origin_connection_id] if origin_connection_id else None
        await self._router.emit_to_consultation(
            consultation_id,
            MessagesRead(consultation_id=consultation_id, read_by=reader_id).to_wire(),
            exclude=exclude,
        )
        if updated:
            await self._router.emit_to_user(reader_id, UnreadMessageCount(count=unread).to_wire())
        return ReadReceiptResult(consultation_id=consultation_id, updated=updated, unread_count=unread)

    def _unread_count(self, db: Session, user_id: str) -> int:
        stmt = (
            select(func.count(Message.id))
            .join(Consultation, Consultation.id == Message.consultation_id)
            .join(LawyerProfile, LawyerProfile.id == Consultation.lawyer_id)
            .where(
                (Consultation.client_id == user_id) | (LawyerProfile.user_id == user_id),
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
        )
        return int(db.execute(stmt).scalar_one() or 0)

    def unread_count(self, user_id: str) -> int:
        with self._session_factory() as db:
            return self._unread_count(db, user_id)

    # -- lightweight signals ----------------------------------------------------

    async def relay_typing(self, session: ConnectionSession, consultation_id: str, typing: bool) -> int:
        """Relay a typing indicator to the other connections of the consultation channel."""

        if not self._router.is_joined(session, consultation_id):
            return 0
        event = TypingSignal(
            type="typing-start" if typing else "typing-stop",
            consultation_id=consultation_id,
            user_id=session.user_id,
            name=session.display_name if typing else None,
        )
        return await self._router.emit_to_consultation(
            consultation_id, event.to_wire(), exclude=[session.connection_id]
        )

    async def relay_read_receipt(self, session: ConnectionSession, consultation_id: str) -> None:
        if not self._router.is_joined(session, consultation_id):
            return
        try:
            await self.mark_read(consultation_id, session.user_id, origin_connection_id=session.connection_id)
        except Exception:
            logger.exception("Failed to apply read receipt for consultation %s", consultation_id)

    # -- history ------------------------------------------------------------------

    def history(
        self,
        consultation_id: str,
        user_id: str,
        *,
        limit: int | None = None,
        before: datetime | None = None,
    ) -> MessageHistory:
        limit = min(limit or self._settings.chat_history_default_limit, self._settings.chat_history_max_limit)
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, user_id)
            stmt = (
                select(Message)
                .where(Message.consultation_id == consultation_id)
                .options(*_message_options())
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit + 1)
            )
            if before is not None:
                stmt = stmt.where(Message.created_at < as_utc(before))
            rows = list(db.execute(stmt).scalars())
            has_more = len(rows) > limit
            items = [MessageRead.model_validate(row) for row in reversed(rows[:limit])]
        return MessageHistory(items=items, has_more=has_more)


__all__ = ["Attachment", "MessagePipeline", "Sender", "serialize_message"]
