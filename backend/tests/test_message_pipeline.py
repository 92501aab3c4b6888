from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from lexline.realtime import ConnectionSession

from app.core.clock import as_utc, utcnow
from app.core.errors import (
    ContentBlockedError,
    ForbiddenError,
    InvalidInputError,
    NotFoundError,
    TrialExpiredError,
)
from app.models import Consultation, ConsultationStatus, Message, MessageType
from app.services.messaging import Attachment, Sender
from app.services.moderation import ModerationResult

from conftest import DummyWebSocket


async def _connect(services, user_id: str, role: str = "CLIENT", name: str = "Casey") -> ConnectionSession:
    session = ConnectionSession(websocket=DummyWebSocket(), user_id=user_id, role=role, display_name=name)
    await services.router.connect(session)
    return session


def _message_count(session_factory) -> int:
    with session_factory() as db:
        return db.execute(select(func.count(Message.id))).scalar_one()


@pytest.mark.anyio
async def test_send_message_persists_and_fans_out(services, make_consultation, session_factory, notifier):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    client_session = await _connect(services, seed.client_id)
    lawyer_session = await _connect(services, seed.lawyer_user_id, "LAWYER", "Laura")
    services.router.join_consultation(client_session, seed.consultation_id)
    services.router.join_consultation(lawyer_session, seed.consultation_id)

    before = utcnow()
    message = await services.pipeline.send_message(
        seed.consultation_id, Sender(seed.client_id, "CLIENT", "Casey Client"), "  Hello counsel  "
    )
    await services.tasks.join()

    assert message.content == "Hello counsel"
    assert message.sender.first_name == "Casey"
    for session in (client_session, lawyer_session):
        events = session.websocket.of_type("new-message")
        assert len(events) == 1
        assert events[0]["message"]["id"] == message.id
        assert events[0]["consultationId"] == seed.consultation_id

    typing_stops = lawyer_session.websocket.of_type("typing-stop")
    assert typing_stops == [
        {"type": "typing-stop", "consultationId": seed.consultation_id, "userId": seed.client_id, "name": None}
    ]
    assert client_session.websocket.of_type("typing-stop") == []

    assert notifier.titles(seed.lawyer_user_id) == ["New Message"]
    assert notifier.sent[0]["body"] == "Casey Client: Hello counsel"

    with session_factory() as db:
        consultation = db.get(Consultation, seed.consultation_id)
        assert as_utc(consultation.updated_at) >= before


@pytest.mark.anyio
async def test_blocked_text_is_not_persisted(services, make_consultation, session_factory, moderation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    moderation.result = ModerationResult(allowed=False, reason="Please keep it civil.", category="HARASSMENT")

    with pytest.raises(ContentBlockedError) as exc_info:
        await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "rude words")

    assert exc_info.value.reason == "Please keep it civil."
    assert exc_info.value.category == "HARASSMENT"
    assert _message_count(session_factory) == 0


@pytest.mark.anyio
async def test_attachments_skip_moderation(services, make_consultation, moderation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    moderation.result = ModerationResult(allowed=False, reason="blocked")

    message = await services.pipeline.send_message(
        seed.consultation_id,
        Sender(seed.lawyer_user_id, "LAWYER"),
        None,
        MessageType.DOCUMENT,
        attachment=Attachment(file_url="https://files.example/contract.pdf", file_name="contract.pdf"),
    )

    assert message.message_type == MessageType.DOCUMENT
    assert moderation.calls == []


@pytest.mark.anyio
async def test_expired_trial_rejects_messages(services, make_consultation, session_factory):
    seed = make_consultation(ConsultationStatus.TRIAL, trial_ends_in=timedelta(seconds=-5))

    with pytest.raises(TrialExpiredError) as exc_info:
        await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "still there?")

    assert exc_info.value.message == "Trial has expired. Please pay to continue."
    assert _message_count(session_factory) == 0


@pytest.mark.anyio
async def test_expired_trial_with_payment_still_accepts_messages(services, make_consultation):
    seed = make_consultation(ConsultationStatus.TRIAL, trial_ends_in=timedelta(seconds=-5), paid=True)

    message = await services.pipeline.send_message(
        seed.consultation_id, Sender(seed.client_id, "CLIENT"), "payment went through"
    )

    assert message.content == "payment went through"


@pytest.mark.anyio
async def test_trial_expiring_during_moderation_is_rechecked(services, make_consultation, session_factory, moderation):
    seed = make_consultation(ConsultationStatus.TRIAL, trial_ends_in=timedelta(minutes=1))

    async def slow_moderation(text, *, sender_role=None, sender_id=None):
        with session_factory() as db:
            consultation = db.get(Consultation, seed.consultation_id)
            consultation.trial_end_at = utcnow() - timedelta(seconds=1)
            db.commit()
        return ModerationResult(allowed=True)

    moderation.moderate = slow_moderation

    with pytest.raises(TrialExpiredError):
        await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "hello")
    assert _message_count(session_factory) == 0


@pytest.mark.anyio
async def test_pending_consultation_allows_participants(services, make_consultation):
    seed = make_consultation(ConsultationStatus.PENDING)

    message = await services.pipeline.send_message(
        seed.consultation_id, Sender(seed.client_id, "CLIENT"), "Can you take my case?"
    )

    assert message.consultation_id == seed.consultation_id


@pytest.mark.anyio
async def test_non_participants_and_missing_consultations(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    other = make_consultation(ConsultationStatus.ACTIVE)

    with pytest.raises(ForbiddenError):
        await services.pipeline.send_message(seed.consultation_id, Sender(other.client_id, "CLIENT"), "hi")
    with pytest.raises(NotFoundError):
        await services.pipeline.send_message("missing", Sender(seed.client_id, "CLIENT"), "hi")


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("content", "message_type", "attachment"),
    [
        ("   ", MessageType.TEXT, None),
        ("x" * 5001, MessageType.TEXT, None),
        ("system notice", MessageType.SYSTEM, None),
        (None, MessageType.IMAGE, Attachment()),
    ],
)
async def test_invalid_messages_are_rejected(services, make_consultation, content, message_type, attachment):
    seed = make_consultation(ConsultationStatus.ACTIVE)

    with pytest.raises(InvalidInputError):
        await services.pipeline.send_message(
            seed.consultation_id, Sender(seed.client_id, "CLIENT"), content, message_type, attachment=attachment
        )


@pytest.mark.anyio
async def test_reply_must_belong_to_same_consultation(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    other = make_consultation(ConsultationStatus.ACTIVE)
    foreign = await services.pipeline.send_message(other.consultation_id, Sender(other.client_id, "CLIENT"), "elsewhere")
    original = await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "question")

    with pytest.raises(InvalidInputError):
        await services.pipeline.send_message(
            seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "answer", reply_to_id=foreign.id
        )

    reply = await services.pipeline.send_message(
        seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "answer", reply_to_id=original.id
    )
    assert reply.reply_to.id == original.id
    assert reply.reply_to.content == "question"


@pytest.mark.anyio
async def test_read_receipts_mark_counterpart_messages(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    client_session = await _connect(services, seed.client_id)
    lawyer_session = await _connect(services, seed.lawyer_user_id, "LAWYER")
    services.router.join_consultation(client_session, seed.consultation_id)
    services.router.join_consultation(lawyer_session, seed.consultation_id)

    await services.pipeline.send_message(seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "one")
    await services.pipeline.send_message(seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "two")
    await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "three")
    assert services.pipeline.unread_count(seed.client_id) == 2
    assert services.pipeline.unread_count(seed.lawyer_user_id) == 1

    await services.pipeline.relay_read_receipt(client_session, seed.consultation_id)

    assert services.pipeline.unread_count(seed.client_id) == 0
    assert services.pipeline.unread_count(seed.lawyer_user_id) == 1
    assert lawyer_session.websocket.of_type("messages-read") == [
        {"type": "messages-read", "consultationId": seed.consultation_id, "readBy": seed.client_id}
    ]
    assert client_session.websocket.of_type("messages-read") == []
    assert client_session.websocket.of_type("unread-message-count") == [{"type": "unread-message-count", "count": 0}]


@pytest.mark.anyio
async def test_read_receipt_requires_joined_channel(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    client_session = await _connect(services, seed.client_id)
    await services.pipeline.send_message(seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "unread")

    await services.pipeline.relay_read_receipt(client_session, seed.consultation_id)

    assert services.pipeline.unread_count(seed.client_id) == 1


@pytest.mark.anyio
async def test_typing_relay_requires_joined_channel(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    client_session = await _connect(services, seed.client_id, name="Casey")
    lawyer_session = await _connect(services, seed.lawyer_user_id, "LAWYER")
    services.router.join_consultation(lawyer_session, seed.consultation_id)

    assert await services.pipeline.relay_typing(client_session, seed.consultation_id, True) == 0

    services.router.join_consultation(client_session, seed.consultation_id)
    assert await services.pipeline.relay_typing(client_session, seed.consultation_id, True) == 1

    assert lawyer_session.websocket.of_type("typing-start") == [
        {"type": "typing-start", "consultationId": seed.consultation_id, "userId": seed.client_id, "name": "Casey"}
    ]
    assert client_session.websocket.of_type("typing-start") == []


@pytest.mark.anyio
async def test_history_is_paginated_oldest_first(services, make_consultation):
    seed = make_consultation(ConsultationStatus.ACTIVE)
    for index in range(5):
        await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), f"m{index}")

    page = services.pipeline.history(seed.consultation_id, seed.lawyer_user_id, limit=3)

    assert [item.content for item in page.items] == ["m2", "m3", "m4"]
    assert page.has_more is True

    with pytest.raises(ForbiddenError):
        services.pipeline.history(seed.consultation_id, "stranger")
