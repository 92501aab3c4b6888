from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.exc import SQLAlchemyError
from starlette.websockets import WebSocketDisconnect

from app.models import ConsultationStatus, LawyerOnlineStatus, LawyerProfile
from app.services.moderation import ModerationResult

from conftest import token_for


def _receive_until(websocket, event_type: str, limit: int = 20) -> dict[str, Any]:
    for _ in range(limit):
        payload = websocket.receive_json()
        if payload.get("type") == event_type:
            return payload
    raise AssertionError(f"no {event_type} event received")


def _join(websocket, consultation_id: str) -> None:
    websocket.send_json({"type": "join-consultation", "consultationId": consultation_id})
    joined = _receive_until(websocket, "joined-consultation")
    assert joined["consultationId"] == consultation_id


def test_missing_or_invalid_token_closes_with_policy_violation(client) -> None:
    for url in ("/ws", "/ws?token=not-a-jwt", f"/ws?token={token_for('ghost')}"):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(url) as websocket:
                websocket.receive_json()
        assert exc_info.value.code == 1008


def test_join_and_send_message(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        _join(websocket, seed.consultation_id)
        websocket.send_json(
            {"type": "send-message", "consultationId": seed.consultation_id, "content": "Hello from the app"}
        )
        event = _receive_until(websocket, "new-message")

    assert event["consultationId"] == seed.consultation_id
    assert event["message"]["content"] == "Hello from the app"
    assert event["message"]["senderId"] == seed.client_id


def test_bearer_header_is_accepted(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    headers = {"Authorization": f"Bearer {token_for(seed.lawyer_user_id)}"}
    with client.websocket_connect("/ws", headers=headers) as websocket:
        _join(websocket, seed.consultation_id)


def test_blocked_message_is_reported_to_sender(client, make_consultation, moderation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    moderation.result = ModerationResult(allowed=False, reason="Please keep it civil.", category="HARASSMENT")

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        websocket.send_json({"type": "send-message", "consultationId": seed.consultation_id, "content": "!!"})
        blocked = _receive_until(websocket, "message-blocked")

    assert blocked == {
        "type": "message-blocked",
        "consultationId": seed.consultation_id,
        "reason": "Please keep it civil.",
        "category": "HARASSMENT",
    }


def test_service_errors_carry_their_code(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.TRIAL)
    other = make_consultation(ConsultationStatus.ACTIVE)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        websocket.send_json({"type": "join-consultation", "consultationId": other.consultation_id})
        forbidden = _receive_until(websocket, "error")
        websocket.send_json({"type": "send-message", "consultationId": "missing", "content": "hi"})
        missing = _receive_until(websocket, "error")

    assert forbidden["code"] == "FORBIDDEN"
    assert missing == {"type": "error", "message": "Consultation not found", "code": "NOT_FOUND"}


def test_malformed_frames_are_rejected(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        websocket.send_text("{not json")
        invalid_json = _receive_until(websocket, "error")
        websocket.send_text("[1, 2]")
        not_object = _receive_until(websocket, "error")
        websocket.send_json({"type": "teleport"})
        unknown = _receive_until(websocket, "error")

    assert invalid_json["message"] == "Invalid message format"
    assert not_object["code"] == "VALIDATION"
    assert unknown["message"] == "Unsupported or malformed event: teleport"


def test_users_status_and_ping(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        websocket.send_json({"type": "get-users-status", "userIds": [seed.client_id, seed.lawyer_user_id]})
        response = _receive_until(websocket, "users-status-response")
        websocket.send_json({"type": "ping"})
        _receive_until(websocket, "pong")

    assert response["statuses"] == {seed.client_id: "online", seed.lawyer_user_id: "offline"}


def test_every_connection_of_a_user_receives_messages(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    client_url = f"/ws?token={token_for(seed.client_id)}"

    with client.websocket_connect(client_url) as phone, client.websocket_connect(client_url) as tablet:
        with client.websocket_connect(f"/ws?token={token_for(seed.lawyer_user_id)}") as lawyer:
            lawyer.send_json(
                {"type": "send-message", "consultationId": seed.consultation_id, "content": "Documents received"}
            )
            sent = _receive_until(lawyer, "new-message")
            for websocket in (phone, tablet):
                event = _receive_until(websocket, "new-message")
                assert event["message"]["id"] == sent["message"]["id"]


def test_lawyer_presence_is_broadcast(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as observer:
        with client.websocket_connect(f"/ws?token={token_for(seed.lawyer_user_id)}"):
            change = _receive_until(observer, "lawyer-status-change")

    assert change == {
        "type": "lawyer-status-change",
        "lawyerId": seed.lawyer_profile_id,
        "userId": seed.lawyer_user_id,
        "status": "online",
    }


def test_ringing_call_is_replayed_on_connect(client, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    response = client.post(
        "/api/calls",
        json={"consultationId": seed.consultation_id, "type": "voice"},
        headers={"Authorization": f"Bearer {token_for(seed.client_id)}"},
    )
    assert response.status_code == 201
    call_id = response.json()["call"]["callId"]

    with client.websocket_connect(f"/ws?token={token_for(seed.lawyer_user_id)}") as websocket:
        incoming = _receive_until(websocket, "incoming-call")

    assert incoming["callId"] == call_id
    assert incoming["callerName"] == "Casey Client"


def test_idle_connection_receives_keepalive_ping(client, services, make_consultation) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    services.settings.websocket_keepalive_timeout_seconds = 0.05
    services.settings.websocket_keepalive_ping_interval_seconds = 0

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        assert _receive_until(websocket, "ping") == {"type": "ping"}


def _collect_until(websocket, event_type: str, limit: int = 20) -> list[dict[str, Any]]:
    frames = []
    for _ in range(limit):
        frames.append(websocket.receive_json())
        if frames[-1].get("type") == event_type:
            return frames
    raise AssertionError(f"no {event_type} event received")


def test_unexpected_handler_failure_keeps_connection_open(client, services, make_consultation, monkeypatch) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    def broken_statuses(user_ids):
        raise RuntimeError("presence backend unavailable")

    monkeypatch.setattr(services.router.presence, "statuses", broken_statuses)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        websocket.send_json({"type": "get-users-status", "userIds": [seed.lawyer_user_id]})
        error = _receive_until(websocket, "error")
        websocket.send_json({"type": "ping"})
        _receive_until(websocket, "pong")

    assert error == {"type": "error", "message": "Internal error", "code": "UPSTREAM_FAILURE"}


def test_read_receipt_failures_stay_silent(client, services, make_consultation, monkeypatch) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)

    async def failing_mark_read(*args, **kwargs):
        raise SQLAlchemyError("database is locked")

    monkeypatch.setattr(services.pipeline, "mark_read", failing_mark_read)

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as websocket:
        _join(websocket, seed.consultation_id)
        websocket.send_json({"type": "read-receipt", "consultationId": seed.consultation_id})
        websocket.send_json({"type": "ping"})
        frames = _collect_until(websocket, "pong")

    assert [frame for frame in frames if frame["type"] == "error"] == []


def test_online_lawyers_query_skips_stale_profiles(client, make_consultation, session_factory) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    stale = make_consultation(ConsultationStatus.ACTIVE)
    with session_factory() as db:
        db.get(LawyerProfile, stale.lawyer_profile_id).online_status = LawyerOnlineStatus.ONLINE
        db.commit()

    with client.websocket_connect(f"/ws?token={token_for(seed.client_id)}") as observer:
        with client.websocket_connect(f"/ws?token={token_for(seed.lawyer_user_id)}"):
            _receive_until(observer, "lawyer-status-change")
            observer.send_json({"type": "get-online-lawyers"})
            response = _receive_until(observer, "online-lawyers-response")

    assert response == {"type": "online-lawyers-response", "statuses": {seed.lawyer_profile_id: "online"}}
