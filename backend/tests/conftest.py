"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from lexline.calls import AgoraRtcTokenIssuer

from app.config import get_settings
from app.core.clock import utcnow
from app.core.security import create_access_token
from app.database import get_db
from app.main import app
from app.models import (
    Base,
    Consultation,
    ConsultationStatus,
    LawyerProfile,
    Payment,
    PaymentStatus,
    User,
    UserRole,
)
from app.monitoring.registry import registry
from app.services.moderation import ALLOWED, ModerationResult
from app.services.notifications import PushNotifier
from app.services.runtime import build_services, set_services
from app.services.summaries import SummaryService


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload.get("type") == event_type]


class RecordingNotifier(PushNotifier):
    """Push notifier that records deliveries instead of calling Expo."""

    def __init__(self, settings, session_factory) -> None:
        super().__init__(settings, session_factory)
        self.sent: list[dict[str, Any]] = []

    async def send_to_user(self, user_id, title, body, data=None, *, preference=None) -> bool:
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data or {}})
        return True

    def titles(self, user_id: str | None = None) -> list[str]:
        return [item["title"] for item in self.sent if user_id is None or item["user_id"] == user_id]


class StaticModeration:
    """Moderation double returning a fixed verdict."""

    def __init__(self, result: ModerationResult = ALLOWED) -> None:
        self.result = result
        self.calls: list[str] = []

    async def moderate(self, text, *, sender_role=None, sender_id=None) -> ModerationResult:
        self.calls.append(text)
        return self.result


@dataclass
class ConsultationSeed:
    consultation_id: str
    client_id: str
    lawyer_user_id: str
    lawyer_profile_id: str


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    registry.reset()
    yield
    registry.reset()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def test_settings():
    """Settings with short timers and every outbound integration disabled."""

    return get_settings().model_copy(
        update={
            "trial_duration_seconds": 180,
            "trial_warning_lead_seconds": 60,
            "call_ring_timeout_seconds": 60,
            "call_cleanup_grace_seconds": 30,
            "stale_sweep_interval_seconds": 0,
            "push_notifications_enabled": False,
            "openai_api_key": None,
            "payment_webhook_secret": "whsec-test",
            "rtc_app_id": "test-app",
            "rtc_app_certificate": "test-certificate",
        }
    )


@pytest.fixture()
def notifier(test_settings, session_factory) -> RecordingNotifier:
    return RecordingNotifier(test_settings, session_factory)


@pytest.fixture()
def moderation() -> StaticModeration:
    return StaticModeration()


@pytest.fixture()
def services(test_settings, session_factory, notifier, moderation):
    """Realtime services wired against the test database and recording doubles."""

    built = build_services(
        test_settings,
        session_factory,
        notifier=notifier,
        moderation=moderation,
        summaries=SummaryService(None, session_factory, model="test"),
        issuer=AgoraRtcTokenIssuer(test_settings.rtc_app_id, test_settings.rtc_app_certificate),
    )
    set_services(built)
    try:
        yield built
    finally:
        set_services(None)


@pytest.fixture()
def client(session_factory, services) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_consultation(session_factory) -> Callable[..., ConsultationSeed]:
    """Create a client, a lawyer and a consultation between them."""

    def factory(
        status: ConsultationStatus = ConsultationStatus.PENDING,
        *,
        trial_ends_in: timedelta | None = None,
        paid: bool = False,
        created_ago: timedelta | None = None,
    ) -> ConsultationSeed:
        with session_factory() as db:
            client_user = User(role=UserRole.CLIENT, first_name="Casey", last_name="Client")
            lawyer_user = User(role=UserRole.LAWYER, first_name="Laura", last_name="Lawyer")
            db.add_all([client_user, lawyer_user])
            db.flush()
            profile = LawyerProfile(user_id=lawyer_user.id)
            db.add(profile)
            db.flush()
            now = utcnow()
            consultation = Consultation(client_id=client_user.id, lawyer_id=profile.id, status=status)
            if created_ago is not None:
                consultation.created_at = now - created_ago
            if status != ConsultationStatus.PENDING:
                consultation.started_at = now
            if status == ConsultationStatus.TRIAL:
                consultation.trial_end_at = now + (trial_ends_in if trial_ends_in is not None else timedelta(minutes=3))
            db.add(consultation)
            db.flush()
            if paid:
                db.add(Payment(consultation_id=consultation.id, amount_cents=5000, status=PaymentStatus.SUCCEEDED))
            db.commit()
            return ConsultationSeed(
                consultation_id=consultation.id,
                client_id=client_user.id,
                lawyer_user_id=lawyer_user.id,
                lawyer_profile_id=profile.id,
            )

    return factory


def token_for(user_id: str) -> str:
    return create_access_token({"sub": user_id})


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user_id)}"}
