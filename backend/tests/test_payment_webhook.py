from __future__ import annotations

import json
import time

from fastapi.testclient import TestClient
from sqlalchemy import select

from app.core.webhooks import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_signature, verify_timestamp
from app.models import ConsultationStatus, Payment, PaymentStatus

SECRET = "whsec-test"


def post_webhook(
    client: TestClient,
    payload: dict,
    *,
    secret: str = SECRET,
    timestamp: str | None = None,
    prefix: str = "",
):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    headers[SIGNATURE_HEADER] = prefix + compute_signature(secret, body, timestamp)
    if timestamp is not None:
        headers[TIMESTAMP_HEADER] = timestamp
    return client.post("/api/payments/webhook", content=body, headers=headers)


def test_successful_payment_activates_trial(client: TestClient, make_consultation, session_factory):
    seed = make_consultation(ConsultationStatus.TRIAL)

    response = post_webhook(
        client,
        {"consultationId": seed.consultation_id, "status": "SUCCEEDED", "amountCents": 4999, "providerReference": "pi_1"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "consultationId": seed.consultation_id, "status": "ACTIVE"}
    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount_cents == 4999
        assert payment.provider_reference == "pi_1"

    repeat = post_webhook(client, {"consultationId": seed.consultation_id, "status": "SUCCEEDED"})
    assert repeat.json()["status"] == "ACTIVE"


def test_timestamped_and_prefixed_signatures(client: TestClient, make_consultation):
    seed = make_consultation(ConsultationStatus.TRIAL)

    response = post_webhook(
        client,
        {"consultationId": seed.consultation_id, "status": "SUCCEEDED"},
        timestamp=str(int(time.time())),
        prefix="sha256=",
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ACTIVE"


def test_payment_for_closed_consultation_is_acknowledged(client: TestClient, make_consultation):
    seed = make_consultation(ConsultationStatus.CANCELLED)

    response = post_webhook(client, {"consultationId": seed.consultation_id, "status": "SUCCEEDED"})

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"


def test_failed_payment_keeps_trial(client: TestClient, make_consultation, session_factory):
    seed = make_consultation(ConsultationStatus.TRIAL)

    response = post_webhook(client, {"consultationId": seed.consultation_id, "status": "FAILED", "amountCents": 4999})

    assert response.json()["status"] == "TRIAL"
    with session_factory() as db:
        assert db.execute(select(Payment)).scalar_one().status == PaymentStatus.FAILED


def test_signature_failures_are_rejected(client: TestClient, make_consultation):
    seed = make_consultation(ConsultationStatus.TRIAL)
    payload = {"consultationId": seed.consultation_id, "status": "SUCCEEDED"}

    wrong_secret = post_webhook(client, payload, secret="someone-else")
    assert wrong_secret.status_code == 401
    assert wrong_secret.json()["detail"] == "Invalid webhook signature"

    stale = post_webhook(client, payload, timestamp=str(int(time.time()) - 3600))
    assert stale.status_code == 401
    assert stale.json()["detail"] == "Webhook timestamp expired"

    unsigned = client.post("/api/payments/webhook", json=payload)
    assert unsigned.status_code == 401
    assert unsigned.json()["detail"] == "Missing webhook signature"


def test_malformed_and_unknown_payloads(client: TestClient):
    malformed = post_webhook(client, {"status": "SUCCEEDED"})
    assert malformed.status_code == 422

    unknown = post_webhook(client, {"consultationId": "missing", "status": "SUCCEEDED"})
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "NOT_FOUND"


def test_unconfigured_secret_disables_webhook(client: TestClient, services):
    services.settings.payment_webhook_secret = None

    response = post_webhook(client, {"consultationId": "anything", "status": "SUCCEEDED"})

    assert response.status_code == 503


def test_verify_timestamp() -> None:
    now = int(time.time())
    assert verify_timestamp(None)
    assert verify_timestamp(str(now))
    assert not verify_timestamp(str(now - 301))
    assert not verify_timestamp("yesterday")


def test_payment_before_acceptance_is_refused_for_redelivery(client: TestClient, make_consultation, session_factory):
    seed = make_consultation()

    response = post_webhook(client, {"consultationId": seed.consultation_id, "status": "SUCCEEDED"})

    assert response.status_code == 409
    assert response.json()["currentStatus"] == "PENDING"
    with session_factory() as db:
        assert db.execute(select(Payment)).scalar_one_or_none() is None
