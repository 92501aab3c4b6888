from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from app.models import Consultation, ConsultationStatus
from app.monitoring.metrics import moderation_decisions_total
from app.services.messaging import Sender
from app.services.moderation import ModerationService
from app.services.summaries import SummaryService


class FakeCompletions:
    def __init__(self, content: str = "", *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.content = content
        self.delay = delay
        self.error = error
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_client(completions: FakeCompletions) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


@pytest.mark.anyio
async def test_blocked_verdict_is_parsed() -> None:
    completions = FakeCompletions(
        json.dumps({"allowed": False, "reason": "Please remove the card number.", "category": "PII"})
    )
    service = ModerationService(fake_client(completions), model="test-model")

    result = await service.moderate("my card is 4111 1111 1111 1111", sender_role="CLIENT")

    assert result.allowed is False
    assert result.category == "PII"
    assert result.reason == "Please remove the card number."
    assert completions.requests[0]["model"] == "test-model"
    assert "Message from CLIENT" in completions.requests[0]["messages"][0]["content"]
    assert moderation_decisions_total.value("blocked") == 1


@pytest.mark.anyio
async def test_allowed_verdict() -> None:
    service = ModerationService(fake_client(FakeCompletions('{"allowed": true}')), model="m")

    result = await service.moderate("I was charged with theft last year")

    assert result.allowed is True
    assert moderation_decisions_total.value("allowed") == 1


@pytest.mark.anyio
async def test_slow_moderation_fails_open() -> None:
    completions = FakeCompletions('{"allowed": false}', delay=0.5)
    service = ModerationService(fake_client(completions), model="m", timeout_seconds=0.01)

    result = await service.moderate("hello")

    assert result.allowed is True
    assert moderation_decisions_total.value("fail_open") == 1


@pytest.mark.anyio
@pytest.mark.parametrize("content", ["not json", '{"allowed": "no"}', "[true]", ""])
async def test_unparseable_responses_fail_open(content: str) -> None:
    service = ModerationService(fake_client(FakeCompletions(content)), model="m")

    result = await service.moderate("hello")

    assert result.allowed is True


@pytest.mark.anyio
async def test_unconfigured_or_disabled_moderation_allows() -> None:
    completions = FakeCompletions('{"allowed": false}')

    assert (await ModerationService(None, model="m").moderate("hello")).allowed is True
    disabled = ModerationService(fake_client(completions), model="m", enabled=False)
    assert (await disabled.moderate("hello")).allowed is True
    assert completions.requests == []


@pytest.mark.anyio
async def test_summary_uses_model_output(make_consultation, session_factory, services) -> None:
    seed = make_consultation(ConsultationStatus.ACTIVE)
    await services.pipeline.send_message(seed.consultation_id, Sender(seed.client_id, "CLIENT"), "Is my lease valid?")
    await services.pipeline.send_message(seed.consultation_id, Sender(seed.lawyer_user_id, "LAWYER"), "Yes, it is.")
    summary_json = {"overview": "Lease question.", "keyPoints": ["lease"], "advice": "Keep a copy.", "nextSteps": []}
    completions = FakeCompletions("```json\n" + json.dumps(summary_json) + "\n```")
    summaries = SummaryService(fake_client(completions), session_factory, model="m")

    summary = await summaries.generate(seed.consultation_id)

    assert summary["overview"] == "Lease question."
    assert summary["messageCount"] == 2
    transcript = completions.requests[0]["messages"][1]["content"]
    assert "Casey Client: Is my lease valid?" in transcript
    assert "Laura Lawyer: Yes, it is." in transcript
    with session_factory() as db:
        assert db.get(Consultation, seed.consultation_id).summary["advice"] == "Keep a copy."


@pytest.mark.anyio
async def test_summary_skipped_without_text_messages(make_consultation, session_factory) -> None:
    seed = make_consultation()
    summaries = SummaryService(fake_client(FakeCompletions("{}")), session_factory, model="m")

    assert await summaries.generate(seed.consultation_id) is None
    assert await summaries.generate("missing") is None


@pytest.mark.anyio
async def test_provider_errors_fail_open() -> None:
    completions = FakeCompletions(error=OpenAIError("service unavailable"))
    service = ModerationService(fake_client(completions), model="m")

    result = await service.moderate("hello")

    assert result.allowed is True
    assert moderation_decisions_total.value("fail_open") == 1


class EmptyChoicesCompletions(FakeCompletions):
    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(choices=[])


@pytest.mark.anyio
async def test_unexpected_response_shape_fails_open() -> None:
    completions = EmptyChoicesCompletions()
    service = ModerationService(fake_client(completions), model="m")

    result = await service.moderate("hello")

    assert result.allowed is True
    assert len(completions.requests) == 1
    assert moderation_decisions_total.value("fail_open") == 1
