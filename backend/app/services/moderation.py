"""Chat message moderation backed by an OpenAI chat model.

Moderation fails open: when the model is unconfigured, slow, unreachable or
answers with something unparseable the message is allowed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError

from app.monitoring.metrics import moderation_decisions_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ModerationResult:
    allowed: bool
    reason: str | None = None
    category: str | None = None


ALLOWED = ModerationResult(allowed=True)


class ModerationService:
    """Classify chat text as allowed or blocked for a legal services chat."""

    PROMPT = """You are a content moderation system for a legal services platform where lawyers and clients communicate. Analyze the following message and determine if it should be blocked.

ALLOW these (they are normal in legal contexts):
- Discussions of crimes, criminal charges, legal cases
- Legal terminology including sensitive topics (assault, fraud, murder, theft, etc.)
- Descriptions of injuries, accidents, or distressing events
- Frank discussion of legal disputes, lawsuits, damages
- Emotional expressions about legal situations
- Questions about legal rights, processes, and procedures
- Threats of legal action ("I will sue", "I will take this to court")

BLOCK these:
- PROFANITY: Gratuitous vulgar language unrelated to quoting evidence
- HARASSMENT: Direct personal attacks, bullying or intimidation of the other party
- HATE_SPEECH: Slurs or discriminatory language
- SEXUAL_CONTENT: Sexually explicit content unrelated to a legal case
- THREATS: Direct threats of physical violence against the other person
- SPAM: Repetitive nonsensical text, promotional spam, scams
- PII: Social Security numbers, full card numbers, bank account plus routing numbers
- PHISHING: Suspicious links, requests for passwords or fake payment links
- IMPERSONATION: Falsely claiming to be a judge, officer or government official

Respond with ONLY valid JSON:
{{"allowed": true}}
or
{{"allowed": false, "reason": "Brief user-friendly explanation", "category": "CATEGORY_NAME"}}

Message from {role}:
\"\"\"
{content}
\"\"\""""

    def __init__(
        self,
        client: AsyncOpenAI | None,
        *,
        model: str,
        timeout_seconds: float = 3.0,
        enabled: bool = True,
    ) -> None:
        self.client = client
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled

    async def moderate(
        self, text: str | None, *, sender_role: str | None = None, sender_id: str | None = None
    ) -> ModerationResult:
        if not text or not text.strip():
            return ALLOWED
        if not self.enabled or self.client is None:
            moderation_decisions_total.labels("skipped").inc()
            return ALLOWED

        try:
            raw = await asyncio.wait_for(self._classify(text, sender_role), timeout=self.timeout_seconds)
            result = self._parse(raw)
        except asyncio.TimeoutError:
            logger.warning("Moderation timed out after %ss; allowing message", self.timeout_seconds)
            moderation_decisions_total.labels("fail_open").inc()
            return ALLOWED
        except (OpenAIError, ValueError) as exc:
            logger.error("Moderation request failed; allowing message: %s", exc)
            moderation_decisions_total.labels("fail_open").inc()
            return ALLOWED
        except Exception:
            logger.exception("Unexpected moderation failure; allowing message")
            moderation_decisions_total.labels("fail_open").inc()
            return ALLOWED

        if result is None:
            logger.warning("Invalid moderation response shape; allowing message: %s", raw)
            moderation_decisions_total.labels("fail_open").inc()
            return ALLOWED
        if not result.allowed:
            logger.info(
                "Blocked message from %s (category=%s, reason=%s)",
                sender_id or "unknown",
                result.category,
                result.reason,
            )
            moderation_decisions_total.labels("blocked").inc()
        else:
            moderation_decisions_total.labels("allowed").inc()
        return result

    async def _classify(self, text: str, sender_role: str | None) -> str:
        prompt = self.PROMPT.format(role=sender_role or "USER", content=text)
        response = await self.client.chat.completions.create(
            model=self.model,
            response_format={"type": "json_object"},
            messages=[{"role": "user", "content": prompt}],
            max_completion_tokens=150,
        )
        return response.choices[0].message.content or ""

    @staticmethod
    def _parse(raw: str) -> ModerationResult | None:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict) or not isinstance(parsed.get("allowed"), bool):
            return None
        return ModerationResult(
            allowed=parsed["allowed"],
            reason=parsed.get("reason") or None,
            category=parsed.get("category") or None,
        )


__all__ = ["ModerationResult", "ModerationService", "ALLOWED"]
