"""Post-consultation summaries generated from the chat transcript."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from openai import AsyncOpenAI, OpenAIError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Consultation, Message, MessageType

logger = logging.getLogger(__name__)

TRANSCRIPT_LIMIT = 8000
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class SummaryService:
    """Store a JSON summary on completed consultations."""

    SYSTEM_PROMPT = (
        "You are a legal consultation summarizer. Analyze the chat transcript between "
        "a client and a lawyer and return ONLY valid JSON with the fields: "
        '"overview" (2-3 sentences), "keyPoints" (3-5 strings), "advice" (1-2 sentences) '
        'and "nextSteps" (list of strings).'
    )

    def __init__(self, client: AsyncOpenAI | None, session_factory: Callable[[], Session], *, model: str) -> None:
        self.client = client
        self._session_factory = session_factory
        self.model = model

    async def generate(self, consultation_id: str) -> dict[str, Any] | None:
        with self._session_factory() as db:
            consultation = db.get(Consultation, consultation_id)
            if consultation is None:
                return None
            messages = db.execute(
                select(Message)
                .where(
                    Message.consultation_id == consultation_id,
                    Message.message_type == MessageType.TEXT,
                )
                .order_by(Message.created_at.asc())
            ).scalars().all()
            if not messages:
                return None

            client_name = consultation.client.display_name
            lawyer_name = consultation.lawyer.user.display_name
            transcript = "\n".join(
                f"{client_name if m.sender_id == consultation.client_id else lawyer_name}: {m.content}"
                for m in messages
            )
            message_count = len(messages)

        summary = await self._summarize(transcript, client_name, lawyer_name)
        if summary is None:
            summary = {
                "overview": f"Consultation between {client_name} and {lawyer_name}.",
                "keyPoints": ["Consultation completed"],
                "advice": "Please refer to the chat transcript for details.",
                "nextSteps": [],
            }
        summary["messageCount"] = message_count

        with self._session_factory() as db:
            consultation = db.get(Consultation, consultation_id)
            if consultation is not None:
                consultation.summary = summary
                db.commit()
        logger.info("Stored summary for consultation %s", consultation_id)
        return summary

    async def _summarize(self, transcript: str, client_name: str, lawyer_name: str) -> dict[str, Any] | None:
        if self.client is None:
            return None
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": self.SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": (
                            f"Client: {client_name}\nLawyer: {lawyer_name}\n\n"
                            f"Transcript:\n{transcript[:TRANSCRIPT_LIMIT]}"
                        ),
                    },
                ],
            )
            text = (response.choices[0].message.content or "").strip()
            parsed = json.loads(_FENCE.sub("", text))
        except (OpenAIError, json.JSONDecodeError) as exc:
            logger.error("Summary generation failed: %s", exc)
            return None
        return parsed if isinstance(parsed, dict) else None


__all__ = ["SummaryService"]
