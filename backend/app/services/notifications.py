"""Best-effort push notifications delivered through the Expo push API.

Every public coroutine here swallows and logs its failures: a notification
that cannot be delivered never fails the operation that triggered it.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable

import httpx
from sqlalchemy.orm import Session

from app.core.clock import isoformat
from app.models import MessageType, User
from app.monitoring.metrics import push_notifications_total

logger = logging.getLogger(__name__)

NEW_MESSAGES = "newMessages"
CONSULTATION_UPDATES = "consultationUpdates"
PAYMENT_ALERTS = "paymentAlerts"

DEFAULT_PREFERENCES: dict[str, bool] = {
    NEW_MESSAGES: True,
    CONSULTATION_UPDATES: True,
    PAYMENT_ALERTS: True,
    "promotions": False,
    "securityAlerts": True,
    "weeklyDigest": False,
    "inAppSounds": True,
}

PREVIEW_LENGTH = 60
_EXPO_TOKEN = re.compile(r"^Expo(nent)?PushToken\[.+\]$")


def is_expo_push_token(token: str | None) -> bool:
    return bool(token) and bool(_EXPO_TOKEN.match(token or ""))


def message_preview(content: str | None) -> str:
    if not content:
        return ""
    if len(content) > PREVIEW_LENGTH:
        return content[:PREVIEW_LENGTH].strip() + "..."
    return content


def _dollars(amount_cents: int) -> str:
    return f"{amount_cents / 100:.2f}"


class PushNotifier:
    def __init__(
        self,
        settings,
        session_factory: Callable[[], Session],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self._settings.push_notifications_enabled)

    async def send_to_user(
        self,
        user_id: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        *,
        preference: str | None = CONSULTATION_UPDATES,
    ) -> bool:
        """Deliver a notification when the user has a token and has not opted out."""

        if not self.enabled:
            push_notifications_total.labels("disabled").inc()
            return False
        try:
            with self._session_factory() as db:
                user = db.get(User, user_id)
                token = user.expo_push_token if user else None
                preferences = {**DEFAULT_PREFERENCES, **((user.notification_preferences if user else None) or {})}
        except Exception:
            logger.exception("Failed to load push settings for user %s", user_id)
            push_notifications_total.labels("failed").inc()
            return False

        if not token:
            push_notifications_total.labels("no_token").inc()
            return False
        if preference and preferences.get(preference) is False:
            push_notifications_total.labels("opted_out").inc()
            return False
        return await self._post(token, title, body, data or {})

    async def _post(self, token: str, title: str, body: str, data: dict[str, Any]) -> bool:
        if not is_expo_push_token(token):
            logger.warning("Invalid Expo push token: %s", token)
            push_notifications_total.labels("invalid_token").inc()
            return False
        headers = {"Accept": "application/json"}
        if self._settings.expo_access_token:
            headers["Authorization"] = f"Bearer {self._settings.expo_access_token}"
        message = {"to": token, "sound": "default", "title": title, "body": body, "data": data}
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.push_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(str(self._settings.expo_push_url), json=[message], headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Push notification failed: %s", exc)
            push_notifications_total.labels("failed").inc()
            return False
        push_notifications_total.labels("sent").inc()
        return True

    # -- messaging --------------------------------------------------------

    async def notify_new_message(
        self,
        recipient_id: str,
        sender_name: str,
        message_type: MessageType,
        content: str | None,
        consultation_id: str,
    ) -> bool:
        if message_type == MessageType.DOCUMENT:
            title, body = "New Document", f"{sender_name} sent you a document."
        elif message_type == MessageType.IMAGE:
            title, body = "New Attachment", f"{sender_name} sent you an image."
        else:
            title, body = "New Message", f"{sender_name}: {message_preview(content)}"
        return await self.send_to_user(
            recipient_id,
            title,
            body,
            {"type": "new_message", "consultationId": consultation_id, "messageType": message_type.value},
            preference=NEW_MESSAGES,
        )

    # -- consultation lifecycle ---------------------------------------------

    async def notify_consultation_accepted(
        self, client_id: str, lawyer_name: str, consultation_id: str, trial_end_at: datetime | None
    ) -> None:
        await self.send_to_user(
            client_id,
            "Consultation Accepted",
            f"Attorney {lawyer_name} has accepted your consultation request.",
            {"type": "consultation_accepted", "consultationId": consultation_id},
        )
        await self.send_to_user(
            client_id,
            "Trial Started",
            f"Your 3-minute trial with {lawyer_name} has begun.",
            {"type": "trial_started", "consultationId": consultation_id, "trialEndAt": isoformat(trial_end_at)},
        )

    async def notify_consultation_declined(self, client_id: str, consultation_id: str) -> bool:
        return await self.send_to_user(
            client_id,
            "Consultation Update",
            "Your consultation request was declined. Browse other lawyers.",
            {"type": "consultation_declined", "consultationId": consultation_id},
        )

    async def notify_consultation_completed(self, client_id: str, lawyer_name: str, consultation_id: str) -> bool:
        return await self.send_to_user(
            client_id,
            "Consultation Completed",
            f"Your consultation with {lawyer_name} is complete. Leave a review!",
            {"type": "consultation_completed", "consultationId": consultation_id},
        )

    async def notify_consultation_cancelled(self, recipient_id: str, actor_name: str, consultation_id: str) -> bool:
        return await self.send_to_user(
            recipient_id,
            "Consultation Cancelled",
            f"{actor_name} has cancelled the consultation.",
            {"type": "consultation_cancelled", "consultationId": consultation_id},
        )

    async def notify_trial_ending(self, client_id: str, consultation_id: str) -> bool:
        return await self.send_to_user(
            client_id,
            "Trial Ending Soon",
            "Your trial ends in 1 minute. Upgrade to continue.",
            {"type": "trial_expiring", "consultationId": consultation_id},
        )

    async def notify_trial_expired(self, client_id: str, lawyer_name: str, consultation_id: str) -> bool:
        return await self.send_to_user(
            client_id,
            "Trial Ended",
            f"Your trial with {lawyer_name} has ended. Upgrade to full consultation.",
            {"type": "trial_expired", "consultationId": consultation_id},
        )

    # -- payments -----------------------------------------------------------

    async def notify_payment_succeeded(
        self, client_id: str, lawyer_name: str, amount_cents: int, consultation_id: str
    ) -> bool:
        return await self.send_to_user(
            client_id,
            "Payment Successful",
            f"Your payment of ${_dollars(amount_cents)} to {lawyer_name} was successful.",
            {"type": "payment_succeeded", "consultationId": consultation_id, "amount": amount_cents},
            preference=PAYMENT_ALERTS,
        )

    async def notify_payment_received(
        self, lawyer_user_id: str, client_name: str, amount_cents: int, consultation_id: str
    ) -> bool:
        return await self.send_to_user(
            lawyer_user_id,
            "Payment Received",
            f"You received ${_dollars(amount_cents)} from {client_name}.",
            {"type": "payment_received", "consultationId": consultation_id, "amount": amount_cents},
            preference=PAYMENT_ALERTS,
        )

    # -- calls --------------------------------------------------------------

    async def notify_incoming_call(
        self, receiver_id: str, caller_name: str, consultation_id: str, call_id: str, *, video: bool
    ) -> bool:
        if video:
            title, body, kind = "Incoming Video Call", f"{caller_name} is video calling you.", "incoming_video_call"
        else:
            title, body, kind = "Incoming Call", f"{caller_name} is calling you.", "incoming_call"
        return await self.send_to_user(
            receiver_id, title, body, {"type": kind, "consultationId": consultation_id, "callId": call_id}
        )

    async def notify_missed_call(self, user_id: str, caller_name: str, consultation_id: str, call_id: str) -> bool:
        return await self.send_to_user(
            user_id,
            "Missed Call",
            f"You missed a call from {caller_name}.",
            {"type": "missed_call", "consultationId": consultation_id, "callId": call_id},
        )


__all__ = [
    "NEW_MESSAGES",
    "CONSULTATION_UPDATES",
    "PAYMENT_ALERTS",
    "DEFAULT_PREFERENCES",
    "PushNotifier",
    "is_expo_push_token",
    "message_preview",
]
