"""RTC credential issuance for call participants."""

from __future__ import annotations

import logging
import time
from typing import Protocol

from agora_token_builder import RtcTokenBuilder

from app.core.errors import UpstreamFailureError

logger = logging.getLogger(__name__)

PUBLISHER = "publisher"
SUBSCRIBER = "subscriber"
DEFAULT_TOKEN_TTL_SECONDS = 3600

# Agora RTC role codes
ROLE_CODES = {PUBLISHER: 1, SUBSCRIBER: 2}


class RtcTokenIssuer(Protocol):
    app_id: str | None

    def issue_token(
        self, channel_name: str, uid: int, role: str = PUBLISHER, ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    ) -> str: ...


class AgoraRtcTokenIssuer:
    """Build Agora RTC tokens bound to one channel and one integer uid."""

    def __init__(self, app_id: str | None, app_certificate: str | None) -> None:
        self.app_id = app_id
        self._certificate = app_certificate

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self._certificate)

    def issue_token(
        self,
        channel_name: str,
        uid: int,
        role: str = PUBLISHER,
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> str:
        if not self.configured:
            raise UpstreamFailureError("RTC credentials are not configured")
        if role not in ROLE_CODES:
            raise ValueError(f"Unsupported RTC role: {role}")

        expires_at = int(time.time()) + int(ttl_seconds)
        try:
            return RtcTokenBuilder.buildTokenWithUid(
                self.app_id,
                self._certificate,
                channel_name,
                int(uid),
                ROLE_CODES[role],
                expires_at,
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Failed to build RTC token for channel %s: %s", channel_name, exc)
            raise UpstreamFailureError("Failed to issue call credentials") from exc


__all__ = [
    "PUBLISHER",
    "SUBSCRIBER",
    "DEFAULT_TOKEN_TTL_SECONDS",
    "ROLE_CODES",
    "RtcTokenIssuer",
    "AgoraRtcTokenIssuer",
]
