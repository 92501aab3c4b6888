"""Domain error taxonomy shared by the HTTP and websocket entry points."""

from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

TRIAL_EXPIRED_MESSAGE = "Trial has expired. Please pay to continue."
DEFAULT_BLOCK_REASON = "Your message was blocked by our content policy."


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    CONTENT_BLOCKED = "CONTENT_BLOCKED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"


class ServiceError(Exception):
    """Base class for failures surfaced to clients with a taxonomy kind."""

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.kind.value}
        payload.update(self.extra)
        return payload


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(ServiceError):
    """Raised for a valid entity in the wrong state; the message names that state."""

    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class InvalidInputError(ServiceError):
    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class ContentBlockedError(ServiceError):
    kind = ErrorKind.CONTENT_BLOCKED
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, reason: str | None = None, category: str | None = None) -> None:
        self.reason = reason or DEFAULT_BLOCK_REASON
        self.category = category
        super().__init__(self.reason, reason=self.reason, category=category)


class TrialExpiredError(ServiceError):
    kind = ErrorKind.TRIAL_EXPIRED
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: str = TRIAL_EXPIRED_MESSAGE) -> None:
        super().__init__(message)


class UpstreamFailureError(ServiceError):
    kind = ErrorKind.UPSTREAM_FAILURE
    status_code = status.HTTP_502_BAD_GATEWAY


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


__all__ = [
    "TRIAL_EXPIRED_MESSAGE",
    "DEFAULT_BLOCK_REASON",
    "ErrorKind",
    "ServiceError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "InvalidInputError",
    "ContentBlockedError",
    "TrialExpiredError",
    "UpstreamFailureError",
    "service_error_handler",
]
