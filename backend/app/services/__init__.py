"""Application service helpers."""

from .calls import CallSignalingService
from .lifecycle import ConsultationLifecycle
from .messaging import Attachment, MessagePipeline, Sender
from .moderation import ModerationResult, ModerationService
from .notifications import PushNotifier
from .runtime import RealtimeServices, build_services, get_services, set_services
from .summaries import SummaryService

__all__ = [
    "Attachment",
    "CallSignalingService",
    "ConsultationLifecycle",
    "MessagePipeline",
    "ModerationResult",
    "ModerationService",
    "PushNotifier",
    "RealtimeServices",
    "Sender",
    "SummaryService",
    "build_services",
    "get_services",
    "set_services",
]
