"""Process-wide realtime services and their startup/shutdown hooks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from openai import AsyncOpenAI
from sqlalchemy import select
from sqlalchemy.orm import Session

from lexline.calls import CallStore, InMemoryCallStore, RtcTokenIssuer, AgoraRtcTokenIssuer
from lexline.realtime import (
    AsyncioTimerRegistry,
    ConnectionSession,
    DetachedTaskGroup,
    InMemoryPresenceTracker,
    RoomRouter,
)

from app.config import Settings, get_settings
from app.core.clock import utcnow
from app.models import LawyerOnlineStatus, LawyerProfile, User
from app.schemas.events import LawyerStatusChange
from app.services.calls import CallSignalingService
from app.services.lifecycle import ConsultationLifecycle
from app.services.messaging import MessagePipeline
from app.services.moderation import ModerationService
from app.services.notifications import PushNotifier
from app.services.participants import ParticipantDirectory
from app.services.summaries import SummaryService

logger = logging.getLogger(__name__)


@dataclass
class RealtimeServices:
    settings: Settings
    session_factory: Callable[[], Session]
    router: RoomRouter
    timers: AsyncioTimerRegistry
    tasks: DetachedTaskGroup
    calls_store: CallStore
    notifier: PushNotifier
    moderation: ModerationService
    summaries: SummaryService
    pipeline: MessagePipeline
    lifecycle: ConsultationLifecycle
    calls: CallSignalingService
    maintenance_task: asyncio.Task | None = None

    @property
    def presence(self):
        return self.router.presence

    def online_lawyers(self) -> dict[str, str]:
        """Stored status of every lawyer profile whose user holds a live connection."""

        with self.session_factory() as db:
            rows = db.execute(
                select(LawyerProfile.id, LawyerProfile.user_id, LawyerProfile.online_status).where(
                    LawyerProfile.online_status != LawyerOnlineStatus.OFFLINE
                )
            ).all()
        connected = set(self.presence.filter_online(row.user_id for row in rows))
        return {row.id: row.online_status.value for row in rows if row.user_id in connected}


class LawyerPresenceUpdater:
    """Mirror presence transitions onto the persisted lawyer profile.

    The stored status is advisory; failures are logged and never block the
    connection that triggered them.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self.router: RoomRouter | None = None

    async def __call__(self, session: ConnectionSession, online: bool | None) -> None:
        now = utcnow()
        change: LawyerStatusChange | None = None
        with self._session_factory() as db:
            user = db.get(User, session.user_id)
            if user is None:
                return
            if online is not True:
                user.last_active_at = now
            profile = None
            if online is not None:
                profile = db.execute(
                    select(LawyerProfile).where(LawyerProfile.user_id == session.user_id)
                ).scalar_one_or_none()
            if profile is not None:
                status = LawyerOnlineStatus.ONLINE if online else LawyerOnlineStatus.OFFLINE
                profile.online_status = status
                profile.is_available = bool(online)
                profile.last_active_at = now
                change = LawyerStatusChange(lawyer_id=profile.id, user_id=session.user_id, status=status.value)
            db.commit()

        if change is not None and self.router is not None:
            await self.router.broadcast_all(change.to_wire())


def build_openai_client(settings) -> AsyncOpenAI | None:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; moderation and summaries run in fallback mode")
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key)


def build_services(
    settings,
    session_factory: Callable[[], Session],
    *,
    notifier: PushNotifier | None = None,
    moderation: ModerationService | None = None,
    summaries: SummaryService | None = None,
    issuer: RtcTokenIssuer | None = None,
) -> RealtimeServices:
    """Wire every realtime collaborator together; keyword overrides are for tests."""

    presence_updater = LawyerPresenceUpdater(session_factory)
    router = RoomRouter(
        InMemoryPresenceTracker(),
        ParticipantDirectory(session_factory),
        on_presence_change=presence_updater,
    )
    presence_updater.router = router

    timers = AsyncioTimerRegistry()
    tasks = DetachedTaskGroup()
    store = InMemoryCallStore()
    openai_client = None
    if moderation is None or summaries is None:
        openai_client = build_openai_client(settings)
    notifier = notifier or PushNotifier(settings, session_factory)
    moderation = moderation or ModerationService(
        openai_client,
        model=settings.moderation_model,
        timeout_seconds=settings.moderation_timeout_seconds,
        enabled=settings.moderation_enabled,
    )
    summaries = summaries or SummaryService(openai_client, session_factory, model=settings.summary_model)
    issuer = issuer or AgoraRtcTokenIssuer(settings.rtc_app_id, settings.rtc_app_certificate)

    pipeline = MessagePipeline(settings, session_factory, router, moderation, notifier, tasks)
    lifecycle = ConsultationLifecycle(
        settings, session_factory, router, timers, notifier, summaries, tasks, pipeline
    )
    calls = CallSignalingService(settings, session_factory, router, store, timers, issuer, notifier, tasks)
    return RealtimeServices(
        settings=settings,
        session_factory=session_factory,
        router=router,
        timers=timers,
        tasks=tasks,
        calls_store=store,
        notifier=notifier,
        moderation=moderation,
        summaries=summaries,
        pipeline=pipeline,
        lifecycle=lifecycle,
        calls=calls,
    )


_services: RealtimeServices | None = None


def get_services() -> RealtimeServices:
    global _services
    if _services is None:
        from app.database import SessionLocal

        _services = build_services(get_settings(), SessionLocal)
    return _services


def set_services(services: RealtimeServices | None) -> None:
    global _services
    _services = services


async def _maintenance_loop(services: RealtimeServices, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await services.lifecycle.sweep_stale_pending()
        except Exception:
            logger.exception("Stale consultation sweep failed")


async def startup_realtime() -> None:
    services = get_services()
    try:
        await services.lifecycle.recover_trials()
    except Exception:
        logger.exception("Trial recovery sweep failed during startup")

    interval = float(services.settings.stale_sweep_interval_seconds)
    if interval > 0 and services.maintenance_task is None:
        services.maintenance_task = asyncio.get_running_loop().create_task(
            _maintenance_loop(services, interval), name="stale-consultation-sweep"
        )


async def shutdown_realtime() -> None:
    services = _services
    if services is None:
        return
    task, services.maintenance_task = services.maintenance_task, None
    if task is not None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    await services.timers.shutdown()
    await services.tasks.shutdown()


__all__ = [
    "LawyerPresenceUpdater",
    "RealtimeServices",
    "build_services",
    "get_services",
    "set_services",
    "startup_realtime",
    "shutdown_realtime",
]
