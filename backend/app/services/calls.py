"""Voice and video call signaling on top of the in-memory call store."""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from sqlalchemy.orm import Session

from lexline.calls import (
    CallSession,
    CallStatus,
    CallStore,
    CallType,
    RtcTokenIssuer,
    build_channel_name,
    compute_duration,
    user_id_to_uid,
)
from lexline.calls.signaling import TERMINAL_CALL_STATUSES
from lexline.calls.tokens import PUBLISHER
from lexline.realtime import DetachedTaskGroup, RoomRouter, TimerRegistry

from app.core.clock import isoformat, utcnow
from app.core.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from app.monitoring.metrics import call_outcomes_total
from app.schemas.calls import CallCredentials, CallResponse
from app.schemas.events import CallEvent, IncomingCall
from app.services.notifications import PushNotifier
from app.services.participants import load_consultation, require_participant

logger = logging.getLogger(__name__)


def ring_key(call_id: str) -> str:
    return f"call:{call_id}"


def cleanup_key(call_id: str) -> str:
    return f"call-cleanup:{call_id}"


def incoming_call_event(call: CallSession) -> IncomingCall:
    return IncomingCall(
        call_id=call.call_id,
        consultation_id=call.consultation_id,
        caller_id=call.initiator_id,
        caller_name=call.initiator_name,
        call_type=call.call_type.value,
        is_video=call.is_video,
    )


class CallSignalingService:
    """Ringing, answering and hanging up calls between consultation participants.

    Every mutation runs synchronously between awaits, so a call changes
    status at most once per event loop step. The ring timeout re-checks the
    status when it fires and only moves calls that are still ringing.
    """

    def __init__(
        self,
        settings,
        session_factory: Callable[[], Session],
        router: RoomRouter,
        store: CallStore,
        timers: TimerRegistry,
        issuer: RtcTokenIssuer,
        notifier: PushNotifier,
        tasks: DetachedTaskGroup,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._router = router
        self._store = store
        self._timers = timers
        self._issuer = issuer
        self._notifier = notifier
        self._tasks = tasks

    # -- helpers -------------------------------------------------------------

    def _issue(self, call: CallSession, user_id: str) -> CallCredentials:
        uid = call.uid_for(user_id)
        token = self._issuer.issue_token(
            call.channel_name, uid, PUBLISHER, self._settings.rtc_token_ttl_seconds
        )
        return CallCredentials(
            rtc_app_id=self._issuer.app_id,
            rtc_token=token,
            rtc_uid=uid,
            channel_name=call.channel_name,
        )

    def _get_call(self, call_id: str) -> CallSession:
        call = self._store.get(call_id)
        if call is None:
            raise NotFoundError("Call not found")
        return call

    def _require_party(self, call: CallSession, user_id: str) -> None:
        if call.party_of(user_id) is None:
            raise ForbiddenError("Not a participant of this call")

    def _require_receiver(self, call: CallSession, user_id: str, action: str, done: str) -> None:
        if user_id != call.receiver_id:
            raise ForbiddenError(f"Only the receiver can {action} this call")
        if call.status != CallStatus.RINGING:
            raise ConflictError(
                f"Call cannot be {done}, current status: {call.status.value}",
                currentStatus=call.status.value,
            )

    async def _emit_to_parties(self, call: CallSession, event: CallEvent) -> int:
        payload = event.to_wire()
        delivered = await self._router.emit_to_user(call.initiator_id, payload)
        delivered += await self._router.emit_to_user(call.receiver_id, payload)
        return delivered

    def _schedule_cleanup(self, call: CallSession) -> None:
        call_id = call.call_id
        self._timers.schedule(
            cleanup_key(call_id),
            self._settings.call_cleanup_grace_seconds,
            lambda: self._cleanup(call_id),
            label="call_cleanup",
        )

    async def _cleanup(self, call_id: str) -> None:
        call = self._store.get(call_id)
        if call is not None and call.status in TERMINAL_CALL_STATUSES:
            self._store.remove(call_id)
            logger.debug("Removed call %s from memory", call_id)

    # -- operations --------------------------------------------------------------

    async def initiate_call(self, consultation_id: str, caller_id: str, call_type: str | CallType) -> CallResponse:
        try:
            call_type = CallType(call_type)
        except ValueError:
            raise InvalidInputError("Invalid call type. Must be 'voice' or 'video'") from None

        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, caller_id)
            if consultation.status.is_terminal:
                raise ConflictError(
                    f"Cannot start a call, consultation status: {consultation.status.value}",
                    currentStatus=consultation.status.value,
                )
            if caller_id == consultation.client_id:
                caller, receiver = consultation.client, consultation.lawyer.user
            else:
                caller, receiver = consultation.lawyer.user, consultation.client
            receiver_id = receiver.id
            caller_name = caller.display_name
            receiver_name = receiver.display_name

        call = CallSession(
            call_id=uuid.uuid4().hex,
            consultation_id=consultation_id,
            initiator_id=caller_id,
            receiver_id=receiver_id,
            call_type=call_type,
            channel_name=build_channel_name(),
            initiator_uid=user_id_to_uid(caller_id),
            receiver_uid=user_id_to_uid(receiver_id),
            initiator_name=caller_name,
            receiver_name=receiver_name,
            created_at=utcnow(),
        )
        credentials = self._issue(call, caller_id)
        self._store.add(call)
        call_id = call.call_id
        self._timers.schedule(
            ring_key(call_id),
            self._settings.call_ring_timeout_seconds,
            lambda: self._ring_timeout(call_id),
            label="call_ring",
        )
        call_outcomes_total.labels("initiated").inc()
        logger.info("Call %s initiated in consultation %s (%s)", call.call_id, consultation_id, call_type.value)

        await self._router.emit_to_user(receiver_id, incoming_call_event(call).to_wire())
        self._tasks.spawn(
            self._notifier.notify_incoming_call(
                receiver_id, caller_name, consultation_id, call.call_id, video=call.is_video
            ),
            name=f"push:incoming-call:{call.call_id}",
        )
        return CallResponse(call=call.to_public(), credentials=credentials)

    async def _ring_timeout(self, call_id: str) -> bool:
        call = self._store.get(call_id)
        if call is None or call.status != CallStatus.RINGING:
            return False
        call.status = CallStatus.MISSED
        call.ended_at = utcnow()
        call_outcomes_total.labels(CallStatus.MISSED.value).inc()
        logger.info("Call %s was not answered", call_id)

        await self._emit_to_parties(
            call,
            CallEvent(
                type="call-missed",
                call_id=call_id,
                consultation_id=call.consultation_id,
                ended_at=isoformat(call.ended_at),
            ),
        )
        self._tasks.spawn(
            self._notifier.notify_missed_call(
                call.receiver_id, call.initiator_name, call.consultation_id, call_id
            ),
            name=f"push:missed-call:{call_id}",
        )
        self._schedule_cleanup(call)
        return True

    async def accept_call(self, call_id: str, user_id: str) -> CallResponse:
        call = self._get_call(call_id)
        self._require_receiver(call, user_id, "accept", "accepted")
        credentials = self._issue(call, user_id)

        call.status = CallStatus.ACTIVE
        call.started_at = utcnow()
        self._timers.cancel(ring_key(call_id))
        call_outcomes_total.labels(CallStatus.ACTIVE.value).inc()

        await self._emit_to_parties(
            call,
            CallEvent(
                type="call-accepted",
                call_id=call_id,
                consultation_id=call.consultation_id,
                accepted_at=isoformat(call.started_at),
            ),
        )
        return CallResponse(call=call.to_public(), credentials=credentials)

    async def decline_call(self, call_id: str, user_id: str) -> CallResponse:
        call = self._get_call(call_id)
        self._require_receiver(call, user_id, "decline", "declined")

        call.status = CallStatus.DECLINED
        call.ended_at = utcnow()
        self._timers.cancel(ring_key(call_id))
        call_outcomes_total.labels(CallStatus.DECLINED.value).inc()

        event = CallEvent(type="call-declined", call_id=call_id, consultation_id=call.consultation_id)
        await self._router.emit_to_user(call.initiator_id, event.to_wire())
        self._schedule_cleanup(call)
        return CallResponse(call=call.to_public())

    async def end_call(self, call_id: str, user_id: str) -> CallResponse:
        call = self._get_call(call_id)
        self._require_party(call, user_id)
        if call.status == CallStatus.ENDED:
            raise ConflictError("Call has already ended", currentStatus=call.status.value)

        self._timers.cancel(ring_key(call_id))
        call.ended_at = utcnow()
        call.duration = compute_duration(call.started_at, call.ended_at)
        call.status = CallStatus.ENDED
        call_outcomes_total.labels(CallStatus.ENDED.value).inc()
        logger.info("Call %s ended after %ss", call_id, call.duration)

        await self._emit_to_parties(
            call,
            CallEvent(
                type="call-ended",
                call_id=call_id,
                consultation_id=call.consultation_id,
                ended_at=isoformat(call.ended_at),
                duration=call.duration,
            ),
        )
        self._schedule_cleanup(call)
        return CallResponse(call=call.to_public())

    def get_call_token(self, call_id: str, user_id: str) -> CallCredentials:
        call = self._get_call(call_id)
        self._require_party(call, user_id)
        return self._issue(call, user_id)

    def get_call(self, call_id: str, user_id: str) -> CallResponse:
        call = self._get_call(call_id)
        self._require_party(call, user_id)
        return CallResponse(call=call.to_public())

    def pending_call_for(self, user_id: str) -> IncomingCall | None:
        """Return the ringing call a reconnecting receiver should still see."""

        call = self._store.find_ringing_for(user_id)
        return incoming_call_event(call) if call is not None else None


__all__ = ["CallSignalingService", "cleanup_key", "incoming_call_event", "ring_key"]
