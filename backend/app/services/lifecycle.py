"""Consultation state machine and its trial timers.

Allowed moves::

    PENDING -> TRIAL | CANCELLED
    TRIAL   -> ACTIVE | COMPLETED | CANCELLED
    ACTIVE  -> COMPLETED | CANCELLED

COMPLETED and CANCELLED are terminal. ``trial_end_at`` is only set while a
consultation is in TRIAL; every move out of TRIAL clears it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from lexline.realtime import ConsultationParticipants, DetachedTaskGroup, RoomRouter, TimerRegistry

from app.core.clock import as_utc, utcnow
from app.core.errors import ConflictError, ForbiddenError
from app.models import Consultation, ConsultationStatus, Message, MessageType, Payment, PaymentStatus
from app.monitoring.metrics import consultation_transitions_total
from app.schemas.consultations import ConsultationRead
from app.schemas.events import ConsultationStatusChange
from app.services.messaging import MessagePipeline, serialize_message
from app.services.notifications import PushNotifier
from app.services.participants import (
    has_succeeded_payment,
    load_consultation,
    participants_of,
    require_participant,
)
from app.services.summaries import SummaryService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ConsultationStatus, frozenset[ConsultationStatus]] = {
    ConsultationStatus.PENDING: frozenset({ConsultationStatus.TRIAL, ConsultationStatus.CANCELLED}),
    ConsultationStatus.TRIAL: frozenset(
        {ConsultationStatus.ACTIVE, ConsultationStatus.COMPLETED, ConsultationStatus.CANCELLED}
    ),
    ConsultationStatus.ACTIVE: frozenset({ConsultationStatus.COMPLETED, ConsultationStatus.CANCELLED}),
    ConsultationStatus.COMPLETED: frozenset(),
    ConsultationStatus.CANCELLED: frozenset(),
}

DEFAULT_DECLINE_NOTE = "Declined by lawyer"


def can_transition(current: ConsultationStatus, target: ConsultationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(consultation: Consultation, target: ConsultationStatus, action: str) -> ConsultationStatus:
    current = consultation.status
    if not can_transition(current, target):
        raise ConflictError(
            f"Consultation cannot be {action}, current status: {current.value}",
            currentStatus=current.value,
        )
    return current


def trial_duration_label(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}-minute"
    return f"{int(round(seconds))}-second"


def trial_key(consultation_id: str) -> str:
    return f"trial:{consultation_id}"


def cancel_stale_pending(db: Session, *, max_age_hours: float, now: datetime | None = None) -> dict[str, int]:
    """Cancel PENDING consultations nobody answered in time.

    Returns:
        dict with the number of cancelled consultations.
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=max_age_hours)
    stats = {"pending_to_cancelled": 0}

    try:
        stale = db.execute(
            select(Consultation).where(
                Consultation.status == ConsultationStatus.PENDING,
                Consultation.created_at < cutoff,
            )
        ).scalars().all()

        for consultation in stale:
            consultation.status = ConsultationStatus.CANCELLED
            consultation.ended_at = now
            consultation.notes = consultation.notes or "Expired without a response"
            stats["pending_to_cancelled"] += 1
            logger.info("Consultation %s status updated: PENDING -> CANCELLED (stale)", consultation.id)

        if stats["pending_to_cancelled"]:
            db.commit()
            logger.info("Cancelled %s stale pending consultation(s)", stats["pending_to_cancelled"])
    except Exception:
        logger.exception("Error cancelling stale pending consultations")
        db.rollback()
        raise

    return stats


class ConsultationLifecycle:
    """Run consultation transitions and the side effects attached to them."""

    def __init__(
        self,
        settings,
        session_factory: Callable[[], Session],
        router: RoomRouter,
        timers: TimerRegistry,
        notifier: PushNotifier,
        summaries: SummaryService,
        tasks: DetachedTaskGroup,
        pipeline: MessagePipeline,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._router = router
        self._timers = timers
        self._notifier = notifier
        self._summaries = summaries
        self._tasks = tasks
        self._pipeline = pipeline

    def current(self, consultation_id: str) -> ConsultationRead:
        with self._session_factory() as db:
            return ConsultationRead.model_validate(load_consultation(db, consultation_id))

    # -- fan-out ------------------------------------------------------------

    async def _broadcast_status(
        self,
        participants: ConsultationParticipants,
        consultation: ConsultationRead,
        previous: ConsultationStatus | None,
        *,
        payment_received: bool = False,
        reason: str | None = None,
    ) -> int:
        if previous is not None:
            consultation_transitions_total.labels(previous.value, consultation.status.value).inc()
        event = ConsultationStatusChange(
            consultation_id=consultation.id,
            status=consultation.status,
            previous_status=previous,
            trial_end_at=consultation.trial_end_at,
            ended_at=consultation.ended_at,
            payment_received=payment_received,
            reason=reason,
        )
        return await self._router.emit_to_participants(participants, event.to_wire())

    def _spawn(self, coro, name: str) -> None:
        self._tasks.spawn(coro, name=name)

    # -- accept ---------------------------------------------------------------

    async def accept(self, consultation_id: str, lawyer_user_id: str) -> ConsultationRead:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            if consultation.lawyer_user_id != lawyer_user_id:
                raise ForbiddenError("Only the assigned lawyer can accept this consultation")
            previous = ensure_transition(consultation, ConsultationStatus.TRIAL, "accepted")

            now = utcnow()
            consultation.status = ConsultationStatus.TRIAL
            consultation.started_at = now
            consultation.trial_end_at = now + timedelta(seconds=self._settings.trial_duration_seconds)
            lawyer = consultation.lawyer.user
            label = trial_duration_label(self._settings.trial_duration_seconds)
            system_message = Message(
                consultation_id=consultation_id,
                sender_id=lawyer_user_id,
                message_type=MessageType.SYSTEM,
                content=f"{lawyer.first_name} has accepted the consultation. Your {label} free trial has started!",
            )
            db.add(system_message)
            db.commit()

            message = serialize_message(db, system_message.id)
            result = ConsultationRead.model_validate(consultation)
            participants = participants_of(consultation)
            lawyer_name = lawyer.display_name
            trial_end_at = as_utc(consultation.trial_end_at)

        logger.info("Consultation %s accepted, trial ends at %s", consultation_id, trial_end_at)
        await self._broadcast_status(participants, result, previous)
        await self._pipeline.publish(participants, message)
        self.schedule_trial_timers(consultation_id, trial_end_at)
        self._spawn(
            self._notifier.notify_consultation_accepted(
                participants.client_id, lawyer_name, consultation_id, trial_end_at
            ),
            f"push:accepted:{consultation_id}",
        )
        return result

    # -- trial timers -----------------------------------------------------------

    def schedule_trial_timers(self, consultation_id: str, trial_end_at: datetime, *, now: datetime | None = None) -> None:
        """Arm the warning and expiry notifications for the remaining trial time."""

        remaining = (as_utc(trial_end_at) - (now or utcnow())).total_seconds()
        key = trial_key(consultation_id)
        warning_delay = remaining - self._settings.trial_warning_lead_seconds
        if self._settings.trial_warning_lead_seconds > 0 and warning_delay > 0:
            self._timers.schedule(
                key, warning_delay, lambda: self._trial_warning(consultation_id), label="trial_warning"
            )
        self._timers.schedule(
            key, max(remaining, 0.0), lambda: self._trial_expired(consultation_id), label="trial_expiry"
        )

    def cancel_trial_timers(self, consultation_id: str) -> int:
        return self._timers.cancel(trial_key(consultation_id))

    def _unpaid_trial(self, db: Session, consultation_id: str) -> Consultation | None:
        consultation = db.get(Consultation, consultation_id)
        if consultation is None or consultation.status != ConsultationStatus.TRIAL:
            return None
        if has_succeeded_payment(db, consultation_id):
            return None
        return consultation

    async def _trial_warning(self, consultation_id: str) -> None:
        with self._session_factory() as db:
            consultation = self._unpaid_trial(db, consultation_id)
            if consultation is None:
                return
            client_id = consultation.client_id
        await self._notifier.notify_trial_ending(client_id, consultation_id)

    async def _trial_expired(self, consultation_id: str) -> bool:
        with self._session_factory() as db:
            consultation = self._unpaid_trial(db, consultation_id)
            if consultation is None:
                return False
            client_id = consultation.client_id
            lawyer_name = consultation.lawyer.user.display_name
        logger.info("Trial expired for consultation %s", consultation_id)
        await self._notifier.notify_trial_expired(client_id, lawyer_name, consultation_id)
        return True

    # -- payment --------------------------------------------------------------------

    def _record_payment(
        self,
        db: Session,
        consultation: Consultation,
        status: PaymentStatus,
        amount_cents: int | None,
        provider_reference: str | None,
    ) -> Payment:
        payment = consultation.payment
        if payment is None:
            payment = Payment(consultation_id=consultation.id, amount_cents=amount_cents or 0)
            db.add(payment)
        if amount_cents is not None:
            payment.amount_cents = amount_cents
        if provider_reference:
            payment.provider_reference = provider_reference
        payment.status = status
        return payment

    async def mark_paid(
        self,
        consultation_id: str,
        *,
        amount_cents: int | None = None,
        provider_reference: str | None = None,
    ) -> ConsultationRead:
        """Apply a successful payment; re-deliveries for ACTIVE consultations are no-ops.

        Payments for PENDING consultations are rejected before anything is stored;
        the consultation has no trial yet to convert.
        """

        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            if consultation.status == ConsultationStatus.PENDING:
                ensure_transition(consultation, ConsultationStatus.ACTIVE, "activated")
            payment = self._record_payment(
                db, consultation, PaymentStatus.SUCCEEDED, amount_cents, provider_reference
            )
            previous = consultation.status
            if previous == ConsultationStatus.ACTIVE:
                db.commit()
                logger.info("Payment for consultation %s already applied", consultation_id)
                return ConsultationRead.model_validate(consultation)
            if previous != ConsultationStatus.TRIAL:
                db.commit()
                ensure_transition(consultation, ConsultationStatus.ACTIVE, "activated")

            consultation.status = ConsultationStatus.ACTIVE
            consultation.trial_end_at = None
            db.commit()
            result = ConsultationRead.model_validate(consultation)
            participants = participants_of(consultation)
            client_name = consultation.client.display_name
            lawyer_name = consultation.lawyer.user.display_name
            amount = payment.amount_cents

        self.cancel_trial_timers(consultation_id)
        logger.info("Consultation %s activated by payment", consultation_id)
        await self._broadcast_status(participants, result, previous, payment_received=True)
        self._spawn(
            self._notifier.notify_payment_succeeded(participants.client_id, lawyer_name, amount, consultation_id),
            f"push:payment-succeeded:{consultation_id}",
        )
        self._spawn(
            self._notifier.notify_payment_received(
                participants.lawyer_user_id, client_name, amount, consultation_id
            ),
            f"push:payment-received:{consultation_id}",
        )
        return result

    def record_failed_payment(
        self,
        consultation_id: str,
        *,
        amount_cents: int | None = None,
        provider_reference: str | None = None,
    ) -> ConsultationRead:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            if has_succeeded_payment(db, consultation_id):
                return ConsultationRead.model_validate(consultation)
            self._record_payment(db, consultation, PaymentStatus.FAILED, amount_cents, provider_reference)
            db.commit()
            logger.warning("Payment failed for consultation %s", consultation_id)
            return ConsultationRead.model_validate(consultation)

    # -- decline / complete / cancel ------------------------------------------------

    async def decline(self, consultation_id: str, lawyer_user_id: str, reason: str | None = None) -> ConsultationRead:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            if consultation.lawyer_user_id != lawyer_user_id:
                raise ForbiddenError("Only the assigned lawyer can decline this consultation")
            if consultation.status != ConsultationStatus.PENDING:
                raise ConflictError(
                    f"Consultation cannot be declined, current status: {consultation.status.value}",
                    currentStatus=consultation.status.value,
                )
            previous = consultation.status
            consultation.status = ConsultationStatus.CANCELLED
            consultation.ended_at = utcnow()
            consultation.notes = reason or DEFAULT_DECLINE_NOTE
            db.commit()
            result = ConsultationRead.model_validate(consultation)
            participants = participants_of(consultation)

        await self._broadcast_status(participants, result, previous, reason=result.notes)
        self._spawn(
            self._notifier.notify_consultation_declined(participants.client_id, consultation_id),
            f"push:declined:{consultation_id}",
        )
        return result

    async def complete(self, consultation_id: str, user_id: str) -> ConsultationRead:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, user_id)
            previous = ensure_transition(consultation, ConsultationStatus.COMPLETED, "completed")
            consultation.status = ConsultationStatus.COMPLETED
            consultation.ended_at = utcnow()
            consultation.trial_end_at = None
            db.commit()
            result = ConsultationRead.model_validate(consultation)
            participants = participants_of(consultation)
            lawyer_name = consultation.lawyer.user.display_name

        self.cancel_trial_timers(consultation_id)
        await self._broadcast_status(participants, result, previous)
        self._spawn(self._summaries.generate(consultation_id), f"summary:{consultation_id}")
        self._spawn(
            self._notifier.notify_consultation_completed(participants.client_id, lawyer_name, consultation_id),
            f"push:completed:{consultation_id}",
        )
        return result

    async def cancel(self, consultation_id: str, user_id: str, reason: str | None = None) -> ConsultationRead:
        with self._session_factory() as db:
            consultation = load_consultation(db, consultation_id)
            require_participant(consultation, user_id)
            previous = ensure_transition(consultation, ConsultationStatus.CANCELLED, "cancelled")
            consultation.status = ConsultationStatus.CANCELLED
            consultation.ended_at = utcnow()
            consultation.trial_end_at = None
            if reason:
                consultation.notes = reason
            db.commit()
            result = ConsultationRead.model_validate(consultation)
            participants = participants_of(consultation)
            actor = consultation.client if user_id == consultation.client_id else consultation.lawyer.user
            actor_name = actor.display_name

        self.cancel_trial_timers(consultation_id)
        await self._broadcast_status(participants, result, previous, reason=reason)
        self._spawn(
            self._notifier.notify_consultation_cancelled(
                participants.counterpart(user_id), actor_name, consultation_id
            ),
            f"push:cancelled:{consultation_id}",
        )
        return result

    # -- sweeps ------------------------------------------------------------------------

    async def recover_trials(self) -> dict[str, int]:
        """Handle trials whose timers were lost with the previous process."""

        now = utcnow()
        stats = {"expired_notified": 0, "rearmed": 0}
        with self._session_factory() as db:
            rows = db.execute(
                select(Consultation.id, Consultation.trial_end_at).where(
                    Consultation.status == ConsultationStatus.TRIAL,
                    Consultation.trial_end_at.is_not(None),
                )
            ).all()

        for consultation_id, trial_end_at in rows:
            trial_end_at = as_utc(trial_end_at)
            if trial_end_at > now:
                self.schedule_trial_timers(consultation_id, trial_end_at, now=now)
                stats["rearmed"] += 1
            elif await self._trial_expired(consultation_id):
                stats["expired_notified"] += 1

        if stats["expired_notified"] or stats["rearmed"]:
            logger.info(
                "Trial recovery: %s expired trial(s) notified, %s running trial(s) re-armed",
                stats["expired_notified"],
                stats["rearmed"],
            )
        return stats

    async def sweep_stale_pending(self) -> dict[str, int]:
        with self._session_factory() as db:
            pending_ids = db.execute(
                select(Consultation.id).where(Consultation.status == ConsultationStatus.PENDING)
            ).scalars().all()
            stats = cancel_stale_pending(db, max_age_hours=self._settings.stale_pending_max_age_hours)
            cancelled = db.execute(
                select(Consultation).where(
                    Consultation.id.in_(pending_ids),
                    Consultation.status == ConsultationStatus.CANCELLED,
                )
            ).scalars().all()
            changes = [(participants_of(c), ConsultationRead.model_validate(c)) for c in cancelled]

        for participants, result in changes:
            await self._broadcast_status(participants, result, ConsultationStatus.PENDING, reason=result.notes)
        return stats


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ConsultationLifecycle",
    "can_transition",
    "cancel_stale_pending",
    "ensure_transition",
    "trial_duration_label",
]
