"""Metric definitions for the realtime consultation engine."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime events processed by the websocket gateway.",
    label_names=("event", "direction"),
)

realtime_background_work = registry.gauge(
    "realtime_background_work",
    "Pending timer keys and detached tasks at scrape time.",
    label_names=("kind",),
)

realtime_timers_total = registry.counter(
    "realtime_timers_total",
    "Deferred trial and call timers by lifecycle action.",
    label_names=("timer", "action"),
)

moderation_decisions_total = registry.counter(
    "moderation_decisions_total",
    "Outcome of message moderation checks (allowed, blocked, fail_open).",
    label_names=("outcome",),
)

consultation_transitions_total = registry.counter(
    "consultation_transitions_total",
    "Consultation status transitions applied by the lifecycle service.",
    label_names=("from_status", "to_status"),
)

call_outcomes_total = registry.counter(
    "call_outcomes_total",
    "Call sessions reaching a given status.",
    label_names=("status",),
)

push_notifications_total = registry.counter(
    "push_notifications_total",
    "Push notification dispatch attempts by outcome.",
    label_names=("outcome",),
)
