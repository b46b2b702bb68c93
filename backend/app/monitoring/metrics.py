"""Metric definitions for the realtime hub."""

from __future__ import annotations

from .registry import registry


realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of open websocket connections handled by this process.",
    label_names=("scope",),
)

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime messages processed by the hub.",
    label_names=("topic", "direction", "action"),
)

realtime_delivery_errors_total = registry.counter(
    "realtime_delivery_errors_total",
    "Frames that could not be written to a connection during fan-out.",
    label_names=("scope",),
)

realtime_calls_total = registry.counter(
    "realtime_calls_total",
    "Call state transitions by resulting status.",
    label_names=("status",),
)

realtime_persistence_retries_total = registry.counter(
    "realtime_persistence_retries_total",
    "Persistence writes retried after a transient failure.",
    label_names=("operation",),
)

realtime_persistence_dead_letters_total = registry.counter(
    "realtime_persistence_dead_letters_total",
    "Persistence writes abandoned after exhausting retries.",
    label_names=("operation",),
)

realtime_active_calls = registry.gauge(
    "realtime_active_calls",
    "Calls currently ringing or accepted.",
)

realtime_rooms = registry.gauge(
    "realtime_rooms",
    "Rooms with at least one member connection.",
)
