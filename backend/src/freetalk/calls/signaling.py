"""Helpers for the one-to-one call state machine.

The call controller owns live call state and timers; everything that can be
decided without the event loop lives here so it can be unit tested in
isolation: the state graph, party checks, the persisted record shape and the
payloads forwarded between peers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping


class CallKind(str, Enum):
    """Media kinds a call can carry."""

    AUDIO = "audio"
    VIDEO = "video"


class CallStatus(str, Enum):
    """Lifecycle states of a call."""

    RINGING = "ringing"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TIMEOUT = "timeout"
    BUSY = "busy"
    ENDED = "ended"


ACTIVE_STATUSES = frozenset({CallStatus.RINGING, CallStatus.ACCEPTED})
TERMINAL_STATUSES = frozenset(
    {CallStatus.DECLINED, CallStatus.TIMEOUT, CallStatus.BUSY, CallStatus.ENDED}
)

# Monotonic: terminal states have no outgoing edges.
TRANSITIONS: Dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.RINGING: frozenset(
        {
            CallStatus.ACCEPTED,
            CallStatus.DECLINED,
            CallStatus.TIMEOUT,
            CallStatus.BUSY,
            CallStatus.ENDED,
        }
    ),
    CallStatus.ACCEPTED: frozenset({CallStatus.ENDED}),
}

# Messages relayed between peers and the field carrying the opaque body.
RELAY_FIELDS: Dict[str, str] = {
    "call:offer": "offer",
    "call:answer": "answer",
    "call:ice-candidate": "candidate",
}

DISCONNECT_REASON = "disconnect"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    """Return whether the state graph allows ``current -> target``."""

    return target in TRANSITIONS.get(current, frozenset())


@dataclass(slots=True)
class Call:
    """In-memory state of one call, owned by the call controller."""

    call_id: str
    caller_id: str
    callee_id: str
    kind: CallKind
    status: CallStatus = CallStatus.RINGING
    started_at: datetime = field(default_factory=utcnow)
    ringing_deadline: datetime | None = None
    accepted_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def involves(self, user_id: str) -> bool:
        return user_id in (self.caller_id, self.callee_id)

    def other_party(self, user_id: str) -> str:
        """Return the peer of *user_id*; raises ``ValueError`` for non-parties."""

        if user_id == self.caller_id:
            return self.callee_id
        if user_id == self.callee_id:
            return self.caller_id
        raise ValueError(f"user {user_id!r} is not a party of call {self.call_id!r}")

    def to_record(self) -> Dict[str, Any]:
        """Serialise the call for ``call_upsert``."""

        return {
            "call_id": self.call_id,
            "caller_id": self.caller_id,
            "callee_id": self.callee_id,
            "call_type": self.kind.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "accepted_at": self.accepted_at,
            "ended_at": self.ended_at,
            "duration": call_duration(self.accepted_at, self.ended_at),
        }


def call_duration(accepted_at: datetime | None, ended_at: datetime | None) -> int:
    """Whole seconds between accept and end; zero for calls never answered."""

    if accepted_at is None or ended_at is None:
        return 0
    return max(int((ended_at - accepted_at).total_seconds()), 0)


def incoming_payload(call: Call, profile: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Payload of ``call:incoming`` hydrated with the caller profile."""

    profile = profile or {}
    return {
        "call_id": call.call_id,
        "caller_id": call.caller_id,
        "caller_name": profile.get("name"),
        "caller_avatar": profile.get("avatar"),
        "call_type": call.kind.value,
    }


def build_relay_payload(event: str, call_id: str, sender_id: str, body: Any) -> Dict[str, Any]:
    """Normalise a forwarded ``call:offer``/``call:answer``/``call:ice-candidate``."""

    field_name = RELAY_FIELDS.get(event)
    if field_name is None:
        raise ValueError(f"'{event}' is not a relayed signalling event")
    return {"call_id": call_id, "peer_id": sender_id, field_name: body}


__all__ = [
    "ACTIVE_STATUSES",
    "DISCONNECT_REASON",
    "RELAY_FIELDS",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "Call",
    "CallKind",
    "CallStatus",
    "build_relay_payload",
    "call_duration",
    "can_transition",
    "incoming_payload",
    "utcnow",
]
