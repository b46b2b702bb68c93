"""Error kinds raised by the realtime hub components."""

from __future__ import annotations


class RealtimeError(Exception):
    """Base class for errors that recover locally inside the hub."""


class TransportError(RealtimeError):
    """Raised when a connection dropped or a frame could not be written."""


class AuthError(RealtimeError):
    """Raised for unauthenticated messages and unauthorized actions."""


class ProtocolError(RealtimeError):
    """Raised when an inbound frame cannot be parsed into a known message."""


class PersistenceError(RealtimeError):
    """Raised by persistence adapters when a read or write failed."""


class CallStateError(RealtimeError):
    """Raised when a call transition is forbidden by the state machine."""

    def __init__(self, call_id: str | None, reason: str) -> None:
        super().__init__(f"call {call_id!r}: {reason}")
        self.call_id = call_id
        self.reason = reason


__all__ = [
    "RealtimeError",
    "TransportError",
    "AuthError",
    "ProtocolError",
    "PersistenceError",
    "CallStateError",
]
