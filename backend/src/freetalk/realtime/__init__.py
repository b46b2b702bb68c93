"""Realtime hub components for websocket coordination."""

from .connection import Connection  # noqa: F401
from .dispatcher import BROADCAST, EventDispatcher, to_room, to_rooms, to_user, to_users  # noqa: F401
from .errors import (  # noqa: F401
    AuthError,
    CallStateError,
    PersistenceError,
    ProtocolError,
    RealtimeError,
    TransportError,
)
from .hub import Hub  # noqa: F401
from .persistence import PersistenceAdapter, PersistenceWriter  # noqa: F401

__all__ = [
    "Hub",
    "Connection",
    "EventDispatcher",
    "PersistenceAdapter",
    "PersistenceWriter",
    "BROADCAST",
    "to_room",
    "to_rooms",
    "to_user",
    "to_users",
    "RealtimeError",
    "TransportError",
    "AuthError",
    "ProtocolError",
    "PersistenceError",
    "CallStateError",
]
