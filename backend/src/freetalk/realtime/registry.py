"""Connection and user-binding bookkeeping."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Set

from app.monitoring.metrics import realtime_connections

from .connection import Connection
from .errors import AuthError
from .presence import PresenceTracker
from .rooms import RoomIndex, user_room

logger = logging.getLogger(__name__)

OfflineListener = Callable[[str], Awaitable[None]]


class SessionRegistry:
    """Owns every open connection and the user -> connections binding.

    Presence changes only when a user's binding set goes from empty to
    non-empty or back, so extra devices and tabs are invisible to others.
    """

    def __init__(self, rooms: RoomIndex, presence: PresenceTracker) -> None:
        self._rooms = rooms
        self._presence = presence
        self._connections: Dict[str, Connection] = {}
        self._bindings: Dict[str, Set[str]] = {}
        self._offline_listeners: list[OfflineListener] = []

    def add_offline_listener(self, listener: OfflineListener) -> None:
        """Register a coroutine called with the user id when its last connection closes."""

        self._offline_listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def connection_count(self, user_id: str) -> int:
        return len(self._bindings.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._bindings.get(user_id))

    def users(self) -> list[str]:
        return sorted(self._bindings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self, connection: Connection) -> None:
        if connection.id in self._connections:
            return
        self._connections[connection.id] = connection
        realtime_connections.labels("hub").inc()
        logger.info("Connection opened", extra={"connection": connection.id})

    async def authenticate(self, connection: Connection, user_id: str) -> bool:
        """Bind *connection* to *user_id*; returns ``False`` when already bound to it."""

        if connection.user_id == user_id:
            return False
        if connection.user_id is not None:
            raise AuthError("Connection is already bound to another user")
        if connection.id not in self._connections:
            raise AuthError("Connection is not open")

        bucket = self._bindings.setdefault(user_id, set())
        first = not bucket
        bucket.add(connection.id)
        connection.user_id = user_id
        connection.touch()
        self._rooms.join(connection, user_room(user_id))
        logger.info(
            "Connection authenticated",
            extra={"connection": connection.id, "user_id": user_id, "connections": len(bucket)},
        )

        if first:
            status = self._presence.mark_online(user_id).to_public()
            await self._presence.announce(status)
        else:
            self._presence.touch(user_id)
        return True

    def heartbeat(self, connection: Connection) -> dict[str, str]:
        """Record liveness and return the ``pong`` payload."""

        connection.touch()
        if connection.user_id is not None:
            self._presence.touch(connection.user_id)
        return {"timestamp": datetime.now(timezone.utc).isoformat()}

    async def close(self, connection: Connection) -> None:
        """Forget *connection*; the last connection of a user takes it offline."""

        if self._connections.pop(connection.id, None) is None:
            return
        realtime_connections.labels("hub").dec()
        rooms = self._rooms.leave_all(connection)
        user_id = connection.user_id
        logger.info(
            "Connection closed",
            extra={"connection": connection.id, "user_id": user_id, "rooms": len(rooms)},
        )
        if user_id is None:
            return

        bucket = self._bindings.get(user_id)
        if bucket is None:
            return
        bucket.discard(connection.id)
        if bucket:
            return
        self._bindings.pop(user_id, None)
        status = self._presence.mark_offline(user_id).to_public()

        for listener in list(self._offline_listeners):
            await listener(user_id)
        if self._bindings.get(user_id):
            # Re-authenticated while the listeners ran; the online status already went out.
            logger.info("Skipped stale offline status", extra={"user_id": user_id})
            return
        await self._presence.announce(status)


__all__ = ["SessionRegistry"]
