"""Named multicast groups of connections."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, Mapping, Set

from app.monitoring.metrics import realtime_delivery_errors_total, realtime_events_total

from .connection import Connection

logger = logging.getLogger(__name__)

USER_ROOM = "user"
EVENT_ROOM = "event"
CLUB_ROOM = "club"
CRISIS_ROOM = "crisis"

ROOM_KINDS = frozenset({USER_ROOM, EVENT_ROOM, CLUB_ROOM, CRISIS_ROOM})
# Rooms whose joins are gated by a membership check on the resource.
RESOURCE_ROOM_KINDS = frozenset({EVENT_ROOM, CLUB_ROOM, CRISIS_ROOM})


def room_name(kind: str, resource_id: str) -> str:
    if kind not in ROOM_KINDS:
        raise ValueError(f"Unknown room kind '{kind}'")
    return f"{kind}:{resource_id}"


def user_room(user_id: str) -> str:
    return room_name(USER_ROOM, user_id)


def club_room(club_id: str) -> str:
    return room_name(CLUB_ROOM, club_id)


def crisis_room(crisis_id: str) -> str:
    return room_name(CRISIS_ROOM, crisis_id)


def parse_room(room: str) -> tuple[str, str]:
    """Split ``kind:resource_id``; raises ``ValueError`` for malformed names."""

    kind, sep, resource_id = room.partition(":")
    if not sep or not resource_id or kind not in ROOM_KINDS:
        raise ValueError(f"Malformed room name '{room}'")
    return kind, resource_id


class RoomIndex:
    """Tracks which connections joined which rooms.

    Membership is stored by connection id only; *resolve* maps an id back to
    the live :class:`Connection` owned by the session registry at send time.
    """

    def __init__(self, resolve: Callable[[str], Connection | None]) -> None:
        self._resolve = resolve
        self._members: Dict[str, Set[str]] = defaultdict(set)
        self._memberships: Dict[str, Set[str]] = defaultdict(set)

    def join(self, connection: Connection, room: str) -> bool:
        """Add *connection* to *room*; returns ``False`` if it already was a member."""

        parse_room(room)
        members = self._members[room]
        if connection.id in members:
            return False
        members.add(connection.id)
        self._memberships[connection.id].add(room)
        logger.debug("Connection joined room", extra={"connection": connection.id, "room": room})
        return True

    def leave(self, connection: Connection, room: str) -> bool:
        members = self._members.get(room)
        if not members or connection.id not in members:
            return False
        members.discard(connection.id)
        if not members:
            self._members.pop(room, None)
        rooms = self._memberships.get(connection.id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                self._memberships.pop(connection.id, None)
        return True

    def leave_all(self, connection: Connection) -> list[str]:
        """Remove *connection* from every room it joined."""

        rooms = sorted(self._memberships.pop(connection.id, set()))
        for room in rooms:
            members = self._members.get(room)
            if members is None:
                continue
            members.discard(connection.id)
            if not members:
                self._members.pop(room, None)
        return rooms

    def is_member(self, connection: Connection, room: str) -> bool:
        return connection.id in self._members.get(room, ())

    def members(self, room: str) -> frozenset[str]:
        return frozenset(self._members.get(room, ()))

    def rooms_of(self, connection: Connection) -> frozenset[str]:
        return frozenset(self._memberships.get(connection.id, ()))

    def rooms(self) -> list[str]:
        return sorted(self._members)

    async def publish(self, room: str, event: str, payload: Mapping[str, Any]) -> int:
        """Deliver *event* to every member of *room*; returns the delivery count."""

        return await self.deliver(self.members(room), event, payload, scope=room)

    async def publish_except(
        self,
        room: str,
        except_connection: Connection | None,
        event: str,
        payload: Mapping[str, Any],
    ) -> int:
        members = self.members(room)
        if except_connection is not None:
            members = members - {except_connection.id}
        return await self.deliver(members, event, payload, scope=room)

    async def deliver(
        self,
        connection_ids: Iterable[str],
        event: str,
        payload: Mapping[str, Any],
        *,
        scope: str,
    ) -> int:
        """Best-effort fan-out; a failing connection is logged and skipped."""

        delivered = 0
        kind = scope.partition(":")[0]
        for connection_id in sorted(connection_ids):
            connection = self._resolve(connection_id)
            if connection is None:
                continue
            if await connection.send(event, payload):
                delivered += 1
            else:
                realtime_delivery_errors_total.labels(kind).inc()
                logger.info(
                    "Dropped realtime frame for unreachable connection",
                    extra={"connection": connection_id, "event": event, "scope": scope},
                )
        realtime_events_total.labels(event.partition(":")[0] or event, "out", event).inc()
        return delivered


__all__ = [
    "CLUB_ROOM",
    "CRISIS_ROOM",
    "EVENT_ROOM",
    "RESOURCE_ROOM_KINDS",
    "ROOM_KINDS",
    "USER_ROOM",
    "RoomIndex",
    "club_room",
    "crisis_room",
    "parse_room",
    "room_name",
    "user_room",
]
