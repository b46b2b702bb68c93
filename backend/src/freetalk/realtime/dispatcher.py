"""Typed fan-out of domain events into rooms.

HTTP handlers and hub components publish through :meth:`EventDispatcher.publish`
only. Event names are part of the client contract, so unknown names are a
programming error and rejected before anything is sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .connection import Connection
from .registry import SessionRegistry
from .rooms import RoomIndex, parse_room, user_room

logger = logging.getLogger(__name__)

PRESENCE_EVENTS = frozenset({"user:status-changed"})

CALL_EVENTS = frozenset(
    {
        "call:incoming",
        "call:accepted",
        "call:declined",
        "call:ended",
        "call:timeout",
        "call:busy",
        "call:failed",
        "call:offer",
        "call:answer",
        "call:ice-candidate",
    }
)

CLUB_EVENTS = frozenset(
    {
        "club:created",
        "club:updated",
        "club:deleted",
        "club:member-joined",
        "club:member-left",
        "club:role-updated",
        "club:muted",
        "club:unmuted",
        "club:removed",
        "club:new-discussion",
        "club:new-comment",
        "club:discussion-liked",
        "club:comment-liked",
        "club:discussion-tag",
        "club:new-file",
        "club:user-typing",
        "club:user-stop-typing",
        "club:join-request",
        "club:request-approved",
        "club:request-rejected",
        "club:invited",
    }
)

EVENT_EVENTS = frozenset(
    {
        "event:created",
        "event:updated",
        "event:deleted",
        "event:rsvp",
        "event:invited",
        "event:invite-accepted",
        "event:invite-declined",
        "event:checkin",
    }
)

MEDIA_EVENTS = frozenset(
    {
        "video:created",
        "video:viewed",
        "video:liked",
        "video:commented",
        "video:deleted",
        "photo:created",
        "photo:updated",
        "photo:deleted",
    }
)

CRISIS_EVENTS = frozenset(
    {
        "crisis_alert",
        "new_crisis_alert",
        "crisis_help_offered",
        "crisis_safety_check",
        "crisis_update",
        "crisis_resolved",
        "crisis_resource_added",
        "crisis:emergency",
        "crisis:viewer",
        "crisis:new-update",
    }
)

NOTIFICATION_EVENTS = frozenset({"notification:new", "notification:unread-count"})

MEMORY_EVENTS = frozenset(
    {
        "memory:response",
        "memory:viewed",
        "memory:shared",
        "memory:error",
        "memory:notification",
        "memories:updated",
        "memory:interaction",
    }
)

# Content and messaging events emitted by the post, message and poke handlers.
SOCIAL_EVENTS = frozenset(
    {
        "post:created",
        "post:updated",
        "post:deleted",
        "post:shared",
        "post:reacted",
        "post:commented",
        "comment:replied",
        "message:new",
        "message:unread-count",
        "message:deleted",
        "message:reacted",
        "message:unreacted",
        "messages:read",
        "group:created",
        "group:updated",
        "group:participant-added",
        "group:participant-removed",
        "group:removed",
        "group:admin-added",
        "group:admin-removed",
        "poke:received",
        "account_deleted",
    }
)

# Replies addressed to the requesting connection only.
CONTROL_EVENTS = frozenset(
    {"authenticated", "pong", "ping", "subscribed", "unsubscribed", "error"}
)

EVENT_NAMES = (
    PRESENCE_EVENTS
    | CALL_EVENTS
    | CLUB_EVENTS
    | EVENT_EVENTS
    | MEDIA_EVENTS
    | CRISIS_EVENTS
    | NOTIFICATION_EVENTS
    | MEMORY_EVENTS
    | SOCIAL_EVENTS
    | CONTROL_EVENTS
)


@dataclass(frozen=True, slots=True)
class Target:
    """Audience of a published event: a set of rooms, or every connection."""

    rooms: tuple[str, ...] = ()
    everyone: bool = False

    def __or__(self, other: "Target") -> "Target":
        return Target(
            rooms=tuple(dict.fromkeys(self.rooms + other.rooms)),
            everyone=self.everyone or other.everyone,
        )


BROADCAST = Target(everyone=True)


def to_room(room: str) -> Target:
    parse_room(room)
    return Target(rooms=(room,))


def to_rooms(rooms: Iterable[str]) -> Target:
    unique = tuple(dict.fromkeys(rooms))
    for room in unique:
        parse_room(room)
    return Target(rooms=unique)


def to_user(user_id: str) -> Target:
    return Target(rooms=(user_room(str(user_id)),))


def to_users(user_ids: Iterable[str]) -> Target:
    """Fan out to collaborator-resolved users (followers, members, friends)."""

    return Target(rooms=tuple(dict.fromkeys(user_room(str(user_id)) for user_id in user_ids)))


class EventDispatcher:
    """The single publish interface used by handlers and hub components."""

    def __init__(self, rooms: RoomIndex, registry: SessionRegistry) -> None:
        self._rooms = rooms
        self._registry = registry

    @staticmethod
    def _check_name(event_name: str) -> None:
        if event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown realtime event '{event_name}'")

    async def publish(
        self,
        target: Target,
        event_name: str,
        payload: Mapping[str, Any],
        *,
        exclude: Connection | None = None,
    ) -> int:
        """Deliver *event_name* to *target*; each connection receives it once."""

        self._check_name(event_name)
        if target.everyone:
            connection_ids = {connection.id for connection in self._registry.connections()}
            scope = "broadcast"
        else:
            connection_ids = set()
            for room in target.rooms:
                connection_ids |= self._rooms.members(room)
            scope = target.rooms[0] if len(target.rooms) == 1 else "multi"
        if exclude is not None:
            connection_ids.discard(exclude.id)
        if not connection_ids:
            logger.debug("No listeners for realtime event", extra={"event": event_name, "scope": scope})
            return 0
        return await self._rooms.deliver(connection_ids, event_name, payload, scope=scope)

    async def reply(self, connection: Connection, event_name: str, payload: Mapping[str, Any]) -> bool:
        """Send an event to one connection only."""

        self._check_name(event_name)
        return await connection.send(event_name, payload)

    async def notify(
        self,
        user_id: str,
        notification: Mapping[str, Any],
        unread_count: int,
    ) -> None:
        """Emit ``notification:new`` and always follow it with the refreshed count."""

        target = to_user(user_id)
        await self.publish(target, "notification:new", notification)
        await self.publish(target, "notification:unread-count", {"count": int(unread_count)})


__all__ = [
    "BROADCAST",
    "EVENT_NAMES",
    "EventDispatcher",
    "Target",
    "to_room",
    "to_rooms",
    "to_user",
    "to_users",
]
