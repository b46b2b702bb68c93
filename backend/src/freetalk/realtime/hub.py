"""The realtime hub: one object per process owning every live table.

The transport endpoint only parses frames and calls :meth:`Hub.receive`; the
hub routes typed messages to the session registry, room index, presence
tracker and call controller, and applies the error policy at the message
boundary.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping

from fastapi.websockets import WebSocket

from app.monitoring.metrics import realtime_events_total

from ..calls import controller as _call_controller
from .authorizer import Authorizer
from .connection import Connection
from .dispatcher import BROADCAST, EventDispatcher, to_room, to_users
from .errors import AuthError, CallStateError, ProtocolError
from .persistence import PersistenceAdapter, PersistenceWriter, guarded_lookup
from .presence import PresenceTracker
from .protocol import (
    Authenticate,
    CallAction,
    CallAnswer,
    CallIceCandidate,
    CallInitiate,
    CallOffer,
    ClientMessage,
    ClubSubscription,
    ClubTyping,
    CrisisRoomMessage,
    CrisisText,
    EventSubscription,
    InboundMessage,
    MemoryAction,
    MemoryRequest,
    parse_client_message,
)
from .registry import SessionRegistry
from .rooms import CLUB_ROOM, CRISIS_ROOM, EVENT_ROOM, RoomIndex, club_room, crisis_room, room_name

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class Hub:
    """Composes the realtime components around a single persistence adapter."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        *,
        ringing_timeout: float = 30.0,
        presence_write_interval: float = 30.0,
        writer: PersistenceWriter | None = None,
        authorizer: Authorizer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.persistence = persistence
        self.writer = writer or PersistenceWriter()
        self.authorizer = authorizer or Authorizer()
        self.rooms = RoomIndex(self._resolve)
        self.presence = PresenceTracker(
            persistence,
            self.writer,
            self._broadcast,
            write_interval=presence_write_interval,
            clock=clock,
        )
        self.registry = SessionRegistry(self.rooms, self.presence)
        self.dispatcher = EventDispatcher(self.rooms, self.registry)
        self.calls = _call_controller.CallController(
            self.registry,
            self.dispatcher,
            self.authorizer,
            persistence,
            self.writer,
            ringing_timeout=ringing_timeout,
        )
        self.registry.add_offline_listener(self.calls.handle_user_offline)

        self._handlers: Dict[str, Handler] = {
            "authenticate": self._on_authenticate,
            "ping": self._on_ping,
            "events:subscribe": self._on_event_subscribe,
            "events:unsubscribe": self._on_event_unsubscribe,
            "club:subscribe": self._on_club_subscribe,
            "club:unsubscribe": self._on_club_unsubscribe,
            "club:typing": self._on_club_typing,
            "club:stop-typing": self._on_club_stop_typing,
            "crisis:join": self._on_crisis_join,
            "crisis:leave": self._on_crisis_leave,
            "crisis:send-update": self._on_crisis_update,
            "crisis:viewing": self._on_crisis_viewing,
            "crisis:emergency-broadcast": self._on_crisis_emergency,
            "memory:request": self._on_memory_request,
            "memory:view": self._on_memory_view,
            "memory:share": self._on_memory_share,
            "call:initiate": self._on_call_initiate,
            "call:accept": self._on_call_accept,
            "call:decline": self._on_call_decline,
            "call:end": self._on_call_end,
            "call:busy": self._on_call_busy,
            "call:offer": self._on_call_offer,
            "call:answer": self._on_call_answer,
            "call:ice-candidate": self._on_call_ice_candidate,
        }

    @classmethod
    def from_settings(cls, settings: Any, persistence: PersistenceAdapter) -> "Hub":
        return cls(
            persistence,
            ringing_timeout=settings.call_ringing_timeout_seconds,
            presence_write_interval=settings.presence_write_interval_seconds,
        )

    def _resolve(self, connection_id: str) -> Connection | None:
        return self.registry.get(connection_id)

    async def _broadcast(self, event_name: str, payload: Mapping[str, Any]) -> int:
        return await self.dispatcher.publish(BROADCAST, event_name, payload)

    # ------------------------------------------------------------------
    # Transport lifecycle
    # ------------------------------------------------------------------
    def open(self, websocket: WebSocket, *, verified_user_id: str | None = None) -> Connection:
        connection = Connection(websocket=websocket, verified_user_id=verified_user_id)
        self.registry.open(connection)
        return connection

    async def close(self, connection: Connection) -> None:
        await self.registry.close(connection)

    async def receive(self, connection: Connection, raw: str | bytes | Mapping[str, Any]) -> None:
        """Parse one raw frame and handle it; malformed frames are dropped."""

        try:
            message = parse_client_message(raw)
        except ProtocolError as exc:
            logger.warning(
                "Dropped malformed realtime frame",
                extra={"connection": connection.id, "error": str(exc)},
            )
            return
        await self.handle(connection, message)

    async def handle(self, connection: Connection, message: InboundMessage) -> None:
        event = message.event
        realtime_events_total.labels(event.partition(":")[0], "in", event).inc()
        if event != "authenticate" and not self.authorizer.authenticated(connection.user_id):
            logger.debug(
                "Dropped message from unauthenticated connection",
                extra={"connection": connection.id, "event": event},
            )
            return
        if connection.user_id is not None:
            self.presence.touch(connection.user_id)

        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("No handler for realtime event", extra={"event": event})
            return
        try:
            await handler(connection, message.payload)
        except ProtocolError as exc:
            logger.warning(
                "Dropped invalid realtime message",
                extra={"connection": connection.id, "event": event, "error": str(exc)},
            )
        except AuthError as exc:
            logger.info(
                "Rejected realtime message",
                extra={"connection": connection.id, "event": event, "error": str(exc)},
            )
            await self.dispatcher.reply(connection, "error", {"detail": str(exc)})
        except CallStateError as exc:
            logger.info(
                "Call request failed",
                extra={"connection": connection.id, "call_id": exc.call_id, "reason": exc.reason},
            )
            await self.dispatcher.reply(
                connection, "call:failed", {"call_id": exc.call_id, "reason": exc.reason}
            )

    async def shutdown(self) -> None:
        await self.calls.close()
        await self.writer.close()

    # ------------------------------------------------------------------
    # Session handlers
    # ------------------------------------------------------------------
    async def _on_authenticate(self, connection: Connection, message: Authenticate) -> None:
        decision = self.authorizer.authenticate(connection.verified_user_id, message.user_id)
        if not decision:
            raise AuthError(decision.reason)
        await self.registry.authenticate(connection, message.user_id)
        await self.dispatcher.reply(
            connection,
            "authenticated",
            {"user_id": message.user_id, "connection_id": connection.id},
        )

    async def _on_ping(self, connection: Connection, message: ClientMessage) -> None:
        await self.dispatcher.reply(connection, "pong", self.registry.heartbeat(connection))

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------
    async def _join(self, connection: Connection, kind: str, resource_id: str) -> bool:
        room = room_name(kind, resource_id)
        user_id = connection.user_id
        if self.rooms.is_member(connection, room):
            await self.dispatcher.reply(connection, "subscribed", {"room": room})
            return True

        is_member = await guarded_lookup(
            "lookup_resource_membership",
            self.persistence.lookup_resource_membership(kind, resource_id, user_id),
            False,
        )
        if self.registry.get(connection.id) is not connection:
            # Closed while the membership lookup was in flight.
            return False
        decision = self.authorizer.room_join(user_id, room, is_member=is_member)
        if not decision:
            logger.info(
                "Refused room join",
                extra={"connection": connection.id, "user_id": user_id, "room": room},
            )
            await self.dispatcher.reply(connection, "error", {"detail": decision.reason, "room": room})
            return False

        self.rooms.join(connection, room)
        await self.dispatcher.reply(connection, "subscribed", {"room": room})
        return True

    async def _leave(self, connection: Connection, kind: str, resource_id: str) -> None:
        room = room_name(kind, resource_id)
        self.rooms.leave(connection, room)
        await self.dispatcher.reply(connection, "unsubscribed", {"room": room})

    async def _on_event_subscribe(self, connection: Connection, message: EventSubscription) -> None:
        await self._join(connection, EVENT_ROOM, message.event_id)

    async def _on_event_unsubscribe(self, connection: Connection, message: EventSubscription) -> None:
        await self._leave(connection, EVENT_ROOM, message.event_id)

    async def _on_club_subscribe(self, connection: Connection, message: ClubSubscription) -> None:
        await self._join(connection, CLUB_ROOM, message.club_id)

    async def _on_club_unsubscribe(self, connection: Connection, message: ClubSubscription) -> None:
        await self._leave(connection, CLUB_ROOM, message.club_id)

    async def _on_crisis_join(self, connection: Connection, message: CrisisRoomMessage) -> None:
        await self._join(connection, CRISIS_ROOM, message.crisis_id)

    async def _on_crisis_leave(self, connection: Connection, message: CrisisRoomMessage) -> None:
        await self._leave(connection, CRISIS_ROOM, message.crisis_id)

    def _joined(self, connection: Connection, room: str, event: str) -> bool:
        if self.rooms.is_member(connection, room):
            return True
        logger.debug(
            "Dropped room message from non-member",
            extra={"connection": connection.id, "room": room, "event": event},
        )
        return False

    # ------------------------------------------------------------------
    # Club and crisis relays
    # ------------------------------------------------------------------
    async def _on_club_typing(self, connection: Connection, message: ClubTyping) -> None:
        room = club_room(message.club_id)
        if not self._joined(connection, room, "club:typing"):
            return
        await self.dispatcher.publish(
            to_room(room),
            "club:user-typing",
            {"club_id": message.club_id, "user_id": connection.user_id, "user_name": message.user_name},
            exclude=connection,
        )

    async def _on_club_stop_typing(self, connection: Connection, message: ClubSubscription) -> None:
        room = club_room(message.club_id)
        if not self._joined(connection, room, "club:stop-typing"):
            return
        await self.dispatcher.publish(
            to_room(room),
            "club:user-stop-typing",
            {"club_id": message.club_id, "user_id": connection.user_id},
            exclude=connection,
        )

    async def _on_crisis_update(self, connection: Connection, message: CrisisText) -> None:
        room = crisis_room(message.crisis_id)
        if not self._joined(connection, room, "crisis:send-update"):
            return
        await self.dispatcher.publish(
            to_room(room),
            "crisis:new-update",
            {
                "crisis_id": message.crisis_id,
                "user_id": connection.user_id,
                "message": message.message,
                "timestamp": _timestamp(),
            },
        )

    async def _on_crisis_viewing(self, connection: Connection, message: CrisisRoomMessage) -> None:
        room = crisis_room(message.crisis_id)
        if not self._joined(connection, room, "crisis:viewing"):
            return
        await self.dispatcher.publish(
            to_room(room),
            "crisis:viewer",
            {"crisis_id": message.crisis_id, "user_id": connection.user_id},
            exclude=connection,
        )

    async def _on_crisis_emergency(self, connection: Connection, message: CrisisText) -> None:
        room = crisis_room(message.crisis_id)
        if not self._joined(connection, room, "crisis:emergency-broadcast"):
            return
        user_id = connection.user_id
        friends = await guarded_lookup("lookup_friends", self.persistence.lookup_friends(user_id), [])
        target = to_room(room) | to_users(str(friend) for friend in friends)
        await self.dispatcher.publish(
            target,
            "crisis:emergency",
            {
                "crisis_id": message.crisis_id,
                "user_id": user_id,
                "message": message.message,
                "timestamp": _timestamp(),
            },
        )

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------
    async def _memory_error(self, connection: Connection, detail: str) -> None:
        await self.dispatcher.reply(connection, "memory:error", {"detail": detail})

    async def _on_memory_request(self, connection: Connection, message: MemoryRequest) -> None:
        try:
            memories = await self.persistence.list_memories(
                connection.user_id, include_viewed=message.include_viewed, limit=message.limit
            )
        except Exception:
            logger.warning("Failed to load memories", exc_info=True, extra={"user_id": connection.user_id})
            await self._memory_error(connection, "Failed to load memories")
            return
        await self.dispatcher.reply(connection, "memory:response", {"memories": list(memories)})

    async def _on_memory_view(self, connection: Connection, message: MemoryAction) -> None:
        try:
            found = await self.persistence.mark_memory_viewed(connection.user_id, message.memory_id)
        except Exception:
            logger.warning("Failed to mark memory viewed", exc_info=True, extra={"memory_id": message.memory_id})
            await self._memory_error(connection, "Failed to mark memory as viewed")
            return
        if not found:
            await self._memory_error(connection, "Memory not found")
            return
        await self.dispatcher.reply(connection, "memory:viewed", {"memory_id": message.memory_id})

    async def _on_memory_share(self, connection: Connection, message: MemoryAction) -> None:
        try:
            found = await self.persistence.mark_memory_shared(connection.user_id, message.memory_id)
        except Exception:
            logger.warning("Failed to share memory", exc_info=True, extra={"memory_id": message.memory_id})
            await self._memory_error(connection, "Failed to share memory")
            return
        if not found:
            await self._memory_error(connection, "Memory not found")
            return
        await self.dispatcher.reply(connection, "memory:shared", {"memory_id": message.memory_id})

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    async def _on_call_initiate(self, connection: Connection, message: CallInitiate) -> None:
        await self.calls.initiate(connection.user_id, message)

    async def _on_call_accept(self, connection: Connection, message: CallAction) -> None:
        await self.calls.accept(connection.user_id, message)

    async def _on_call_decline(self, connection: Connection, message: CallAction) -> None:
        await self.calls.decline(connection.user_id, message)

    async def _on_call_end(self, connection: Connection, message: CallAction) -> None:
        await self.calls.end(connection.user_id, message)

    async def _on_call_busy(self, connection: Connection, message: CallAction) -> None:
        await self.calls.busy(connection.user_id, message)

    async def _on_call_offer(self, connection: Connection, message: CallOffer) -> None:
        await self.calls.relay(connection.user_id, "call:offer", message)

    async def _on_call_answer(self, connection: Connection, message: CallAnswer) -> None:
        await self.calls.relay(connection.user_id, "call:answer", message)

    async def _on_call_ice_candidate(self, connection: Connection, message: CallIceCandidate) -> None:
        await self.calls.relay(connection.user_id, "call:ice-candidate", message)


__all__ = ["Hub"]
