"""One-to-one call signalling state machine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Dict

from app.monitoring.metrics import realtime_calls_total

from ..realtime.authorizer import Authorizer
from ..realtime.dispatcher import EventDispatcher, to_user, to_users
from ..realtime.errors import AuthError, CallStateError
from ..realtime.persistence import PersistenceAdapter, PersistenceWriter, guarded_lookup
from ..realtime.protocol import CallAction, CallInitiate, CallOffer, CallAnswer, CallIceCandidate
from ..realtime.registry import SessionRegistry
from .signaling import (
    DISCONNECT_REASON,
    RELAY_FIELDS,
    TERMINAL_STATUSES,
    Call,
    CallStatus,
    build_relay_payload,
    can_transition,
    incoming_payload,
    utcnow,
)

logger = logging.getLogger(__name__)

RelayMessage = CallOffer | CallAnswer | CallIceCandidate


class CallController:
    """Owns every non-terminal call.

    Each operation checks and transitions state before its first suspension
    point, so concurrent handlers always observe a consistent call table.
    Durable writes are queued on the :class:`PersistenceWriter` and never
    delay signalling.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        dispatcher: EventDispatcher,
        authorizer: Authorizer,
        persistence: PersistenceAdapter,
        writer: PersistenceWriter,
        *,
        ringing_timeout: float,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._authorizer = authorizer
        self._persistence = persistence
        self._writer = writer
        self._ringing_timeout = float(ringing_timeout)
        self._calls: Dict[str, Call] = {}
        self._by_user: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, call_id: str) -> Call | None:
        return self._calls.get(call_id)

    def active_call_for(self, user_id: str) -> Call | None:
        call_id = self._by_user.get(user_id)
        return self._calls.get(call_id) if call_id is not None else None

    def calls(self) -> list[Call]:
        return list(self._calls.values())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _persist(self, call: Call) -> None:
        record = call.to_record()

        async def write() -> None:
            await self._persistence.call_upsert(record)

        self._writer.submit("call_upsert", f"call:{call.call_id}", write)

    def _arm_timer(self, call: Call) -> None:
        call.ringing_deadline = call.started_at + timedelta(seconds=self._ringing_timeout)
        self._timers[call.call_id] = asyncio.create_task(
            self._expire(call.call_id, self._ringing_timeout),
            name=f"call-ringing-{call.call_id}",
        )

    def _cancel_timer(self, call_id: str) -> None:
        timer = self._timers.pop(call_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _release(self, call: Call) -> None:
        self._calls.pop(call.call_id, None)
        for user_id in (call.caller_id, call.callee_id):
            if self._by_user.get(user_id) == call.call_id:
                self._by_user.pop(user_id, None)

    def _transition(self, call: Call, target: CallStatus, *, reason: str | None = None) -> None:
        if not can_transition(call.status, target):
            raise CallStateError(call.call_id, "invalid-state")
        now = utcnow()
        previous = call.status
        call.status = target
        if target is CallStatus.ACCEPTED:
            call.accepted_at = now
        if target is not CallStatus.TIMEOUT:
            self._cancel_timer(call.call_id)
        if target in TERMINAL_STATUSES:
            call.ended_at = now
            call.end_reason = reason
            self._release(call)
        self._persist(call)
        realtime_calls_total.labels(target.value).inc()
        logger.info(
            "Call transitioned",
            extra={
                "call_id": call.call_id,
                "from_status": previous.value,
                "to_status": target.value,
                "reason": reason,
            },
        )

    def _require(self, user_id: str, call_id: str) -> Call:
        call = self._calls.get(call_id)
        if call is None:
            raise CallStateError(call_id, "not-found")
        decision = self._authorizer.call_action(user_id, call)
        if not decision:
            raise AuthError(decision.reason or "Not a participant of this call")
        return call

    # ------------------------------------------------------------------
    # Transitions triggered by clients
    # ------------------------------------------------------------------
    async def initiate(self, caller_id: str, message: CallInitiate) -> Call | None:
        """Start ringing the callee; returns ``None`` when the callee is busy."""

        call_id = message.call_id
        callee_id = message.callee_id
        if call_id in self._calls:
            raise CallStateError(call_id, "duplicate")
        if callee_id == caller_id:
            raise CallStateError(call_id, "invalid")
        if not self._registry.is_online(callee_id):
            raise CallStateError(call_id, "offline")
        if callee_id in self._by_user:
            logger.info("Callee is busy", extra={"call_id": call_id, "callee_id": callee_id})
            await self._dispatcher.publish(
                to_user(caller_id), "call:busy", {"call_id": call_id, "callee_id": callee_id}
            )
            return None
        if caller_id in self._by_user:
            raise CallStateError(call_id, "busy-self")

        call = Call(
            call_id=call_id,
            caller_id=caller_id,
            callee_id=callee_id,
            kind=message.call_type,
        )
        self._calls[call_id] = call
        self._by_user[caller_id] = call_id
        self._by_user[callee_id] = call_id
        self._arm_timer(call)
        self._persist(call)
        realtime_calls_total.labels(CallStatus.RINGING.value).inc()
        logger.info(
            "Call initiated",
            extra={"call_id": call_id, "caller_id": caller_id, "callee_id": callee_id},
        )

        profile = await guarded_lookup(
            "lookup_caller_profile", self._persistence.lookup_caller_profile(caller_id), None
        )
        if call.status is not CallStatus.RINGING:
            # Ended or cancelled while the profile was loading.
            return call
        await self._dispatcher.publish(
            to_user(callee_id), "call:incoming", incoming_payload(call, profile)
        )
        return call

    async def accept(self, user_id: str, message: CallAction) -> Call:
        call = self._require(user_id, message.call_id)
        if user_id != call.callee_id:
            raise CallStateError(call.call_id, "forbidden")
        self._transition(call, CallStatus.ACCEPTED)
        await self._dispatcher.publish(
            to_user(call.caller_id), "call:accepted", {"call_id": call.call_id}
        )
        return call

    async def decline(self, user_id: str, message: CallAction) -> Call:
        call = self._require(user_id, message.call_id)
        if user_id != call.callee_id:
            raise CallStateError(call.call_id, "forbidden")
        if call.status is not CallStatus.RINGING:
            raise CallStateError(call.call_id, "invalid-state")
        self._transition(call, CallStatus.DECLINED)
        await self._dispatcher.publish(
            to_user(call.caller_id), "call:declined", {"call_id": call.call_id}
        )
        return call

    async def end(self, user_id: str, message: CallAction) -> Call:
        call = self._require(user_id, message.call_id)
        peer_id = call.other_party(user_id)
        self._transition(call, CallStatus.ENDED)
        await self._dispatcher.publish(to_user(peer_id), "call:ended", {"call_id": call.call_id})
        return call

    async def busy(self, user_id: str, message: CallAction) -> Call:
        call = self._require(user_id, message.call_id)
        if call.status is not CallStatus.RINGING:
            raise CallStateError(call.call_id, "invalid-state")
        peer_id = call.other_party(user_id)
        self._transition(call, CallStatus.BUSY)
        await self._dispatcher.publish(to_user(peer_id), "call:busy", {"call_id": call.call_id})
        return call

    async def relay(self, user_id: str, event: str, message: RelayMessage) -> bool:
        """Forward SDP/ICE to the other party; silently dropped unless permitted."""

        call = self._calls.get(message.call_id)
        if call is None:
            logger.debug("Dropped signalling for unknown call", extra={"call_id": message.call_id})
            return False
        decision = self._authorizer.call_relay(user_id, call, message.peer_id)
        if not decision:
            logger.debug(
                "Dropped signalling message",
                extra={"call_id": call.call_id, "user_id": user_id, "reason": decision.reason},
            )
            return False
        body = getattr(message, RELAY_FIELDS[event])
        payload = build_relay_payload(event, call.call_id, user_id, body)
        await self._dispatcher.publish(to_user(call.other_party(user_id)), event, payload)
        logger.debug("Forwarded signalling message", extra={"call_id": call.call_id, "event": event})
        return True

    # ------------------------------------------------------------------
    # Transitions triggered by the hub
    # ------------------------------------------------------------------
    async def handle_user_offline(self, user_id: str) -> None:
        """End the in-flight call of a user whose last connection closed."""

        call = self.active_call_for(user_id)
        if call is None:
            return
        peer_id = call.other_party(user_id)
        self._transition(call, CallStatus.ENDED, reason=DISCONNECT_REASON)
        await self._dispatcher.publish(
            to_user(peer_id), "call:ended", {"call_id": call.call_id, "reason": DISCONNECT_REASON}
        )

    async def _expire(self, call_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        call = self._calls.get(call_id)
        if call is None or call.status is not CallStatus.RINGING:
            return
        self._timers.pop(call_id, None)
        self._transition(call, CallStatus.TIMEOUT)
        await self._dispatcher.publish(
            to_users([call.caller_id, call.callee_id]), "call:timeout", {"call_id": call_id}
        )

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        for timer in timers:
            with contextlib.suppress(asyncio.CancelledError):
                await timer


__all__ = ["CallController"]
