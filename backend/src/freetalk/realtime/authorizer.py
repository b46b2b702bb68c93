"""Allow/deny decisions consulted by the hub.

Nothing here touches the network or the datastore: callers pass in the facts
(bound user, verified identity, membership lookups, the call) and receive a
:class:`Decision`.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..calls.signaling import Call
from .rooms import RESOURCE_ROOM_KINDS, USER_ROOM, parse_room


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


class Authorizer:
    """Policy layer for authentication, room joins and call actions."""

    def authenticate(self, verified_user_id: str | None, claimed_user_id: str) -> Decision:
        if verified_user_id is None:
            return deny("Missing credentials")
        if verified_user_id != claimed_user_id:
            return deny("Credentials do not match the requested user")
        return ALLOW

    def authenticated(self, bound_user_id: str | None) -> Decision:
        if bound_user_id is None:
            return deny("Not authenticated")
        return ALLOW

    def room_join(self, user_id: str | None, room: str, *, is_member: bool) -> Decision:
        if user_id is None:
            return deny("Not authenticated")
        try:
            kind, resource_id = parse_room(room)
        except ValueError:
            return deny("Unknown room")
        if kind == USER_ROOM:
            # Personal rooms are joined implicitly and only by their owner.
            return ALLOW if resource_id == user_id else deny("Cannot join another user's room")
        if kind in RESOURCE_ROOM_KINDS and not is_member:
            return deny(f"Not allowed to join {kind} {resource_id}")
        return ALLOW

    def call_action(self, user_id: str, call: Call) -> Decision:
        if not call.involves(user_id):
            return deny("Not a participant of this call")
        return ALLOW

    def call_relay(self, user_id: str, call: Call, peer_id: str) -> Decision:
        decision = self.call_action(user_id, call)
        if not decision:
            return decision
        if not call.is_active:
            return deny("Call is not active")
        if peer_id != call.other_party(user_id):
            return deny("Peer is not the other participant")
        return ALLOW


__all__ = ["ALLOW", "Authorizer", "Decision", "deny"]
