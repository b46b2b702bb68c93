"""Wire protocol for the realtime websocket.

Every frame in both directions is a JSON object ``{"event": <name>, "data":
<payload>}``. Inbound payloads are validated against a fixed schema per event
name before the hub sees them, so handlers only ever receive typed messages.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from ..calls.signaling import CallKind
from .errors import ProtocolError

MAX_IDENTIFIER_LENGTH = 128
MAX_TEXT_LENGTH = 2000
DEFAULT_MEMORY_LIMIT = 10
MAX_MEMORY_LIMIT = 50


def _coerce_identifier(value: Any) -> Any:
    # Clients send ObjectId strings, numeric ids from older builds also occur.
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


Identifier = Annotated[
    str,
    BeforeValidator(_coerce_identifier),
    Field(min_length=1, max_length=MAX_IDENTIFIER_LENGTH),
]


class ClientMessage(BaseModel):
    """Base class for validated client -> hub payloads."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class Authenticate(ClientMessage):
    user_id: Identifier


class Ping(ClientMessage):
    pass


class EventSubscription(ClientMessage):
    event_id: Identifier


class ClubSubscription(ClientMessage):
    club_id: Identifier


class ClubTyping(ClientMessage):
    club_id: Identifier
    user_name: str | None = Field(default=None, max_length=256)


class CrisisRoomMessage(ClientMessage):
    crisis_id: Identifier


class CrisisText(ClientMessage):
    crisis_id: Identifier
    message: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)


class MemoryRequest(ClientMessage):
    include_viewed: bool = False
    limit: int = Field(default=DEFAULT_MEMORY_LIMIT, ge=1, le=MAX_MEMORY_LIMIT)


class MemoryAction(ClientMessage):
    memory_id: Identifier


class CallInitiate(ClientMessage):
    call_id: Identifier
    callee_id: Identifier
    call_type: CallKind = CallKind.AUDIO


class CallAction(ClientMessage):
    call_id: Identifier
    peer_id: Identifier | None = None


class CallOffer(ClientMessage):
    call_id: Identifier
    peer_id: Identifier
    offer: Any = Field(...)


class CallAnswer(ClientMessage):
    call_id: Identifier
    peer_id: Identifier
    answer: Any = Field(...)


class CallIceCandidate(ClientMessage):
    call_id: Identifier
    peer_id: Identifier
    candidate: Any = Field(...)


CLIENT_MESSAGES: dict[str, type[ClientMessage]] = {
    "authenticate": Authenticate,
    "ping": Ping,
    "events:subscribe": EventSubscription,
    "events:unsubscribe": EventSubscription,
    "club:subscribe": ClubSubscription,
    "club:unsubscribe": ClubSubscription,
    "club:typing": ClubTyping,
    "club:stop-typing": ClubSubscription,
    "crisis:join": CrisisRoomMessage,
    "crisis:leave": CrisisRoomMessage,
    "crisis:send-update": CrisisText,
    "crisis:viewing": CrisisRoomMessage,
    "crisis:emergency-broadcast": CrisisText,
    "memory:request": MemoryRequest,
    "memory:view": MemoryAction,
    "memory:share": MemoryAction,
    "call:initiate": CallInitiate,
    "call:accept": CallAction,
    "call:decline": CallAction,
    "call:end": CallAction,
    "call:busy": CallAction,
    "call:offer": CallOffer,
    "call:answer": CallAnswer,
    "call:ice-candidate": CallIceCandidate,
}


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A parsed client frame."""

    event: str
    payload: ClientMessage


def _load_frame(raw: str | bytes | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(raw, Mapping):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Frame is not valid UTF-8") from exc
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError("Frame is not valid JSON") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be a JSON object")
    return frame


def parse_client_message(raw: str | bytes | Mapping[str, Any]) -> InboundMessage:
    """Validate a raw client frame and return the typed message."""

    frame = _load_frame(raw)
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Frame event must be a non-empty string")
    model = CLIENT_MESSAGES.get(event)
    if model is None:
        raise ProtocolError(f"Unsupported event '{event}'")

    data = frame.get("data")
    if data is None:
        data = {}
    elif event == "authenticate" and isinstance(data, (str, int)) and not isinstance(data, bool):
        # Legacy clients emit the bare user id.
        data = {"user_id": data}
    if not isinstance(data, dict):
        raise ProtocolError(f"Payload for '{event}' must be an object")

    try:
        payload = model.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid payload for '{event}': {exc.error_count()} error(s)") from exc
    return InboundMessage(event=event, payload=payload)


def build_frame(event: str, payload: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Return the outbound envelope for *event*."""

    return {"event": event, "data": dict(payload or {})}


__all__ = [
    "CLIENT_MESSAGES",
    "Authenticate",
    "CallAction",
    "CallAnswer",
    "CallIceCandidate",
    "CallInitiate",
    "CallOffer",
    "ClientMessage",
    "ClubSubscription",
    "ClubTyping",
    "CrisisRoomMessage",
    "CrisisText",
    "EventSubscription",
    "InboundMessage",
    "MemoryAction",
    "MemoryRequest",
    "Ping",
    "build_frame",
    "parse_client_message",
]
