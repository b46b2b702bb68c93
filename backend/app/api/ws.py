"""WebSocket endpoint feeding the realtime hub."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.config import Settings, get_settings
from app.core.security import user_id_from_token
from freetalk.realtime.connection import safe_send_json
from freetalk.realtime.errors import TransportError
from freetalk.realtime.hub import Hub
from freetalk.realtime.protocol import build_frame

router = APIRouter(tags=["ws"])

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOOPBACK_ORIGIN = re.compile(r"^http://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$")


def origin_allowed(origin: str | None, settings: Settings) -> bool:
    """Apply the websocket origin policy.

    Native clients send no ``Origin`` header and are always accepted. Outside
    production every origin is accepted.
    """

    if not origin:
        return True
    if not settings.is_production:
        return True
    normalized = origin.strip().rstrip("/")
    if normalized in settings.allowed_origins:
        return True
    return bool(_LOOPBACK_ORIGIN.match(normalized))


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    ping_interval_seconds: float | int | None,
    silence_timeout_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver*, pinging when idle and stopping on silence."""

    ping_payload = ping_payload or build_frame("ping")
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    silence = float(silence_timeout_seconds) if silence_timeout_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        deadlines: list[float] = []
        if interval > 0:
            deadlines.append((last_ping_sent if last_ping_sent is not None else last_activity) + interval)
        if silence > 0:
            deadlines.append(last_activity + silence)
        wait = max(min(deadlines) - time.monotonic(), 0.01) if deadlines else None

        try:
            if wait is not None:
                message = await asyncio.wait_for(receiver(), timeout=wait)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            if silence > 0 and now - last_activity >= silence:
                logger.info("Closing silent websocket", extra={"idle_seconds": round(now - last_activity, 1)})
                break

            if interval > 0 and now - last_activity >= interval and (
                last_ping_sent is None or now - last_ping_sent >= interval
            ):
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect, TransportError):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        code = message.get("code", status.WS_1000_NORMAL_CLOSURE)
        raise TransportError(f"client closed the socket ({code})")
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


@router.websocket("/ws")
async def websocket_realtime(websocket: WebSocket) -> None:
    """Bidirectional realtime channel: parse frames and hand them to the hub."""

    settings: Settings = getattr(websocket.app.state, "settings", None) or get_settings()
    origin = websocket.headers.get("origin")
    if not origin_allowed(origin, settings):
        logger.warning("Refused websocket from disallowed origin", extra={"origin": origin})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Origin not allowed")
        return

    verified_user_id: str | None = None
    token = _extract_token(websocket)
    if token:
        try:
            verified_user_id = user_id_from_token(token)
        except HTTPException:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
            return

    hub: Hub | None = getattr(websocket.app.state, "hub", None)
    if hub is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Realtime hub is not running")
        return

    await websocket.accept()
    connection = hub.open(websocket, verified_user_id=verified_user_id)
    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            lambda: _receive_frame(websocket),
            ping_interval_seconds=settings.websocket_ping_interval_seconds,
            silence_timeout_seconds=settings.websocket_silence_timeout_seconds,
        ):
            connection.touch()
            await hub.receive(connection, raw_message)
    finally:
        await hub.close(connection)
        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close()
            except RuntimeError:  # pragma: no cover - already closing
                pass
