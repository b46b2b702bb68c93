"""Transport sessions tracked by the hub."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .protocol import build_frame

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*, returning ``False`` instead of raising."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


@dataclass(eq=False, slots=True)
class Connection:
    """One open websocket (a device or a browser tab).

    ``verified_user_id`` is the identity proven by the transport credentials;
    ``user_id`` is only set once ``authenticate`` bound the connection.
    """

    websocket: WebSocket
    verified_user_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str | None = None
    opened_at: float = field(default_factory=time.monotonic)
    last_ping: float = field(default_factory=time.monotonic)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def touch(self) -> None:
        self.last_ping = time.monotonic()

    async def send(self, event: str, payload: Mapping[str, Any] | None = None) -> bool:
        return await safe_send_json(self.websocket, build_frame(event, payload))


__all__ = ["Connection", "safe_send_json"]
