"""Configuration endpoints for exposing runtime options to the frontend."""

from __future__ import annotations

from fastapi import APIRouter, Request

from app.config import Settings, get_settings

router = APIRouter(prefix="/config", tags=["config"])


def _settings_for(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


@router.get("/realtime")
def read_realtime_config(request: Request) -> dict[str, object]:
    """Expose the keepalive and call timing clients must follow."""

    settings = _settings_for(request)
    return {
        "path": "/ws",
        "pingInterval": settings.websocket_ping_interval_seconds,
        "silenceTimeout": settings.websocket_silence_timeout_seconds,
        "callRingingTimeout": settings.call_ringing_timeout_seconds,
    }
