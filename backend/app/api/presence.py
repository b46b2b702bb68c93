"""Live presence lookups served from the hub's session registry."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_current_user_id, get_hub
from app.schemas.presence import PresenceRead
from freetalk.realtime.hub import Hub

router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}", response_model=PresenceRead)
def read_presence(
    user_id: str,
    hub: Hub = Depends(get_hub),
    current_user_id: str = Depends(get_current_user_id),
) -> PresenceRead:
    record = hub.presence.get(user_id)
    return PresenceRead(
        user_id=user_id,
        online=hub.registry.is_online(user_id),
        connections=hub.registry.connection_count(user_id),
        last_active=record.last_active if record is not None else None,
    )
