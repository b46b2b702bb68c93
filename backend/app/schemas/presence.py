"""Schemas for live presence lookups."""

from datetime import datetime

from pydantic import BaseModel


class PresenceRead(BaseModel):
    user_id: str
    online: bool
    connections: int
    last_active: datetime | None = None
