"""Derived online/lastActive state per user."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping

from .persistence import PersistenceAdapter, PersistenceWriter

logger = logging.getLogger(__name__)

STATUS_CHANGED_EVENT = "user:status-changed"

Broadcast = Callable[[str, Mapping[str, Any]], Awaitable[int]]


@dataclass(slots=True)
class PresenceRecord:
    user_id: str
    online: bool
    last_active: datetime
    last_written: float | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "online": self.online,
            "lastActive": self.last_active.isoformat(),
        }


class PresenceTracker:
    """Keeps presence in step with the session registry.

    The registry reports 0 -> 1 and 1 -> 0 transitions of a user's connection
    count; heartbeats and inbound messages only refresh ``last_active``, and
    those refreshes reach the datastore at most once per *write_interval*.
    """

    def __init__(
        self,
        persistence: PersistenceAdapter,
        writer: PersistenceWriter,
        broadcast: Broadcast,
        *,
        write_interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._persistence = persistence
        self._writer = writer
        self._broadcast = broadcast
        self._write_interval = float(write_interval)
        self._clock = clock
        self._records: Dict[str, PresenceRecord] = {}

    def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    def is_online(self, user_id: str) -> bool:
        record = self._records.get(user_id)
        return record is not None and record.online

    def _persist(self, record: PresenceRecord) -> None:
        record.last_written = self._clock()
        user_id, online, last_active = record.user_id, record.online, record.last_active

        async def write() -> None:
            await self._persistence.set_user_online(user_id, online, last_active)

        self._writer.submit("set_user_online", f"user:{user_id}", write)

    def _transition(self, user_id: str, online: bool) -> PresenceRecord:
        now = datetime.now(timezone.utc)
        record = self._records.get(user_id)
        if record is None:
            record = PresenceRecord(user_id=user_id, online=online, last_active=now)
            self._records[user_id] = record
        else:
            record.online = online
            record.last_active = now
        self._persist(record)
        return record

    def mark_online(self, user_id: str) -> PresenceRecord:
        record = self._transition(user_id, True)
        logger.info("User is online", extra={"user_id": user_id})
        return record

    def mark_offline(self, user_id: str) -> PresenceRecord:
        record = self._transition(user_id, False)
        logger.info("User is offline", extra={"user_id": user_id})
        return record

    async def announce(self, status: Mapping[str, Any]) -> int:
        """Broadcast a status change captured by ``PresenceRecord.to_public``."""

        return await self._broadcast(STATUS_CHANGED_EVENT, status)

    def touch(self, user_id: str) -> bool:
        """Refresh ``last_active``; returns ``True`` when a write was issued."""

        record = self._records.get(user_id)
        if record is None or not record.online:
            return False
        record.last_active = datetime.now(timezone.utc)
        if record.last_written is not None and self._clock() - record.last_written < self._write_interval:
            return False
        self._persist(record)
        return True


__all__ = ["PresenceRecord", "PresenceTracker", "STATUS_CHANGED_EVENT"]
