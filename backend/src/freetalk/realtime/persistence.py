"""Persistence adapter contract and the fire-and-forget write path.

The hub never waits for durable writes: transitions update memory first and
hand the write to :class:`PersistenceWriter`, which retries transient failures
with exponential backoff and demotes exhausted writes to a dead-letter log.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, TypeVar

from app.monitoring.metrics import (
    realtime_persistence_dead_letters_total,
    realtime_persistence_retries_total,
)

logger = logging.getLogger(__name__)
dead_letter_logger = logging.getLogger("freetalk.realtime.deadletter")

T = TypeVar("T")

_RETRY_ATTEMPTS = 5
_RETRY_BASE_DELAY = 0.5
_RETRY_MAX_DELAY = 30.0
_DEAD_LETTER_LIMIT = 1000


class PersistenceAdapter(Protocol):
    """Operations the hub needs from the datastore.

    Every method may fail transiently. Writes are idempotent: ``call_upsert``
    by ``call_id`` and ``set_user_online`` by user.
    """

    async def set_user_online(self, user_id: str, online: bool, last_active: datetime) -> None:
        """Persist the online flag and the last-active timestamp."""

    async def call_upsert(self, record: Mapping[str, Any]) -> None:
        """Insert or update the call log entry keyed by ``record['call_id']``."""

    async def lookup_caller_profile(self, user_id: str) -> Mapping[str, Any] | None:
        """Return ``{"name", "avatar"}`` for *user_id* or ``None`` if unknown."""

    async def lookup_resource_membership(
        self, resource_kind: str, resource_id: str, user_id: str
    ) -> bool:
        """Return whether *user_id* may see the given club, event or crisis."""

    async def lookup_friends(self, user_id: str) -> Sequence[str]:
        """Return the ids of accepted friends of *user_id*."""

    async def list_memories(
        self, user_id: str, *, include_viewed: bool, limit: int
    ) -> Sequence[Mapping[str, Any]]:
        """Return today's memories for *user_id*."""

    async def mark_memory_viewed(self, user_id: str, memory_id: str) -> bool:
        """Mark a memory viewed; ``False`` when it does not belong to the user."""

    async def mark_memory_shared(self, user_id: str, memory_id: str) -> bool:
        """Record a share of a memory; ``False`` when it does not belong to the user."""


@dataclass(slots=True)
class DeadLetter:
    """A write abandoned after exhausting its retries."""

    operation: str
    key: str
    attempts: int
    error: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


WriteFactory = Callable[[], Awaitable[None]]


class PersistenceWriter:
    """Runs durable writes in the background, ordered per key."""

    def __init__(
        self,
        *,
        attempts: int = _RETRY_ATTEMPTS,
        base_delay: float = _RETRY_BASE_DELAY,
        max_delay: float = _RETRY_MAX_DELAY,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self._attempts = attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._tails: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self.dead_letters: deque[DeadLetter] = deque(maxlen=_DEAD_LETTER_LIMIT)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, operation: str, key: str, write: WriteFactory) -> asyncio.Task[None]:
        """Schedule *write*; it starts after every earlier write for *key*."""

        previous = self._tails.get(key)
        task = asyncio.create_task(
            self._run(operation, key, write, previous), name=f"persist-{operation}-{key}"
        )
        self._tails[key] = task
        self._tasks.add(task)
        task.add_done_callback(lambda finished: self._on_done(key, finished))
        return task

    def _on_done(self, key: str, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if self._tails.get(key) is task:
            self._tails.pop(key, None)

    def _delay(self, attempt: int) -> float:
        return min(self._base_delay * (2**attempt), self._max_delay)

    async def _run(
        self,
        operation: str,
        key: str,
        write: WriteFactory,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        attempt = 0
        while True:
            try:
                await write()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempt += 1
                if attempt >= self._attempts:
                    self._dead_letter(operation, key, attempt, exc)
                    return
                delay = self._delay(attempt - 1)
                realtime_persistence_retries_total.labels(operation).inc()
                logger.warning(
                    "Persistence write failed; retrying",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                    extra={"operation": operation, "key": key, "attempt": attempt, "delay": delay},
                )
                await asyncio.sleep(delay)
            else:
                return

    def _dead_letter(self, operation: str, key: str, attempts: int, exc: BaseException) -> None:
        letter = DeadLetter(operation=operation, key=key, attempts=attempts, error=repr(exc))
        self.dead_letters.append(letter)
        realtime_persistence_dead_letters_total.labels(operation).inc()
        dead_letter_logger.error(
            "Persistence write abandoned after %d attempts",
            attempts,
            exc_info=exc,
            extra={"operation": operation, "key": key},
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every scheduled write finished (or *timeout* elapsed)."""

        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                return

    async def close(self, timeout: float = 5.0) -> None:
        await self.drain(timeout)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tails.clear()


async def guarded_lookup(operation: str, lookup: Awaitable[T], default: T) -> T:
    """Await a read-only adapter call, falling back to *default* on failure."""

    try:
        return await lookup
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.warning(
            "Persistence lookup failed",
            exc_info=True,
            extra={"operation": operation},
        )
        return default


__all__ = [
    "DeadLetter",
    "PersistenceAdapter",
    "PersistenceWriter",
    "guarded_lookup",
]
