"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Mapping, Sequence

import anyio
import pytest
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.models import Base
from app.monitoring import metrics
from freetalk.realtime.connection import Connection
from freetalk.realtime.hub import Hub
from freetalk.realtime.persistence import PersistenceWriter


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.fail = False
        self.delay = 0.0

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.delay:
            await anyio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(payload)

    def events(self, name: str) -> list[dict[str, Any]]:
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def names(self) -> list[str]:
        return [frame["event"] for frame in self.sent]

    def clear(self) -> None:
        self.sent.clear()


class FakePersistence:
    """In-memory persistence adapter recording every call."""

    def __init__(self) -> None:
        self.online: dict[str, tuple[bool, datetime]] = {}
        self.presence_writes: list[tuple[str, bool]] = []
        self.calls: dict[str, dict[str, Any]] = {}
        self.call_writes: list[dict[str, Any]] = []
        self.profiles: dict[str, dict[str, Any]] = {}
        self.memberships: set[tuple[str, str, str]] = set()
        self.friends: dict[str, list[str]] = {}
        self.memories: dict[str, list[dict[str, Any]]] = {}
        self.viewed: list[tuple[str, str]] = []
        self.shared: list[tuple[str, str]] = []
        self.fail_lookups = False

    async def set_user_online(self, user_id: str, online: bool, last_active: datetime) -> None:
        self.online[user_id] = (online, last_active)
        self.presence_writes.append((user_id, online))

    async def call_upsert(self, record: Mapping[str, Any]) -> None:
        self.call_writes.append(dict(record))
        self.calls[record["call_id"]] = dict(record)

    async def lookup_caller_profile(self, user_id: str) -> Mapping[str, Any] | None:
        if self.fail_lookups:
            raise ConnectionError("datastore unavailable")
        return self.profiles.get(user_id)

    async def lookup_resource_membership(
        self, resource_kind: str, resource_id: str, user_id: str
    ) -> bool:
        if self.fail_lookups:
            raise ConnectionError("datastore unavailable")
        return (resource_kind, resource_id, user_id) in self.memberships

    async def lookup_friends(self, user_id: str) -> Sequence[str]:
        if self.fail_lookups:
            raise ConnectionError("datastore unavailable")
        return list(self.friends.get(user_id, []))

    async def list_memories(
        self, user_id: str, *, include_viewed: bool, limit: int
    ) -> Sequence[Mapping[str, Any]]:
        if self.fail_lookups:
            raise ConnectionError("datastore unavailable")
        memories = self.memories.get(user_id, [])
        if not include_viewed:
            memories = [memory for memory in memories if not memory.get("viewed")]
        return memories[:limit]

    async def mark_memory_viewed(self, user_id: str, memory_id: str) -> bool:
        owned = any(memory["id"] == memory_id for memory in self.memories.get(user_id, []))
        if owned:
            self.viewed.append((user_id, memory_id))
        return owned

    async def mark_memory_shared(self, user_id: str, memory_id: str) -> bool:
        owned = any(memory["id"] == memory_id for memory in self.memories.get(user_id, []))
        if owned:
            self.shared.append((user_id, memory_id))
        return owned


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_realtime_metrics() -> Iterator[None]:
    tracked = (
        metrics.realtime_connections,
        metrics.realtime_events_total,
        metrics.realtime_delivery_errors_total,
        metrics.realtime_calls_total,
        metrics.realtime_persistence_retries_total,
        metrics.realtime_persistence_dead_letters_total,
        metrics.realtime_active_calls,
        metrics.realtime_rooms,
    )
    for metric in tracked:
        metric.clear()
    yield
    for metric in tracked:
        metric.clear()


@pytest.fixture()
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def hub(persistence: FakePersistence, clock: ManualClock) -> Hub:
    return Hub(
        persistence,
        ringing_timeout=30.0,
        presence_write_interval=30.0,
        writer=PersistenceWriter(base_delay=0.001, max_delay=0.01),
        clock=clock,
    )


Connect = Callable[..., Awaitable[tuple[Connection, DummyWebSocket]]]


@pytest.fixture()
def connect(hub: Hub) -> Connect:
    """Open a connection on *hub*, authenticating it when a user id is given."""

    async def _connect(
        user_id: str | None = None, *, authenticate: bool = True, target: Hub | None = None
    ):
        owner = target or hub
        websocket = DummyWebSocket()
        connection = owner.open(websocket, verified_user_id=user_id)  # type: ignore[arg-type]
        if user_id is not None and authenticate:
            await owner.receive(connection, {"event": "authenticate", "data": {"user_id": user_id}})
        return connection, websocket

    return _connect


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()
