from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import (
    CallLog,
    Club,
    ClubMember,
    Crisis,
    CrisisEmergencyContact,
    CrisisVisibility,
    Event,
    EventInvite,
    EventVisibility,
    FriendLink,
    FriendRequestStatus,
    Memory,
    User,
)
from app.services.persistence import SqlPersistenceAdapter
from freetalk.realtime.errors import PersistenceError


@pytest.fixture()
def adapter(session_factory) -> SqlPersistenceAdapter:
    return SqlPersistenceAdapter(session_factory)


@pytest.fixture()
def people(db_session) -> dict[str, User]:
    users = {
        name: User(id=name, name=name.title(), avatar_url=f"https://cdn.example/{name}.png")
        for name in ("ada", "bob", "cy", "dee")
    }
    db_session.add_all(users.values())
    db_session.add_all(
        [
            FriendLink(requester_id="ada", addressee_id="bob", status=FriendRequestStatus.ACCEPTED),
            FriendLink(requester_id="cy", addressee_id="ada", status=FriendRequestStatus.ACCEPTED),
            FriendLink(requester_id="ada", addressee_id="dee", status=FriendRequestStatus.PENDING),
        ]
    )
    db_session.commit()
    return users


@pytest.mark.anyio("asyncio")
async def test_set_user_online_updates_known_users(adapter, people, session_factory) -> None:
    seen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    await adapter.set_user_online("ada", True, seen)
    await adapter.set_user_online("ghost", True, seen)

    with session_factory() as db:
        user = db.get(User, "ada")
        assert user.is_online is True
        assert user.last_active.replace(tzinfo=timezone.utc) == seen
        assert db.get(User, "ghost") is None


@pytest.mark.anyio("asyncio")
async def test_call_upsert_is_idempotent_by_call_id(adapter, people, session_factory) -> None:
    started = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    record = {
        "call_id": "c1",
        "caller_id": "ada",
        "callee_id": "bob",
        "call_type": "video",
        "status": "ringing",
        "started_at": started,
        "accepted_at": None,
        "ended_at": None,
        "duration": 0,
    }

    await adapter.call_upsert(record)
    await adapter.call_upsert(record)
    await adapter.call_upsert(
        {
            **record,
            "status": "ended",
            "accepted_at": started + timedelta(seconds=5),
            "ended_at": started + timedelta(seconds=65),
            "duration": 60,
        }
    )

    with session_factory() as db:
        logs = db.query(CallLog).all()
        assert len(logs) == 1
        assert logs[0].status == "ended"
        assert logs[0].duration == 60
        assert logs[0].call_type == "video"


@pytest.mark.anyio("asyncio")
async def test_lookup_caller_profile(adapter, people) -> None:
    assert await adapter.lookup_caller_profile("ada") == {
        "name": "Ada",
        "avatar": "https://cdn.example/ada.png",
    }
    assert await adapter.lookup_caller_profile("ghost") is None


@pytest.mark.anyio("asyncio")
async def test_lookup_friends_uses_accepted_links_in_both_directions(adapter, people) -> None:
    assert await adapter.lookup_friends("ada") == ["bob", "cy"]
    assert await adapter.lookup_friends("dee") == []


@pytest.mark.anyio("asyncio")
async def test_club_membership(adapter, people, db_session) -> None:
    db_session.add_all(
        [
            Club(id="open", name="Open", is_private=False),
            Club(id="closed", name="Closed", is_private=True),
            ClubMember(club_id="closed", user_id="bob"),
        ]
    )
    db_session.commit()

    assert await adapter.lookup_resource_membership("club", "open", "ada")
    assert await adapter.lookup_resource_membership("club", "closed", "bob")
    assert not await adapter.lookup_resource_membership("club", "closed", "ada")
    assert not await adapter.lookup_resource_membership("club", "missing", "ada")


@pytest.mark.anyio("asyncio")
async def test_event_membership(adapter, people, db_session) -> None:
    db_session.add_all(
        [
            Event(id="party", title="Party", organizer_id="ada", visibility=EventVisibility.PRIVATE),
            Event(id="fair", title="Fair", organizer_id="ada", visibility=EventVisibility.PUBLIC),
            EventInvite(event_id="party", user_id="bob"),
        ]
    )
    db_session.commit()

    assert await adapter.lookup_resource_membership("event", "fair", "dee")
    assert await adapter.lookup_resource_membership("event", "party", "ada")
    assert await adapter.lookup_resource_membership("event", "party", "bob")
    assert not await adapter.lookup_resource_membership("event", "party", "dee")


@pytest.mark.anyio("asyncio")
async def test_crisis_membership_follows_visibility(adapter, people, db_session) -> None:
    db_session.add_all(
        [
            Crisis(id="f", owner_id="ada", visibility=CrisisVisibility.FRIENDS),
            Crisis(id="p", owner_id="ada", visibility=CrisisVisibility.PRIVATE),
            CrisisEmergencyContact(crisis_id="p", user_id="dee"),
        ]
    )
    db_session.commit()

    assert await adapter.lookup_resource_membership("crisis", "f", "bob")
    assert not await adapter.lookup_resource_membership("crisis", "f", "dee")
    assert await adapter.lookup_resource_membership("crisis", "p", "ada")
    assert await adapter.lookup_resource_membership("crisis", "p", "dee")
    assert not await adapter.lookup_resource_membership("crisis", "p", "bob")
    assert not await adapter.lookup_resource_membership("voice", "p", "ada")


@pytest.mark.anyio("asyncio")
async def test_memories(adapter, people, db_session, session_factory) -> None:
    db_session.add_all(
        [
            Memory(
                id="m-old",
                user_id="ada",
                post_id="p1",
                original_date=datetime(2020, 5, 1, tzinfo=timezone.utc),
                year=2020,
                years_ago=4,
            ),
            Memory(
                id="m-new",
                user_id="ada",
                post_id="p2",
                original_date=datetime(2023, 5, 1, tzinfo=timezone.utc),
                year=2023,
                years_ago=1,
            ),
            Memory(
                id="m-seen",
                user_id="ada",
                post_id="p3",
                original_date=datetime(2022, 5, 1, tzinfo=timezone.utc),
                year=2022,
                years_ago=2,
                viewed=True,
            ),
        ]
    )
    db_session.commit()

    unseen = await adapter.list_memories("ada", include_viewed=False, limit=10)
    assert [memory["id"] for memory in unseen] == ["m-new", "m-old"]
    assert unseen[0]["type"] == "on_this_day"
    everything = await adapter.list_memories("ada", include_viewed=True, limit=2)
    assert [memory["id"] for memory in everything] == ["m-new", "m-seen"]

    assert await adapter.mark_memory_viewed("ada", "m-old")
    assert await adapter.mark_memory_viewed("ada", "m-old")
    assert not await adapter.mark_memory_viewed("bob", "m-new")
    assert await adapter.mark_memory_shared("ada", "m-new")

    with session_factory() as db:
        old = db.get(Memory, "m-old")
        assert old.viewed is True
        assert old.views == 1
        new = db.get(Memory, "m-new")
        assert new.shared is True
        assert new.shares == 1


@pytest.mark.anyio("asyncio")
async def test_datastore_failures_raise_persistence_error() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    adapter = SqlPersistenceAdapter(sessionmaker(bind=engine))
    try:
        with pytest.raises(PersistenceError):
            await adapter.lookup_friends("ada")
    finally:
        engine.dispose()
