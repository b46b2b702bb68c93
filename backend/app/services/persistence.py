"""SQLAlchemy-backed implementation of the realtime persistence adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import anyio.to_thread
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import (
    CallLog,
    Club,
    ClubMember,
    Crisis,
    CrisisEmergencyContact,
    CrisisVisibility,
    Event,
    EventAttendee,
    EventInvite,
    EventVisibility,
    FriendLink,
    FriendRequestStatus,
    Memory,
    User,
)
from freetalk.realtime.errors import PersistenceError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

_CALL_FIELDS = (
    "caller_id",
    "callee_id",
    "call_type",
    "status",
    "started_at",
    "accepted_at",
    "ended_at",
    "duration",
)


def friend_ids(user_id: str, db: Session) -> list[str]:
    """Return accepted friends of *user_id* in either link direction."""

    stmt = select(FriendLink).where(
        FriendLink.status == FriendRequestStatus.ACCEPTED,
        or_(
            FriendLink.requester_id == user_id,
            FriendLink.addressee_id == user_id,
        ),
    )
    links = db.execute(stmt).scalars().all()
    friends: list[str] = []
    for link in links:
        if link.requester_id == user_id:
            friends.append(link.addressee_id)
        else:
            friends.append(link.requester_id)
    return sorted(set(friends))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_memory(memory: Memory) -> dict[str, Any]:
    return {
        "id": memory.id,
        "post_id": memory.post_id,
        "original_date": _iso(memory.original_date),
        "year": memory.year,
        "type": memory.memory_type.value,
        "years_ago": memory.years_ago,
        "viewed": memory.viewed,
        "shared": memory.shared,
        "note": memory.note,
    }


class SqlPersistenceAdapter:
    """Runs blocking ORM work on worker threads so the event loop never waits on I/O."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def _run(self, func: Callable[[Session], Any]) -> Any:
        def work() -> Any:
            with self._session_factory() as db:
                try:
                    return func(db)
                except SQLAlchemyError as exc:
                    db.rollback()
                    raise PersistenceError(str(exc)) from exc

        return await anyio.to_thread.run_sync(work)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def set_user_online(self, user_id: str, online: bool, last_active: datetime) -> None:
        def work(db: Session) -> None:
            user = db.get(User, user_id)
            if user is None:
                logger.debug("Presence update for unknown user", extra={"user_id": user_id})
                return
            user.is_online = online
            user.last_active = last_active
            db.commit()

        await self._run(work)

    async def call_upsert(self, record: Mapping[str, Any]) -> None:
        call_id = str(record["call_id"])

        def work(db: Session) -> None:
            entry = db.execute(select(CallLog).where(CallLog.call_id == call_id)).scalar_one_or_none()
            if entry is None:
                entry = CallLog(call_id=call_id)
                db.add(entry)
            for name in _CALL_FIELDS:
                if name in record:
                    setattr(entry, name, record[name])
            db.commit()

        await self._run(work)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def lookup_caller_profile(self, user_id: str) -> Mapping[str, Any] | None:
        def work(db: Session) -> dict[str, Any] | None:
            user = db.get(User, user_id)
            if user is None:
                return None
            return {"name": user.name, "avatar": user.avatar_url}

        return await self._run(work)

    async def lookup_resource_membership(
        self, resource_kind: str, resource_id: str, user_id: str
    ) -> bool:
        checks = {
            "club": _club_visible,
            "event": _event_visible,
            "crisis": _crisis_visible,
        }
        check = checks.get(resource_kind)
        if check is None:
            return False
        return bool(await self._run(lambda db: check(db, resource_id, user_id)))

    async def lookup_friends(self, user_id: str) -> Sequence[str]:
        return await self._run(lambda db: friend_ids(user_id, db))

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------
    async def list_memories(
        self, user_id: str, *, include_viewed: bool, limit: int
    ) -> Sequence[Mapping[str, Any]]:
        def work(db: Session) -> list[dict[str, Any]]:
            stmt = select(Memory).where(Memory.user_id == user_id)
            if not include_viewed:
                stmt = stmt.where(Memory.viewed.is_(False))
            stmt = stmt.order_by(Memory.original_date.desc(), Memory.years_ago.desc()).limit(limit)
            return [serialize_memory(memory) for memory in db.execute(stmt).scalars()]

        return await self._run(work)

    async def mark_memory_viewed(self, user_id: str, memory_id: str) -> bool:
        def work(db: Session) -> bool:
            memory = _owned_memory(db, user_id, memory_id)
            if memory is None:
                return False
            if not memory.viewed:
                memory.viewed = True
                memory.views += 1
                db.commit()
            return True

        return await self._run(work)

    async def mark_memory_shared(self, user_id: str, memory_id: str) -> bool:
        def work(db: Session) -> bool:
            memory = _owned_memory(db, user_id, memory_id)
            if memory is None:
                return False
            if not memory.shared:
                memory.shared = True
                memory.shares += 1
                db.commit()
            return True

        return await self._run(work)


def _owned_memory(db: Session, user_id: str, memory_id: str) -> Memory | None:
    stmt = select(Memory).where(Memory.id == memory_id, Memory.user_id == user_id)
    return db.execute(stmt).scalar_one_or_none()


def _club_visible(db: Session, club_id: str, user_id: str) -> bool:
    club = db.get(Club, club_id)
    if club is None:
        return False
    if not club.is_private:
        return True
    stmt = select(ClubMember.id).where(ClubMember.club_id == club_id, ClubMember.user_id == user_id)
    return db.execute(stmt).first() is not None


def _event_visible(db: Session, event_id: str, user_id: str) -> bool:
    event = db.get(Event, event_id)
    if event is None:
        return False
    if event.visibility == EventVisibility.PUBLIC or event.organizer_id == user_id:
        return True
    invited = db.execute(
        select(EventInvite.id).where(EventInvite.event_id == event_id, EventInvite.user_id == user_id)
    ).first()
    if invited is not None:
        return True
    attending = db.execute(
        select(EventAttendee.id).where(
            EventAttendee.event_id == event_id, EventAttendee.user_id == user_id
        )
    ).first()
    return attending is not None


def _crisis_visible(db: Session, crisis_id: str, user_id: str) -> bool:
    crisis = db.get(Crisis, crisis_id)
    if crisis is None:
        return False
    if crisis.visibility in (CrisisVisibility.PUBLIC, CrisisVisibility.COMMUNITY):
        return True
    if crisis.owner_id == user_id:
        return True
    contact = db.execute(
        select(CrisisEmergencyContact.id).where(
            CrisisEmergencyContact.crisis_id == crisis_id,
            CrisisEmergencyContact.user_id == user_id,
        )
    ).first()
    if contact is not None:
        return True
    if crisis.visibility == CrisisVisibility.FRIENDS:
        return user_id in friend_ids(crisis.owner_id, db)
    return False


__all__ = ["SqlPersistenceAdapter", "friend_ids", "serialize_memory"]
