from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.models.enums import (
    ClubRole,
    CrisisVisibility,
    EventVisibility,
    FriendRequestStatus,
    MemoryType,
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _enum(enum_cls: type, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class User(Base):
    """Application user as seen by the realtime hub."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(String(512))
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_active: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    club_memberships: Mapped[list["ClubMember"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class FriendLink(Base):
    """Directional friend relationship between two users."""

    __tablename__ = "friend_links"
    __table_args__ = (
        UniqueConstraint("requester_id", "addressee_id", name="uq_friend_link_pair"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    requester_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    addressee_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[FriendRequestStatus] = mapped_column(
        _enum(FriendRequestStatus, "friend_request_status"),
        default=FriendRequestStatus.PENDING,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Club(Base):
    __tablename__ = "clubs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    members: Mapped[list["ClubMember"]] = relationship(
        back_populates="club", cascade="all, delete-orphan"
    )


class ClubMember(Base):
    """Membership of a user in a club."""

    __tablename__ = "club_members"
    __table_args__ = (UniqueConstraint("club_id", "user_id", name="uq_club_member"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    club_id: Mapped[str] = mapped_column(ForeignKey("clubs.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[ClubRole] = mapped_column(
        _enum(ClubRole, "club_role"), default=ClubRole.MEMBER, nullable=False
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    club: Mapped[Club] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="club_memberships")


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    organizer_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    visibility: Mapped[EventVisibility] = mapped_column(
        _enum(EventVisibility, "event_visibility"),
        default=EventVisibility.PUBLIC,
        nullable=False,
    )
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class EventInvite(Base):
    __tablename__ = "event_invites"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_invite"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


class EventAttendee(Base):
    """An RSVP on an event."""

    __tablename__ = "event_attendees"
    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uq_event_attendee"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    checked_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Crisis(Base):
    """A crisis alert raised by a user."""

    __tablename__ = "crises"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    visibility: Mapped[CrisisVisibility] = mapped_column(
        _enum(CrisisVisibility, "crisis_visibility"),
        default=CrisisVisibility.FRIENDS,
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(Text)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class CrisisEmergencyContact(Base):
    __tablename__ = "crisis_emergency_contacts"
    __table_args__ = (UniqueConstraint("crisis_id", "user_id", name="uq_crisis_contact"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    crisis_id: Mapped[str] = mapped_column(ForeignKey("crises.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


class Memory(Base):
    """An "on this day" resurfacing of one of the user's posts."""

    __tablename__ = "memories"
    __table_args__ = (Index("ix_memories_user_viewed", "user_id", "viewed"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    post_id: Mapped[str] = mapped_column(String(64), nullable=False)
    original_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_type: Mapped[MemoryType] = mapped_column(
        _enum(MemoryType, "memory_type"), default=MemoryType.ON_THIS_DAY, nullable=False
    )
    years_ago: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    viewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    note: Mapped[str | None] = mapped_column(String(500))
    views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
