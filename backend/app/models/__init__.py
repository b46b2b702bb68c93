"""Database models package."""

from .base import Base
from .calls import CallLog
from .social import (
    Club,
    ClubMember,
    Crisis,
    CrisisEmergencyContact,
    Event,
    EventAttendee,
    EventInvite,
    FriendLink,
    Memory,
    User,
)
from .enums import ClubRole, CrisisVisibility, EventVisibility, FriendRequestStatus, MemoryType

__all__ = [
    "Base",
    "User",
    "FriendLink",
    "Club",
    "ClubMember",
    "Event",
    "EventInvite",
    "EventAttendee",
    "Crisis",
    "CrisisEmergencyContact",
    "Memory",
    "CallLog",
    "ClubRole",
    "CrisisVisibility",
    "EventVisibility",
    "FriendRequestStatus",
    "MemoryType",
]
