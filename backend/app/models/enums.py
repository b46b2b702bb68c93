from __future__ import annotations

from enum import Enum


class FriendRequestStatus(str, Enum):
    """Lifecycle states for friend relationships."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ClubRole(str, Enum):
    """Roles a member can hold inside a club."""

    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"


class EventVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class CrisisVisibility(str, Enum):
    """Who may follow a crisis alert."""

    PUBLIC = "public"
    COMMUNITY = "community"
    FRIENDS = "friends"
    PRIVATE = "private"


class MemoryType(str, Enum):
    ANNIVERSARY = "anniversary"
    MILESTONE = "milestone"
    ON_THIS_DAY = "on_this_day"
