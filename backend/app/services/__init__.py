"""Application service helpers."""

from .persistence import SqlPersistenceAdapter, friend_ids

__all__ = ["SqlPersistenceAdapter", "friend_ids"]
