"""Pydantic schemas exposed by the HTTP API."""

from .calls import CallHistoryPage, CallLogRead, CallStatsRead, MissedCallsRead, Pagination
from .presence import PresenceRead

__all__ = [
    "CallHistoryPage",
    "CallLogRead",
    "CallStatsRead",
    "MissedCallsRead",
    "Pagination",
    "PresenceRead",
]
