"""Schemas for the call log endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CallLogRead(BaseModel):
    """One entry of the caller's or callee's call history."""

    model_config = ConfigDict(from_attributes=True)

    call_id: str
    caller_id: str
    callee_id: str
    call_type: str
    status: str
    started_at: datetime
    accepted_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int = Field(default=0, description="Seconds between accept and end")
    direction: Literal["incoming", "outgoing"]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class CallHistoryPage(BaseModel):
    calls: list[CallLogRead]
    pagination: Pagination


class MissedCallsRead(BaseModel):
    count: int


class CallStatsRead(BaseModel):
    """Aggregated call statistics for the current user."""

    total_calls: int
    incoming_calls: int
    outgoing_calls: int
    missed_calls: int
    total_duration: int = Field(description="Total seconds of ended calls")
    total_duration_formatted: str
