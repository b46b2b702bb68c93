"""Call history endpoints backed by the persisted call log."""

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id
from app.database import get_db
from app.models import CallLog
from app.schemas.calls import CallHistoryPage, CallLogRead, CallStatsRead, MissedCallsRead, Pagination
from freetalk.calls.signaling import CallStatus

router = APIRouter(prefix="/calls", tags=["calls"])

# A call that rang out without an answer counts as missed for the callee.
MISSED_STATUS = CallStatus.TIMEOUT.value


def format_duration(seconds: int) -> str:
    hours, remainder = divmod(max(int(seconds), 0), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _serialize(entry: CallLog, user_id: str) -> CallLogRead:
    return CallLogRead(
        call_id=entry.call_id,
        caller_id=entry.caller_id,
        callee_id=entry.callee_id,
        call_type=entry.call_type,
        status=entry.status,
        started_at=entry.started_at,
        accepted_at=entry.accepted_at,
        ended_at=entry.ended_at,
        duration=entry.duration,
        direction="outgoing" if entry.caller_id == user_id else "incoming",
    )


def _involving(user_id: str):
    return or_(CallLog.caller_id == user_id, CallLog.callee_id == user_id)


def _count(db: Session, *conditions) -> int:
    stmt = select(func.count()).select_from(CallLog).where(*conditions)
    return int(db.execute(stmt).scalar_one())


@router.get("/history", response_model=CallHistoryPage)
def read_call_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
) -> CallHistoryPage:
    """Return the current user's calls, newest first."""

    total = _count(db, _involving(current_user_id))
    stmt = (
        select(CallLog)
        .where(_involving(current_user_id))
        .order_by(CallLog.started_at.desc(), CallLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    entries = db.execute(stmt).scalars().all()
    return CallHistoryPage(
        calls=[_serialize(entry, current_user_id) for entry in entries],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit) if total else 0,
        ),
    )


@router.get("/missed", response_model=MissedCallsRead)
def read_missed_calls(
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
) -> MissedCallsRead:
    count = _count(db, CallLog.callee_id == current_user_id, CallLog.status == MISSED_STATUS)
    return MissedCallsRead(count=count)


@router.get("/stats", response_model=CallStatsRead)
def read_call_stats(
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
) -> CallStatsRead:
    """Aggregate totals across the current user's call log."""

    duration_stmt = select(func.coalesce(func.sum(CallLog.duration), 0)).where(
        _involving(current_user_id), CallLog.status == CallStatus.ENDED.value
    )
    total_duration = int(db.execute(duration_stmt).scalar_one())
    return CallStatsRead(
        total_calls=_count(db, _involving(current_user_id)),
        incoming_calls=_count(db, CallLog.callee_id == current_user_id),
        outgoing_calls=_count(db, CallLog.caller_id == current_user_id),
        missed_calls=_count(db, CallLog.callee_id == current_user_id, CallLog.status == MISSED_STATUS),
        total_duration=total_duration,
        total_duration_formatted=format_duration(total_duration),
    )


@router.delete("/{call_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_call(
    call_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
) -> None:
    """Remove a call from the history of both parties."""

    entry = db.execute(select(CallLog).where(CallLog.call_id == call_id)).scalar_one_or_none()
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call not found")
    if current_user_id not in (entry.caller_id, entry.callee_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to delete this call",
        )
    db.delete(entry)
    db.commit()
