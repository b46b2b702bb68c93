from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class CallLog(Base):
    """Durable record of a one-to-one call, upserted by ``call_id``."""

    __tablename__ = "call_logs"
    __table_args__ = (
        Index("ix_call_logs_caller_started", "caller_id", "started_at"),
        Index("ix_call_logs_callee_started", "callee_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    call_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    caller_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    callee_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    call_type: Mapped[str] = mapped_column(String(16), nullable=False, default="audio")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ringing")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
