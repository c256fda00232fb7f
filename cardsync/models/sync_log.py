"""
CardSync — Sync Log Model

Append-only event log. Every pipeline stage writes here; rows are read-only
after creation. Callers poll by operation_id to follow background runs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import INTEGER, TIMESTAMP, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class SyncLog(Base):
    """
    One log event for one operation.

    Integer autoincrement PK breaks created_at ties when ordering newest-first.
    """

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(INTEGER, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String, nullable=False)
    operation_type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, comment="started | progress | success | warning | error"
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    error_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    game_id: Mapped[str | None] = mapped_column(String, nullable=True)
    set_id: Mapped[str | None] = mapped_column(String, nullable=True)
    progress_current: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    progress_total: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_sync_logs_operation_created", "operation_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncLog id={self.id} op={self.operation_id!r} type={self.operation_type!r} "
            f"status={self.status!r}>"
        )
