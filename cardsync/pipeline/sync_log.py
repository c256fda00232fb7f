"""
CardSync — Sync Log Store

Append-only operation log. Each entry commits in its own session so a rolled
back data write never takes its log lines with it. Every entry is mirrored
to structlog.
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import LogStatus, settings
from cardsync.models import SyncLog

logger = structlog.get_logger(__name__)


def new_operation_id(prefix: str, *parts: Any) -> str:
    """'catalog-sync', 'pokemon' -> 'catalog-sync-pokemon-1718000000000-3fa9c1'."""
    pieces = [prefix, *(str(p) for p in parts if p not in (None, ""))]
    return "-".join([*pieces, str(int(time.time() * 1000)), secrets.token_hex(3)])


class SyncLogEntry(BaseModel):
    """Read model returned by query()."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    operation_id: str
    operation_type: str
    status: str
    message: str | None = None
    details: dict[str, Any] | None = None
    duration_ms: int | None = None
    error_count: int = 0
    game_id: str | None = None
    set_id: str | None = None
    progress_current: int | None = None
    progress_total: int | None = None
    created_at: datetime


class SyncLogStore:
    """
    Usage:
        store = SyncLogStore(session_factory)
        await store.append(op_id, "catalog_sync", LogStatus.STARTED, "Catalog sync started")
        entries = await store.query(op_id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(
        self,
        operation_id: str,
        operation_type: Enum | str,
        status: LogStatus | str,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        duration_ms: int | None = None,
        error_count: int = 0,
        game_id: str | None = None,
        set_id: str | None = None,
        progress_current: int | None = None,
        progress_total: int | None = None,
    ) -> int:
        status_value = status.value if isinstance(status, Enum) else status
        type_value = operation_type.value if isinstance(operation_type, Enum) else operation_type
        entry = SyncLog(
            operation_id=operation_id,
            operation_type=type_value,
            status=status_value,
            message=message,
            details=details,
            duration_ms=duration_ms,
            error_count=error_count,
            game_id=game_id,
            set_id=set_id,
            progress_current=progress_current,
            progress_total=progress_total,
            created_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()

        log = logger.error if status_value == LogStatus.ERROR.value else logger.info
        log(
            "sync_log_appended",
            operation_id=operation_id,
            operation_type=type_value,
            status=status_value,
            message=message,
            duration_ms=duration_ms,
        )
        return entry.id

    async def query(
        self, operation_id: str | None = None, limit: int | None = None
    ) -> list[SyncLogEntry]:
        """Newest first. Without operation_id, the latest entries across all operations."""
        stmt = select(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
        if operation_id:
            stmt = stmt.where(SyncLog.operation_id == operation_id)
        stmt = stmt.limit(limit or settings.SYNC_LOG_QUERY_LIMIT)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [SyncLogEntry.model_validate(row) for row in rows]
