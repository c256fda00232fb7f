"""
CardSync — Set Model

A named release under one Game. Carries harvest bookkeeping (sync status,
counts) and the set-level catalog group mapping written by the matcher.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    FLOAT,
    INTEGER,
    TIMESTAMP,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.config import SyncStatus
from cardsync.models.base import Base, new_uuid


class CardSet(Base):
    """
    One set within a game.

    Unique on (game_id, external_id): the same upstream set ID may exist under
    different games.
    """

    __tablename__ = "card_sets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    game_id: Mapped[str] = mapped_column(
        String, ForeignKey("games.id"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(
        String, nullable=False, comment="Pricing API set ID"
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    code: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Short set code/abbreviation if known"
    )
    release_date: Mapped[str | None] = mapped_column(String, nullable=True)
    total_cards: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="Expected total reported by upstream metadata"
    )
    cards_synced_count: Mapped[int] = mapped_column(INTEGER, nullable=False, default=0)
    sync_status: Mapped[str] = mapped_column(
        String, nullable=False, default=SyncStatus.NOT_STARTED.value,
        comment="not_started | in_progress | completed | failed",
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Set-level catalog mapping (written by engine/matcher.py)
    catalog_group_id: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, index=True, comment="Matched TCGCSV group ID"
    )
    catalog_match_confidence: Mapped[float | None] = mapped_column(FLOAT, nullable=True)
    catalog_match_method: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("game_id", "external_id", name="uq_card_sets_game_external"),
    )

    def __repr__(self) -> str:
        return (
            f"<CardSet game={self.game_id!r} external_id={self.external_id!r} "
            f"status={self.sync_status!r} synced={self.cards_synced_count}>"
        )
