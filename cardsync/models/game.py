"""
CardSync — Game Model

Top-level catalog partition (one trading-card game). Created by admin/import,
counts refreshed by sync jobs, never hard-deleted.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base


class Game(Base):
    """A trading-card game, keyed by its internal slug (e.g. 'pokemon')."""

    __tablename__ = "games"

    id: Mapped[str] = mapped_column(
        String, primary_key=True, comment="Internal game slug, e.g. 'pokemon', 'mtg'"
    )
    name: Mapped[str] = mapped_column(String, nullable=False, comment="Display name")
    catalog_category_id: Mapped[int | None] = mapped_column(
        INTEGER, nullable=True, comment="TCGCSV category ID for this game"
    )
    sets_count: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, comment="Number of sets stored for this game"
    )
    cards_count: Mapped[int] = mapped_column(
        INTEGER, nullable=False, default=0, comment="Number of cards stored for this game"
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Last completed sync touching this game"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Game id={self.id!r} category={self.catalog_category_id} "
            f"sets={self.sets_count} cards={self.cards_count}>"
        )
