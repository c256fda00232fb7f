"""
CardSync — Card Model

A catalogable item within a Set. Upstream-specific fields that have no column
of their own are kept in the `attributes` bag.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BIGINT, FLOAT, TIMESTAMP, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType, new_uuid


class Card(Base):
    """
    One card, keyed internally by UUID and externally by the pricing API ID.

    The catalog_* columns are only written when the matcher applies a match.
    """

    __tablename__ = "cards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    external_id: Mapped[str] = mapped_column(
        String, nullable=False, unique=True, comment="Pricing API card ID"
    )
    set_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("card_sets.id"), nullable=False, index=True
    )
    game_id: Mapped[str] = mapped_column(
        String, ForeignKey("games.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    number: Mapped[str | None] = mapped_column(String, nullable=True, comment="Collector number")
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    tcgplayer_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True,
        comment="Product ID reported by the pricing API; enables exact-id matching",
    )
    attributes: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Free-form upstream fields"
    )

    # Applied catalog match
    catalog_product_id: Mapped[int | None] = mapped_column(BIGINT, nullable=True, index=True)
    product_url: Mapped[str | None] = mapped_column(String, nullable=True)
    catalog_match_confidence: Mapped[float | None] = mapped_column(FLOAT, nullable=True)
    catalog_match_method: Mapped[str | None] = mapped_column(String, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Card external_id={self.external_id!r} name={self.name!r} "
            f"number={self.number!r} product={self.catalog_product_id}>"
        )
