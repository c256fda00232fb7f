"""
CardSync — Variant/Price Models

`card_prices` holds the latest observation per (card, printing, condition,
source). `card_price_history` is append-only: every sync appends one snapshot
per price row and never updates it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DECIMAL,
    TIMESTAMP,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, new_uuid


class CardPrice(Base):
    """Current price for one printing x condition of a card, per source."""

    __tablename__ = "card_prices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    card_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cards.id", ondelete="CASCADE"), nullable=False
    )
    printing: Mapped[str] = mapped_column(
        String, nullable=False, comment="Printing label, e.g. 'Normal', 'Holofoil'"
    )
    condition: Mapped[str] = mapped_column(
        String, nullable=False, comment="Condition label, e.g. 'Near Mint'"
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    market_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    low_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    high_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    source: Mapped[str] = mapped_column(
        String, nullable=False, comment="Data source tag, e.g. 'JustTCG'"
    )
    fetched_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="When this observation was taken",
    )

    __table_args__ = (
        UniqueConstraint(
            "card_id", "printing", "condition", "source",
            name="uq_card_prices_card_printing_condition_source",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CardPrice card_id={self.card_id!r} printing={self.printing!r} "
            f"condition={self.condition!r} market={self.market_price} {self.currency}>"
        )


class CardPriceHistory(Base):
    """
    Append-only price snapshot.

    Index: (card_id, source, recorded_at) supports range scans per card.
    """

    __tablename__ = "card_price_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    card_id: Mapped[str] = mapped_column(String(36), nullable=False)
    printing: Mapped[str] = mapped_column(String, nullable=False)
    condition: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    market_price: Mapped[Decimal | None] = mapped_column(DECIMAL(10, 2), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="UTC timestamp of the snapshot",
    )

    __table_args__ = (
        Index(
            "ix_card_price_history_card_source_recorded",
            "card_id",
            "source",
            "recorded_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CardPriceHistory card_id={self.card_id!r} printing={self.printing!r} "
            f"market={self.market_price} at={self.recorded_at}>"
        )
