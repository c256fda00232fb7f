"""
CardSync — Match Record Model

Association between an internal Card and a catalog product, written by the
reconciliation matcher. Records are never auto-deleted; a later run upserts
over the same (card, product) pair. Neither reference cascades, so deleting
a record leaves the card and the product untouched.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    FLOAT,
    TIMESTAMP,
    ForeignKey,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType, new_uuid


class MatchRecord(Base):
    """Card -> catalog product match with confidence, method and audit trail."""

    __tablename__ = "match_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    operation_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    card_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cards.id"), nullable=False, index=True
    )
    catalog_product_id: Mapped[int] = mapped_column(BIGINT, nullable=False)
    confidence: Mapped[float] = mapped_column(
        FLOAT, nullable=False, comment="Match confidence in [0, 1]"
    )
    method: Mapped[str] = mapped_column(
        String, nullable=False, comment="exact_id | number_match | name_similarity"
    )
    applied: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Scores and candidates considered"
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("card_id", "catalog_product_id", name="uq_match_records_card_product"),
    )

    def __repr__(self) -> str:
        return (
            f"<MatchRecord card_id={self.card_id!r} product={self.catalog_product_id} "
            f"method={self.method!r} confidence={self.confidence:.3f} applied={self.applied}>"
        )
