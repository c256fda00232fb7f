"""
CardSync — Catalog Staging Models

Categories (~ games), groups (~ sets) and products (~ cards) from the TCGCSV
catalog, keyed by the catalog's own numeric IDs. These rows are staging data: they are linked to
internal sets/cards only through set-level mappings and match records.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import BIGINT, BOOLEAN, INTEGER, TIMESTAMP, String, func
from sqlalchemy.orm import Mapped, mapped_column

from cardsync.models.base import Base, JSONType


class CatalogCategory(Base):
    """One TCGCSV category (a game in catalog terms)."""

    __tablename__ = "catalog_categories"

    category_id: Mapped[int] = mapped_column(
        INTEGER, primary_key=True, autoincrement=False, comment="TCGCSV categoryId"
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    category_group_id: Mapped[int | None] = mapped_column(INTEGER, nullable=True)
    modified_on: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<CatalogCategory category_id={self.category_id} name={self.name!r}>"


class CatalogGroup(Base):
    """One TCGCSV group (a set release in catalog terms)."""

    __tablename__ = "catalog_groups"

    group_id: Mapped[int] = mapped_column(
        INTEGER, primary_key=True, autoincrement=False, comment="TCGCSV groupId"
    )
    category_id: Mapped[int] = mapped_column(INTEGER, nullable=False, index=True)
    game_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    abbreviation: Mapped[str | None] = mapped_column(String, nullable=True)
    slug: Mapped[str | None] = mapped_column(String, nullable=True)
    release_date: Mapped[str | None] = mapped_column(String, nullable=True)
    is_supplemental: Mapped[bool | None] = mapped_column(BOOLEAN, nullable=True)
    sealed_product: Mapped[bool | None] = mapped_column(BOOLEAN, nullable=True)
    data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Raw upstream payload"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<CatalogGroup group_id={self.group_id} name={self.name!r}>"


class CatalogProduct(Base):
    """One TCGCSV product (a single card or sealed item)."""

    __tablename__ = "catalog_products"

    product_id: Mapped[int] = mapped_column(
        BIGINT, primary_key=True, autoincrement=False, comment="TCGCSV productId"
    )
    group_id: Mapped[int] = mapped_column(INTEGER, nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(INTEGER, nullable=False)
    game_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    clean_name: Mapped[str | None] = mapped_column(String, nullable=True)
    number: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Card number parsed from columns or product name"
    )
    rarity: Mapped[str | None] = mapped_column(String, nullable=True)
    product_type: Mapped[str | None] = mapped_column(String, nullable=True)
    url: Mapped[str | None] = mapped_column(String, nullable=True)
    image_url: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="Best available image URL (400w preferred)"
    )
    data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="Raw payload plus extended columns"
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<CatalogProduct product_id={self.product_id} group={self.group_id} "
            f"name={self.name!r} number={self.number!r}>"
        )
