"""Initial schema — games, card_sets, cards, prices, catalog staging, match_records, sync_logs

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- games ---
    op.create_table(
        "games",
        sa.Column("id", sa.String(), primary_key=True, comment="Internal game slug, e.g. 'pokemon', 'mtg'"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("catalog_category_id", sa.INTEGER(), nullable=True, comment="TCGCSV category ID"),
        sa.Column("sets_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("cards_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("last_synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # --- card_sets ---
    op.create_table(
        "card_sets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("game_id", sa.String(), sa.ForeignKey("games.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False, comment="Pricing API set ID"),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("release_date", sa.String(), nullable=True),
        sa.Column("total_cards", sa.INTEGER(), nullable=True),
        sa.Column("cards_synced_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("sync_status", sa.String(), nullable=False, server_default="not_started"),
        sa.Column("last_synced_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("catalog_group_id", sa.INTEGER(), nullable=True, comment="Matched TCGCSV group ID"),
        sa.Column("catalog_match_confidence", sa.FLOAT(), nullable=True),
        sa.Column("catalog_match_method", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("game_id", "external_id", name="uq_card_sets_game_external"),
    )
    op.create_index("ix_card_sets_game_id", "card_sets", ["game_id"])
    op.create_index("ix_card_sets_catalog_group_id", "card_sets", ["catalog_group_id"])

    # --- cards ---
    op.create_table(
        "cards",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("external_id", sa.String(), nullable=False, unique=True, comment="Pricing API card ID"),
        sa.Column("set_id", sa.String(36), sa.ForeignKey("card_sets.id"), nullable=False),
        sa.Column("game_id", sa.String(), sa.ForeignKey("games.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("number", sa.String(), nullable=True),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("tcgplayer_id", sa.String(), nullable=True),
        sa.Column("attributes", JSONB(), nullable=True),
        sa.Column("catalog_product_id", sa.BIGINT(), nullable=True),
        sa.Column("product_url", sa.String(), nullable=True),
        sa.Column("catalog_match_confidence", sa.FLOAT(), nullable=True),
        sa.Column("catalog_match_method", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_cards_set_id", "cards", ["set_id"])
    op.create_index("ix_cards_game_id", "cards", ["game_id"])
    op.create_index("ix_cards_tcgplayer_id", "cards", ["tcgplayer_id"])
    op.create_index("ix_cards_catalog_product_id", "cards", ["catalog_product_id"])

    # --- card_prices (latest observation) ---
    op.create_table(
        "card_prices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "card_id",
            sa.String(36),
            sa.ForeignKey("cards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("printing", sa.String(), nullable=False),
        sa.Column("condition", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("market_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("low_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("high_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column(
            "fetched_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "card_id", "printing", "condition", "source",
            name="uq_card_prices_card_printing_condition_source",
        ),
    )

    # --- card_price_history (append-only) ---
    op.create_table(
        "card_price_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("card_id", sa.String(36), nullable=False),
        sa.Column("printing", sa.String(), nullable=False),
        sa.Column("condition", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("market_price", sa.DECIMAL(10, 2), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_card_price_history_card_source_recorded",
        "card_price_history",
        ["card_id", "source", "recorded_at"],
    )

    # --- catalog_categories / catalog_groups / catalog_products (staging) ---
    op.create_table(
        "catalog_categories",
        sa.Column("category_id", sa.INTEGER(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("slug", sa.String(), nullable=True),
        sa.Column("category_group_id", sa.INTEGER(), nullable=True),
        sa.Column("modified_on", sa.String(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "catalog_groups",
        sa.Column("group_id", sa.INTEGER(), primary_key=True, autoincrement=False),
        sa.Column("category_id", sa.INTEGER(), nullable=False),
        sa.Column("game_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("abbreviation", sa.String(), nullable=True),
        sa.Column("slug", sa.String(), nullable=True),
        sa.Column("release_date", sa.String(), nullable=True),
        sa.Column("is_supplemental", sa.BOOLEAN(), nullable=True),
        sa.Column("sealed_product", sa.BOOLEAN(), nullable=True),
        sa.Column("data", JSONB(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_catalog_groups_category_id", "catalog_groups", ["category_id"])
    op.create_index("ix_catalog_groups_game_id", "catalog_groups", ["game_id"])

    op.create_table(
        "catalog_products",
        sa.Column("product_id", sa.BIGINT(), primary_key=True, autoincrement=False),
        sa.Column("group_id", sa.INTEGER(), nullable=False),
        sa.Column("category_id", sa.INTEGER(), nullable=False),
        sa.Column("game_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("clean_name", sa.String(), nullable=True),
        sa.Column("number", sa.String(), nullable=True),
        sa.Column("rarity", sa.String(), nullable=True),
        sa.Column("product_type", sa.String(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("image_url", sa.String(), nullable=True),
        sa.Column("data", JSONB(), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_catalog_products_group_id", "catalog_products", ["group_id"])
    op.create_index("ix_catalog_products_game_id", "catalog_products", ["game_id"])

    # --- match_records (no cascades in either direction) ---
    op.create_table(
        "match_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("operation_id", sa.String(), nullable=False),
        sa.Column("card_id", sa.String(36), sa.ForeignKey("cards.id"), nullable=False),
        sa.Column("catalog_product_id", sa.BIGINT(), nullable=False),
        sa.Column("confidence", sa.FLOAT(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("applied", sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("card_id", "catalog_product_id", name="uq_match_records_card_product"),
    )
    op.create_index("ix_match_records_operation_id", "match_records", ["operation_id"])
    op.create_index("ix_match_records_card_id", "match_records", ["card_id"])

    # --- sync_logs (append-only) ---
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.INTEGER(), primary_key=True, autoincrement=True),
        sa.Column("operation_id", sa.String(), nullable=False),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("duration_ms", sa.INTEGER(), nullable=True),
        sa.Column("error_count", sa.INTEGER(), nullable=False, server_default="0"),
        sa.Column("game_id", sa.String(), nullable=True),
        sa.Column("set_id", sa.String(), nullable=True),
        sa.Column("progress_current", sa.INTEGER(), nullable=True),
        sa.Column("progress_total", sa.INTEGER(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_sync_logs_operation_created", "sync_logs", ["operation_id", "created_at"])


def downgrade() -> None:
    op.drop_table("sync_logs")
    op.drop_table("match_records")
    op.drop_table("catalog_products")
    op.drop_table("catalog_groups")
    op.drop_table("catalog_categories")
    op.drop_table("card_price_history")
    op.drop_table("card_prices")
    op.drop_table("cards")
    op.drop_table("card_sets")
    op.drop_table("games")
