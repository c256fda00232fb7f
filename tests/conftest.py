"""
CardSync — Shared pytest Fixtures & Configuration

Provides common fixtures for all test modules:
- Test settings (no real delays, no dispatch interval)
- File-backed aiosqlite database with all tables created
- Sync log store
- Recording sleep (asserts on backoff without waiting)
- Payload builders for the pricing API and the catalog
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardsync.config import Settings
from cardsync.models import Base
from cardsync.pipeline.sync_log import SyncLogStore

JUSTTCG_URL = "https://api.justtcg.test/v1"
TCGCSV_URL = "https://tcgcsv.test/tcgplayer"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with zero delays so retry and pagination tests run instantly."""
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'cardsync.db'}",
        JUSTTCG_API_KEY="test-key",
        JUSTTCG_BASE_URL=JUSTTCG_URL,
        JUSTTCG_BASE_DELAY_SECONDS=0.5,
        JUSTTCG_REQUESTS_PER_SECOND=None,
        TCGCSV_BASE_URL=TCGCSV_URL,
        TCGCSV_BASE_DELAY_SECONDS=0.5,
        TCGCSV_REQUESTS_PER_SECOND=None,
        HARVEST_PAGE_DELAY_SECONDS=0.0,
        UPSERT_BASE_DELAY_SECONDS=0.0,
    )


class RecordingSleep:
    """Drop-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


# ---------------------------------------------------------------------------
# Database Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    aiosqlite database in a temp file, fresh per test.

    A file (not :memory:) so every session sees the same database.
    """
    engine = create_async_engine(test_settings.DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    yield factory

    await engine.dispose()


@pytest.fixture
def log_store(session_factory: async_sessionmaker[AsyncSession]) -> SyncLogStore:
    return SyncLogStore(session_factory)


# ---------------------------------------------------------------------------
# Payload Builders
# ---------------------------------------------------------------------------


def make_card(
    card_id: str,
    *,
    name: str | None = None,
    number: str | None = None,
    set_id: str = "base-set-pokemon",
    tcgplayer_id: str | None = None,
    variants: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """One raw /cards item as the pricing API returns it."""
    return {
        "id": card_id,
        "name": name or f"Card {card_id}",
        "game": "Pokemon",
        "set": set_id,
        "set_name": "Base Set",
        "number": number,
        "rarity": "Rare",
        "tcgplayerId": tcgplayer_id,
        "variants": variants
        if variants is not None
        else [
            {
                "id": f"{card_id}-nm",
                "printing": "Normal",
                "condition": "Near Mint",
                "price": 1.25,
                "lowPrice": 0.99,
                "highPrice": 2.0,
            }
        ],
    }


def cards_page(
    cards: list[dict[str, Any]], *, total: int | None = None, has_more: bool | None = None
) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    if total is not None:
        meta["total"] = total
    if has_more is not None:
        meta["hasMore"] = has_more
    return {"data": cards, "meta": meta}


@pytest.fixture
def card_factory():
    return make_card


@pytest.fixture
def page_factory():
    return cards_page
