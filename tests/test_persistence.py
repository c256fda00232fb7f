"""
Tests for persistence sync (cardsync/pipeline/persistence.py).

Covers:
- ceil(N/B) chunking and commit accounting
- Upsert idempotency and in-input key collapse (last wins)
- Abort on a failing chunk with an exact committed count
- Retry of transient (OperationalError) failures
- sync_harvested_set: parents before children, history append, set status
- A partial harvest keeps its warnings in last_sync_error
- wipe_catalog
- Games and set lists: new sets start not_started, existing ones keep status
- Catalog categories and linking games to them
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cardsync.config import SyncStatus
from cardsync.errors import PersistenceError
from cardsync.models import (
    Card,
    CardPrice,
    CardPriceHistory,
    CardSet,
    CatalogCategory,
    CatalogGroup,
    CatalogProduct,
    Game,
)
from cardsync.pipeline.justtcg import HarvestResult
from cardsync.pipeline.normalizer import (
    CatalogCategoryRecord,
    CatalogProductRecord,
    GameRecord,
    SetRecord,
    normalize_pricing_card,
)
from cardsync.pipeline.persistence import (
    link_game_categories,
    sync_game_sets,
    sync_harvested_set,
    upsert_catalog_categories,
    upsert_catalog_products,
    upsert_games,
    upsert_in_batches,
    wipe_catalog,
)


def _group_rows(n: int, name_prefix: str = "Group") -> list[dict]:
    return [
        {"group_id": i, "category_id": 3, "game_id": "pokemon", "name": f"{name_prefix} {i}"}
        for i in range(1, n + 1)
    ]


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


def _harvest(card_factory, cards: list[dict]) -> HarvestResult:
    normalized = [normalize_pricing_card(c) for c in cards]
    return HarvestResult(
        cards=normalized,
        total_pages=1,
        total_cards=len(normalized),
        expected_total=len(normalized),
        game_id="pokemon",
        set_id="base-set-pokemon",
        harvested_at=datetime.now(timezone.utc),
    )


# ---------------------------------------------------------------------------
# Test 1: N rows at batch size B -> ceil(N/B) chunks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_chunk_accounting(session_factory, test_settings, fake_sleep) -> None:
    result = await upsert_in_batches(
        session_factory,
        CatalogGroup,
        _group_rows(5),
        conflict_cols=["group_id"],
        batch_size=2,
        cfg=test_settings,
        sleep=fake_sleep,
    )

    assert result.batches_total == 3
    assert result.batches_committed == 3
    assert result.committed == 5
    assert await _count(session_factory, CatalogGroup) == 5


# ---------------------------------------------------------------------------
# Test 2: Re-running updates in place; duplicate keys collapse (last wins)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_idempotent_and_collapses(session_factory, test_settings, fake_sleep) -> None:
    await upsert_in_batches(
        session_factory, CatalogGroup, _group_rows(3), conflict_cols=["group_id"],
        cfg=test_settings, sleep=fake_sleep,
    )
    rows = _group_rows(3, name_prefix="Renamed") + [
        {"group_id": 2, "category_id": 3, "game_id": "pokemon", "name": "Last Wins"}
    ]
    result = await upsert_in_batches(
        session_factory, CatalogGroup, rows, conflict_cols=["group_id"],
        cfg=test_settings, sleep=fake_sleep,
    )

    assert result.total == 3
    assert await _count(session_factory, CatalogGroup) == 3
    async with session_factory() as session:
        names = dict((await session.execute(select(CatalogGroup.group_id, CatalogGroup.name))).all())
    assert names == {1: "Renamed 1", 2: "Last Wins", 3: "Renamed 3"}


# ---------------------------------------------------------------------------
# Test 3: Failure in chunk k reports (k-1)*B committed
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_chunk_aborts_run(session_factory, test_settings, fake_sleep) -> None:
    rows = _group_rows(5)
    rows[2]["name"] = None  # NOT NULL violation in chunk 2

    with pytest.raises(PersistenceError) as exc_info:
        await upsert_in_batches(
            session_factory, CatalogGroup, rows, conflict_cols=["group_id"],
            batch_size=2, cfg=test_settings, sleep=fake_sleep,
        )

    result = exc_info.value.result
    assert result.failed_batch == 2
    assert result.committed == 2
    assert exc_info.value.committed == 2
    assert exc_info.value.status == 500
    assert fake_sleep.calls == []
    assert await _count(session_factory, CatalogGroup) == 2


# ---------------------------------------------------------------------------
# Test 4: Transient errors are retried
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transient_error_retried(session_factory, test_settings, fake_sleep) -> None:
    opened = {"count": 0}

    def flaky_factory():
        opened["count"] += 1
        if opened["count"] == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return session_factory()

    result = await upsert_in_batches(
        flaky_factory, CatalogGroup, _group_rows(2), conflict_cols=["group_id"],
        cfg=test_settings, sleep=fake_sleep,
    )

    assert result.committed == 2
    assert len(fake_sleep.calls) == 1


# ---------------------------------------------------------------------------
# Test 5: Empty input is a no-op
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_empty(session_factory, test_settings) -> None:
    result = await upsert_in_batches(
        session_factory, CatalogGroup, [], conflict_cols=["group_id"], cfg=test_settings
    )
    assert result.committed == 0
    assert result.batches_total == 0


# ---------------------------------------------------------------------------
# Test 6: Harvested set persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_harvested_set(session_factory, test_settings, fake_sleep, card_factory) -> None:
    harvest = _harvest(
        card_factory,
        [
            card_factory("c1", number="1/102", tcgplayer_id="100"),
            card_factory(
                "c2",
                variants=[
                    {"printing": "Holofoil", "condition": "Near Mint", "price": "20.00"},
                    {"printing": "Holofoil", "condition": "Damaged", "price": "3.00"},
                ],
            ),
        ],
    )

    result = await sync_harvested_set(session_factory, harvest, cfg=test_settings, sleep=fake_sleep)

    assert result.cards_upserted == 2
    assert result.prices_upserted == 3
    assert result.history_appended == 3

    async with session_factory() as session:
        card_set = (await session.execute(select(CardSet))).scalar_one()
        game = await session.get(Game, "pokemon")
        card = (await session.execute(select(Card).where(Card.external_id == "c1"))).scalar_one()

    assert card_set.sync_status == SyncStatus.COMPLETED.value
    assert card_set.cards_synced_count == 2
    assert card_set.name == "Base Set"
    assert card_set.total_cards == 2
    assert game.cards_count == 2
    assert game.sets_count == 1
    assert card.tcgplayer_id == "100"
    assert card.set_id == card_set.id

    # Second sync: prices upserted in place, history appended
    await sync_harvested_set(session_factory, harvest, cfg=test_settings, sleep=fake_sleep)
    assert await _count(session_factory, Card) == 2
    assert await _count(session_factory, CardPrice) == 3
    assert await _count(session_factory, CardPriceHistory) == 6


# ---------------------------------------------------------------------------
# Test 7: A partial harvest completes with its shortfall recorded
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_partial_harvest_records_sync_error(
    session_factory, test_settings, fake_sleep, card_factory
) -> None:
    full = _harvest(card_factory, [card_factory("c1"), card_factory("c2")])
    partial = full.model_copy(
        update={
            "expected_total": 5,
            "partial": True,
            "warnings": ["partial_harvest: offset 20 failed with 503"],
        }
    )

    result = await sync_harvested_set(session_factory, partial, cfg=test_settings, sleep=fake_sleep)

    assert result.partial is True
    async with session_factory() as session:
        card_set = (await session.execute(select(CardSet))).scalar_one()
    assert card_set.sync_status == SyncStatus.COMPLETED.value
    assert card_set.cards_synced_count == 2
    assert card_set.total_cards == 5
    assert card_set.last_sync_error == "partial_harvest: offset 20 failed with 503"

    # A later full harvest clears the note
    await sync_harvested_set(session_factory, full, cfg=test_settings, sleep=fake_sleep)
    async with session_factory() as session:
        card_set = (await session.execute(select(CardSet))).scalar_one()
    assert card_set.last_sync_error is None
    assert card_set.total_cards == 2


# ---------------------------------------------------------------------------
# Test 8: wipe_catalog only touches the given game
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_wipe_catalog(session_factory, test_settings, fake_sleep) -> None:
    await upsert_in_batches(
        session_factory, CatalogGroup, _group_rows(2), conflict_cols=["group_id"],
        cfg=test_settings, sleep=fake_sleep,
    )
    await upsert_catalog_products(
        session_factory,
        [
            CatalogProductRecord(product_id=1, group_id=1, category_id=3, game_id="pokemon", name="A"),
            CatalogProductRecord(product_id=2, group_id=1, category_id=3, game_id="pokemon", name="B"),
            CatalogProductRecord(product_id=3, group_id=9, category_id=1, game_id="mtg", name="C"),
        ],
        cfg=test_settings,
        sleep=fake_sleep,
    )

    products_deleted, groups_deleted = await wipe_catalog(session_factory, "pokemon")

    assert (products_deleted, groups_deleted) == (2, 2)
    assert await _count(session_factory, CatalogProduct) == 1
    assert await _count(session_factory, CatalogGroup) == 0


# ---------------------------------------------------------------------------
# Test 9: Games upsert refreshes names and leaves counts alone
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_games(session_factory, test_settings, fake_sleep) -> None:
    async with session_factory() as session:
        session.add(Game(id="pokemon", name="Pokemon", sets_count=4, cards_count=400))
        await session.commit()

    result = await upsert_games(
        session_factory,
        [
            GameRecord(id="pokemon", name="Pokémon", sets_count=190, cards_count=21000),
            GameRecord(id="mtg", name="Magic: The Gathering", sets_count=300),
        ],
        cfg=test_settings,
        sleep=fake_sleep,
    )

    assert result.committed == 2
    async with session_factory() as session:
        pokemon = await session.get(Game, "pokemon")
        mtg = await session.get(Game, "mtg")
    assert pokemon.name == "Pokémon"
    assert (pokemon.sets_count, pokemon.cards_count) == (4, 400)
    assert (mtg.sets_count, mtg.cards_count) == (0, 0)


# ---------------------------------------------------------------------------
# Test 10: Set list sync keeps the status of sets already harvested
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_game_sets(session_factory, test_settings, fake_sleep, card_factory) -> None:
    await sync_harvested_set(
        session_factory,
        _harvest(card_factory, [card_factory("c1")]),
        cfg=test_settings,
        sleep=fake_sleep,
    )

    result = await sync_game_sets(
        session_factory,
        "pokemon",
        [
            SetRecord(external_id="base-set-pokemon", name="Base Set", code="BS", total_cards=102),
            SetRecord(external_id="jungle-pokemon", name="Jungle", release_date="1999-06-16"),
        ],
        cfg=test_settings,
        sleep=fake_sleep,
    )

    assert result.sets_upserted == 2
    assert result.sets_stored == 2
    async with session_factory() as session:
        sets = {
            s.external_id: s
            for s in (await session.execute(select(CardSet))).scalars().all()
        }
        game = await session.get(Game, "pokemon")

    base, jungle = sets["base-set-pokemon"], sets["jungle-pokemon"]
    assert base.sync_status == SyncStatus.COMPLETED.value
    assert base.cards_synced_count == 1
    assert base.code == "BS"
    assert base.total_cards == 102
    assert jungle.sync_status == SyncStatus.NOT_STARTED.value
    assert jungle.cards_synced_count == 0
    assert game.sets_count == 2
    assert game.cards_count == 1


@pytest.mark.asyncio
async def test_sync_game_sets_creates_missing_game(session_factory, test_settings, fake_sleep) -> None:
    await sync_game_sets(
        session_factory,
        "one-piece-card-game",
        [SetRecord(external_id="op01", name="Romance Dawn")],
        cfg=test_settings,
        sleep=fake_sleep,
    )

    async with session_factory() as session:
        game = await session.get(Game, "one-piece-card-game")
    assert game is not None
    assert game.sets_count == 1


# ---------------------------------------------------------------------------
# Test 11: Categories are staged and games without one get linked
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_categories_link_games(session_factory, test_settings, fake_sleep) -> None:
    async with session_factory() as session:
        session.add_all([
            Game(id="pokemon", name="Pokemon"),
            Game(id="mtg", name="Magic: The Gathering"),
            Game(id="disney-lorcana", name="Disney Lorcana", catalog_category_id=71),
            Game(id="digimon", name="Digimon"),
        ])
        await session.commit()

    categories = [
        CatalogCategoryRecord(category_id=1, name="Magic", display_name="Magic: The Gathering"),
        CatalogCategoryRecord(category_id=3, name="Pokemon"),
        CatalogCategoryRecord(category_id=71, name="Lorcana TCG", display_name="Disney Lorcana"),
        CatalogCategoryRecord(category_id=63, name="Digimon"),
        CatalogCategoryRecord(category_id=64, name="Digimon Card Game", display_name="Digimon"),
    ]
    result = await upsert_catalog_categories(
        session_factory, categories, cfg=test_settings, sleep=fake_sleep
    )
    linked = await link_game_categories(session_factory, categories)

    assert result.committed == 5
    assert await _count(session_factory, CatalogCategory) == 5
    assert linked == {"mtg": 1, "pokemon": 3}

    async with session_factory() as session:
        digimon = await session.get(Game, "digimon")
        lorcana = await session.get(Game, "disney-lorcana")
    assert digimon.catalog_category_id is None
    assert lorcana.catalog_category_id == 71
