"""
Tests for the pipeline entry points (cardsync/pipeline/operations.py).

Covers:
- Input validation (400, one error log entry, no network call)
- Harvest / sync set envelopes and sync log lifecycle
- Upstream status propagation
- Catalog sync: per-group failures, background mode, unknown category
- Run-match, card lookup and log queries
- Games, sets and catalog category discovery
- Exception -> envelope mapping
"""

from __future__ import annotations

import httpx
import pytest
import respx
from sqlalchemy import select

from cardsync.errors import NotFoundError, PersistenceError, UpstreamError
from cardsync.models import CardSet, Game
from cardsync.pipeline.operations import (
    _to_result,
    harvest_full_set,
    lookup_card_variants,
    open_context,
    query_sync_logs,
    run_match,
    sync_catalog_categories,
    sync_catalog_for_game,
    sync_full_set,
    sync_games,
    sync_sets_for_game,
)
from cardsync.pipeline.persistence import BatchResult


@pytest.fixture
async def ctx(test_settings, session_factory, fake_sleep):
    async with open_context(test_settings, session_factory, sleep=fake_sleep) as context:
        yield context


async def _statuses(ctx, operation_id: str) -> list[str]:
    return [entry.status for entry in await ctx.log_store.query(operation_id)]


# ---------------------------------------------------------------------------
# Test 1: Validation failures never reach the network
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"game_id": "", "set_id": "base"},
        {"game_id": "pokemon", "set_id": " "},
        {"game_id": "pokemon", "set_id": "base", "page_size": 500},
        {"game_id": "pokemon", "set_id": "base", "order": "sideways"},
    ],
)
async def test_harvest_validation(ctx, test_settings, kwargs) -> None:
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL, assert_all_called=False) as mock:
        route = mock.get("/cards").mock(return_value=httpx.Response(200, json={"data": []}))
        result = await harvest_full_set(ctx, **kwargs)

    assert result.success is False
    assert result.status == 400
    assert route.call_count == 0
    assert await _statuses(ctx, result.operation_id) == ["error"]


# ---------------------------------------------------------------------------
# Test 2: Harvest returns cards and writes started + success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_harvest_full_set(ctx, test_settings, card_factory, page_factory) -> None:
    cards = [card_factory(f"c{i}") for i in range(3)]
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/cards").mock(return_value=httpx.Response(200, json=page_factory(cards, total=3)))
        result = await harvest_full_set(ctx, "Pokemon-TCG", "base-set-pokemon")

    assert result.success is True
    assert result.status == 200
    assert result.data["totalCards"] == 3
    assert result.data["totalPages"] == 1
    assert result.data["expectedTotal"] == 3
    assert result.data["gameId"] == "pokemon"
    assert result.data["hitPageCap"] is False
    assert [c["id"] for c in result.data["cards"]] == ["c0", "c1", "c2"]
    assert result.data["validation"]["is_valid"] is True
    assert await _statuses(ctx, result.operation_id) == ["success", "started"]


# ---------------------------------------------------------------------------
# Test 3: Empty harvest is a success with a warning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_harvest_empty_set_warns(ctx, test_settings, page_factory) -> None:
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/cards").mock(return_value=httpx.Response(200, json=page_factory([], total=0)))
        result = await harvest_full_set(ctx, "pokemon", "nope")

    assert result.success is True
    assert result.data["cards"] == []
    assert "No cards found for set nope" in result.warnings
    assert await _statuses(ctx, result.operation_id) == ["warning", "started"]


# ---------------------------------------------------------------------------
# Test 4: Sync set persists; empty harvest is 404
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_full_set(ctx, test_settings, card_factory, page_factory) -> None:
    cards = [card_factory("c1", tcgplayer_id="10"), card_factory("c2")]
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/cards").mock(return_value=httpx.Response(200, json=page_factory(cards, total=2)))
        result = await sync_full_set(ctx, "pokemon", "base-set-pokemon")

    assert result.success is True
    assert result.data["cardsUpserted"] == 2
    assert result.data["pricesUpserted"] == 2
    assert result.data["historyAppended"] == 2
    assert result.data["externalSetId"] == "base-set-pokemon"


@pytest.mark.asyncio
async def test_sync_full_set_empty_is_404(ctx, test_settings, page_factory) -> None:
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/cards").mock(return_value=httpx.Response(200, json=page_factory([])))
        result = await sync_full_set(ctx, "pokemon", "missing-set")

    assert result.success is False
    assert result.status == 404
    assert await _statuses(ctx, result.operation_id) == ["error", "started"]


# ---------------------------------------------------------------------------
# Test 5: Upstream 429 surfaces after retries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_upstream_rate_limit_propagates(ctx, test_settings, fake_sleep) -> None:
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        route = mock.get("/cards").mock(return_value=httpx.Response(429, text="slow down"))
        result = await harvest_full_set(ctx, "pokemon", "base-set-pokemon")

    assert result.success is False
    assert result.status == 429
    assert result.data["upstreamStatus"] == 429
    assert route.call_count == test_settings.JUSTTCG_MAX_RETRIES + 1
    assert len(fake_sleep.calls) >= test_settings.JUSTTCG_MAX_RETRIES


# ---------------------------------------------------------------------------
# Test 6: Catalog sync continues past a failing group
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_catalog_sync_partial(ctx, test_settings) -> None:
    groups = {"results": [{"groupId": 604, "name": "Base Set"}, {"groupId": 605, "name": "Jungle"}]}
    products = {
        "results": [
            {"productId": 42, "name": "Pikachu", "extendedData": [{"name": "Number", "value": "58/102"}]},
            {"name": "No id"},
        ]
    }
    with respx.mock(base_url=test_settings.TCGCSV_BASE_URL) as mock:
        mock.get("/3/groups").mock(return_value=httpx.Response(200, json=groups))
        mock.get("/3/604/products").mock(return_value=httpx.Response(200, json=products))
        mock.get("/3/605/products").mock(return_value=httpx.Response(500))
        result = await sync_catalog_for_game(ctx, "pokemon", category_id=3)

    assert result.success is True
    assert result.partial is True
    assert result.data["groupsUpserted"] == 2
    assert result.data["productsUpserted"] == 1
    assert result.data["productsSkipped"] == 1
    assert result.data["groupsFailed"] == [605]

    statuses = await _statuses(ctx, result.operation_id)
    assert statuses[0] == "warning"
    assert statuses[-1] == "started"
    assert "progress" in statuses


# ---------------------------------------------------------------------------
# Test 7: Background catalog sync returns 202, outcome lands in the log
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_catalog_sync_background(ctx, test_settings, session_factory) -> None:
    async with session_factory() as session:
        session.add(Game(id="pokemon", name="Pokemon", catalog_category_id=3))
        await session.commit()

    with respx.mock(base_url=test_settings.TCGCSV_BASE_URL) as mock:
        mock.get("/3/groups").mock(
            return_value=httpx.Response(200, json={"results": [{"groupId": 604, "name": "Base Set"}]})
        )
        mock.get("/3/604/products").mock(
            return_value=httpx.Response(200, json={"results": [{"productId": 42, "name": "Pikachu"}]})
        )
        accepted = await sync_catalog_for_game(ctx, "pokemon", background=True)
        assert accepted.status == 202
        assert accepted.data["accepted"] is True
        await ctx.background.drain()

    assert ctx.background.active == []
    logs = await query_sync_logs(ctx, accepted.operation_id)
    terminal = logs.data["logs"][0]
    assert terminal["status"] == "success"
    assert terminal["details"]["data"]["productsUpserted"] == 1


# ---------------------------------------------------------------------------
# Test 8: Unknown category for the game -> 404
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_catalog_sync_unknown_game(ctx) -> None:
    result = await sync_catalog_for_game(ctx, "unknown-game")

    assert result.success is False
    assert result.status == 404
    assert await _statuses(ctx, result.operation_id) == ["error", "started"]

    rejected = await sync_catalog_for_game(ctx, "pokemon", category_id=0)
    assert rejected.status == 400


# ---------------------------------------------------------------------------
# Test 9: Run-match validation and empty-catalog warning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_match(ctx) -> None:
    rejected = await run_match(ctx, "pokemon", match_type="everything")
    assert rejected.status == 400

    result = await run_match(ctx, "pokemon")
    assert result.success is True
    assert result.data["dryRun"] is True
    assert result.data["groupMatching"]["considered"] == 0
    assert result.data["productMatching"]["considered"] == 0
    assert result.warnings


# ---------------------------------------------------------------------------
# Test 10: Card lookup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lookup_card_variants(ctx, test_settings, card_factory, page_factory) -> None:
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        route = mock.get("/cards").mock(
            return_value=httpx.Response(200, json=page_factory([card_factory("c1", tcgplayer_id="555")]))
        )
        result = await lookup_card_variants(ctx, {"tcgplayer_id": "555", "name": "ignored"})

    assert result.success is True
    assert result.data["count"] == 1
    assert route.calls.last.request.url.params["tcgplayerId"] == "555"
    assert "name" not in route.calls.last.request.url.params

    rejected = await lookup_card_variants(ctx, name="Pikachu")
    assert rejected.status == 400


# ---------------------------------------------------------------------------
# Test 11: Log queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_query_sync_logs(ctx) -> None:
    assert (await query_sync_logs(ctx, limit=0)).status == 400
    assert (await query_sync_logs(ctx, limit=5000)).status == 400

    await run_match(ctx, "pokemon", match_type="bogus")
    await run_match(ctx, "pokemon", match_type="bogus")
    await run_match(ctx, "pokemon", match_type="bogus")

    result = await query_sync_logs(ctx, limit=2)
    assert result.success is True
    logs = result.data["logs"]
    assert len(logs) == 2
    assert logs[0]["id"] > logs[1]["id"]


# ---------------------------------------------------------------------------
# Test 12: Exception -> envelope mapping
# ---------------------------------------------------------------------------


def test_to_result_mapping() -> None:
    network = _to_result(UpstreamError("timed out", status=0, url="https://x.test"), "op")
    assert network.status == 502
    assert network.data["upstreamStatus"] == 0

    persisted = _to_result(
        PersistenceError("chunk 3 failed", BatchResult(table="cards", total=10, committed=4)), "op"
    )
    assert persisted.status == 500
    assert persisted.partial is True
    assert persisted.data == {"committed": 4, "total": 10, "table": "cards"}

    assert _to_result(NotFoundError("nothing"), "op").status == 404

    crashed = _to_result(ValueError("boom"), "op")
    assert crashed.status == 500
    assert crashed.error == "Internal error: ValueError: boom"


# ---------------------------------------------------------------------------
# Test 13: Games and set lists are stored; new sets start not_started
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_games_then_sets(ctx, test_settings, session_factory) -> None:
    games = {"data": [{"id": "pokemon", "name": "Pokemon", "sets_count": 2, "cards_count": 166}]}
    sets = {
        "data": [
            {"id": "base-set-pokemon", "name": "Base Set", "cards_count": 102},
            {"id": "jungle-pokemon", "name": "Jungle", "cards_count": 64},
        ]
    }
    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/games").mock(return_value=httpx.Response(200, json=games))
        sets_route = mock.get("/sets").mock(return_value=httpx.Response(200, json=sets))
        games_result = await sync_games(ctx)
        sets_result = await sync_sets_for_game(ctx, "pokemon")

    assert games_result.success is True
    assert games_result.data["gamesUpserted"] == 1
    assert sets_result.success is True
    assert sets_result.data["setsUpserted"] == 2
    assert sets_result.data["setsStored"] == 2
    assert sets_route.calls.last.request.url.params["game"] == "pokemon"
    assert await _statuses(ctx, sets_result.operation_id) == ["success", "started"]

    async with session_factory() as session:
        game = await session.get(Game, "pokemon")
        stored = (await session.execute(select(CardSet).order_by(CardSet.external_id))).scalars().all()
    assert game.sets_count == 2
    assert [(s.external_id, s.sync_status, s.total_cards) for s in stored] == [
        ("base-set-pokemon", "not_started", 102),
        ("jungle-pokemon", "not_started", 64),
    ]


@pytest.mark.asyncio
async def test_sync_sets_validation_and_empty_list(ctx, test_settings) -> None:
    rejected = await sync_sets_for_game(ctx, " ")
    assert rejected.status == 400
    assert await _statuses(ctx, rejected.operation_id) == ["error"]

    with respx.mock(base_url=test_settings.JUSTTCG_BASE_URL) as mock:
        mock.get("/sets").mock(return_value=httpx.Response(200, json={"sets": []}))
        result = await sync_sets_for_game(ctx, "pokemon")

    assert result.success is True
    assert result.data["setsUpserted"] == 0
    assert result.warnings == ["No sets found for game pokemon"]
    assert await _statuses(ctx, result.operation_id) == ["warning", "started"]


# ---------------------------------------------------------------------------
# Test 14: Category sync stages categories and links a stored game
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_catalog_categories(ctx, test_settings, session_factory) -> None:
    async with session_factory() as session:
        session.add(Game(id="pokemon", name="Pokemon"))
        await session.commit()

    payload = {
        "results": [
            {"categoryId": 3, "name": "Pokemon", "displayName": "Pokemon"},
            {"categoryId": 1, "name": "Magic", "displayName": "Magic: The Gathering"},
            {"displayName": "no id"},
        ]
    }
    with respx.mock(base_url=test_settings.TCGCSV_BASE_URL) as mock:
        mock.get("/categories").mock(return_value=httpx.Response(200, json=payload))
        result = await sync_catalog_categories(ctx)

    assert result.success is True
    assert result.data["categoriesUpserted"] == 2
    assert result.data["categoriesSkipped"] == 1
    assert result.data["gamesLinked"] == {"pokemon": 3}

    async with session_factory() as session:
        game = await session.get(Game, "pokemon")
    assert game.catalog_category_id == 3


@pytest.mark.asyncio
async def test_sync_catalog_categories_empty_writes_nothing(ctx, test_settings) -> None:
    with respx.mock(base_url=test_settings.TCGCSV_BASE_URL) as mock:
        mock.get("/categories").mock(return_value=httpx.Response(200, json={"results": []}))
        result = await sync_catalog_categories(ctx)

    assert result.success is True
    assert result.data["categoriesUpserted"] == 0
    assert result.warnings
    assert await _statuses(ctx, result.operation_id) == ["warning", "started"]
