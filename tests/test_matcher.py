"""
Tests for the reconciliation matcher (cardsync/engine/matcher.py).

Covers:
- Group scoring: exact name, code, similarity; ambiguous and low-confidence
- Card resolution: exact id > number match > name similarity, tie handling
- DB-backed runs: dry run writes nothing, real run applies, only_unmapped
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from cardsync.config import GroupMatchMethod, MatchMethod, MatchType
from cardsync.engine import ReconciliationMatcher, match_card, match_groups_to_sets, score_group
from cardsync.engine.matcher import CardCandidate, GroupCandidate, ProductCandidate, SetCandidate
from cardsync.models import Card, CardSet, CatalogGroup, CatalogProduct, Game, MatchRecord


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        session.add(Game(id="pokemon", name="Pokemon", catalog_category_id=3))
        await session.flush()
        session.add_all([
            CardSet(id="set-base", game_id="pokemon", external_id="base-set-pokemon", name="Base Set", code="BS"),
            CardSet(id="set-jungle", game_id="pokemon", external_id="jungle-pokemon", name="Jungle", code="JU"),
        ])
        await session.flush()
        session.add_all([
            Card(id="c1", external_id="pikachu", set_id="set-base", game_id="pokemon",
                 name="Pikachu", number="58/102"),
            Card(id="c2", external_id="charizard", set_id="set-base", game_id="pokemon",
                 name="Charizard", number="4/102", tcgplayer_id="4242"),
            Card(id="c3", external_id="mew", set_id="set-base", game_id="pokemon",
                 name="Mew", number="8"),
            Card(id="c4", external_id="snorlax", set_id="set-jungle", game_id="pokemon",
                 name="Snorlax", number="27/64"),
            CatalogGroup(group_id=604, category_id=3, game_id="pokemon", name="Base Set", abbreviation="BS"),
            CatalogGroup(group_id=605, category_id=3, game_id="pokemon", name="Jungle", abbreviation="JU"),
            CatalogGroup(group_id=700, category_id=3, game_id="pokemon", name="Fossil", abbreviation="FO"),
            CatalogProduct(product_id=42, group_id=604, category_id=3, game_id="pokemon",
                           name="Pikachu", number="058/102", url="https://tcg.test/p/42"),
            CatalogProduct(product_id=4242, group_id=604, category_id=3, game_id="pokemon",
                           name="Charizard", number="004/102", url="https://tcg.test/p/4242",
                           image_url="https://cdn.test/4242_400w.jpg"),
            CatalogProduct(product_id=5000, group_id=605, category_id=3, game_id="pokemon",
                           name="Snorlax", number="027/064"),
        ])
        await session.commit()


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Test 1: Group scoring tiers
# ---------------------------------------------------------------------------


def test_score_group_tiers() -> None:
    assert score_group(SetCandidate("s", "Base Set"), GroupCandidate(1, "Base")) == (
        1.0,
        GroupMatchMethod.EXACT_NAME,
    )
    assert score_group(
        SetCandidate("s", "Jungle Expansion", "JU"), GroupCandidate(2, "Jungle", "JU")
    ) == (0.95, GroupMatchMethod.CODE)

    score, method = score_group(SetCandidate("s", "Neo Genesis"), GroupCandidate(3, "Fossil"))
    assert method == GroupMatchMethod.NAME_SIMILARITY
    assert score < 0.5


# ---------------------------------------------------------------------------
# Test 2: Group assignment needs threshold and margin
# ---------------------------------------------------------------------------


def test_match_groups_statuses() -> None:
    sets = [SetCandidate("a", "Base Set"), SetCandidate("b", "Neo Genesis"), SetCandidate("c", "Jungle")]
    groups = [
        GroupCandidate(604, "Base Set"),
        GroupCandidate(605, "Base"),
        GroupCandidate(606, "Jungle"),
    ]
    matches, errors = match_groups_to_sets(sets, groups, threshold=0.9, margin=0.1)
    by_set = {m.set_id: m for m in matches}

    assert errors == 0
    assert by_set["a"].status == "ambiguous"
    assert by_set["a"].runner_up_score == 1.0
    assert by_set["b"].status == "low_confidence"
    assert by_set["c"].status == "matched"
    assert by_set["c"].group_id == 606

    empty, _ = match_groups_to_sets(sets[:1], [], threshold=0.9, margin=0.1)
    assert empty[0].status == "no_candidates"


# ---------------------------------------------------------------------------
# Test 3: Exact id wins regardless of name scores
# ---------------------------------------------------------------------------


def test_match_card_exact_id(test_settings) -> None:
    card = CardCandidate("c1", "s1", "Pikachu", "58", tcgplayer_id=" 99 ")
    promo = ProductCandidate(99, 1, "Pikachu Promo")
    same_name = ProductCandidate(42, 1, "Pikachu", "058/102")

    match, errors = match_card(
        card,
        exact_index={"99": promo, "42": same_name},
        group_products=[(same_name, 1.0)],
        cfg=test_settings,
    )

    assert errors == 0
    assert match.status == "matched"
    assert match.product_id == 99
    assert match.method == MatchMethod.EXACT_ID
    assert match.confidence == 1.0


# ---------------------------------------------------------------------------
# Test 4: Number match beats a higher name-similarity score
# ---------------------------------------------------------------------------


def test_match_card_number_beats_name(test_settings) -> None:
    card = CardCandidate("c1", "s1", "Pikachu", "58")
    by_name = ProductCandidate(1, 1, "Pikachu", "60")
    by_number = ProductCandidate(2, 1, "Pikachus - 058/102", "058/102")

    match, _ = match_card(
        card,
        exact_index={},
        group_products=[(by_name, 1.0), (by_number, 1.0)],
        cfg=test_settings,
    )

    assert match.status == "matched"
    assert match.product_id == 2
    assert match.method == MatchMethod.NUMBER_MATCH
    assert match.confidence == pytest.approx(0.9 + 0.1 * 7 / 8)


# ---------------------------------------------------------------------------
# Test 5: Ties go to the better parent, otherwise ambiguous
# ---------------------------------------------------------------------------


def test_match_card_ties(test_settings) -> None:
    card = CardCandidate("c1", "s1", "Pikachu")
    first = ProductCandidate(1, 1, "Pikachu")
    second = ProductCandidate(2, 2, "Pikachu")

    tied, _ = match_card(
        card, exact_index={}, group_products=[(first, 1.0), (second, 1.0)], cfg=test_settings
    )
    assert tied.status == "ambiguous"
    assert tied.product_id is None
    assert {c.product_id for c in tied.candidates} == {1, 2}

    parent_wins, _ = match_card(
        card, exact_index={}, group_products=[(first, 0.95), (second, 1.0)], cfg=test_settings
    )
    assert parent_wins.status == "matched"
    assert parent_wins.product_id == 2


# ---------------------------------------------------------------------------
# Test 6: No candidate, and scorer failures are counted
# ---------------------------------------------------------------------------


def test_match_card_no_match_and_errors(test_settings) -> None:
    card = CardCandidate("c3", "s1", "Mew", "8")
    products = [(ProductCandidate(1, 1, "Charizard", "4"), 1.0), (ProductCandidate(2, 1, "Blastoise"), 1.0)]

    match, errors = match_card(card, exact_index={}, group_products=products, cfg=test_settings)
    assert match.status == "no_match"
    assert errors == 0

    def boom(*args, **kwargs):
        raise ValueError("bad row")

    match, errors = match_card(
        card, exact_index={}, group_products=products, cfg=test_settings, scorer=boom
    )
    assert match.status == "no_match"
    assert errors == 2


# ---------------------------------------------------------------------------
# Test 7: Dry run computes the same stats and writes nothing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dry_run_matches_real_run(session_factory, test_settings) -> None:
    await _seed(session_factory)
    matcher = ReconciliationMatcher(session_factory, test_settings)

    dry = await matcher.run("pokemon", "match-dry", dry_run=True)

    assert await _count(session_factory, MatchRecord) == 0
    async with session_factory() as session:
        mapped = await session.scalar(
            select(func.count()).select_from(CardSet).where(CardSet.catalog_group_id.is_not(None))
        )
        stamped = await session.scalar(
            select(func.count()).select_from(Card).where(Card.catalog_product_id.is_not(None))
        )
    assert (mapped, stamped) == (0, 0)

    real = await matcher.run("pokemon", "match-real", dry_run=False)

    for dry_part, real_part in (
        (dry.group_matching, real.group_matching),
        (dry.product_matching, real.product_matching),
    ):
        assert dry_part.model_dump(exclude={"applied"}) == real_part.model_dump(exclude={"applied"})
    assert dry.group_matching.applied == 0
    assert real.group_matching.applied == 2

    products = real.product_matching
    assert products.considered == 4
    assert products.matched == 3
    assert products.no_match == 1
    assert products.by_method == {"number_match": 2, "exact_id": 1}
    assert products.applied == 3


# ---------------------------------------------------------------------------
# Test 8: Real run writes set mappings, MatchRecords and card columns
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_real_run_applies(session_factory, test_settings) -> None:
    await _seed(session_factory)
    await ReconciliationMatcher(session_factory, test_settings).run(
        "pokemon", "match-1", dry_run=False
    )

    async with session_factory() as session:
        base = await session.get(CardSet, "set-base")
        charizard = await session.get(Card, "c2")
        pikachu = await session.get(Card, "c1")
        mew = await session.get(Card, "c3")
        records = (await session.execute(select(MatchRecord))).scalars().all()

    assert base.catalog_group_id == 604
    assert base.catalog_match_method == "exact_name"

    assert charizard.catalog_product_id == 4242
    assert charizard.catalog_match_method == "exact_id"
    assert charizard.product_url == "https://tcg.test/p/4242"
    assert charizard.image_url == "https://cdn.test/4242_400w.jpg"

    assert pikachu.catalog_product_id == 42
    assert pikachu.catalog_match_method == "number_match"
    assert mew.catalog_product_id is None

    assert len(records) == 3
    assert all(r.applied and r.operation_id == "match-1" for r in records)


# ---------------------------------------------------------------------------
# Test 9: only_unmapped skips sets and cards that already have a match
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rerun_only_unmapped(session_factory, test_settings) -> None:
    await _seed(session_factory)
    matcher = ReconciliationMatcher(session_factory, test_settings)
    await matcher.run("pokemon", "match-1", dry_run=False)

    rerun = await matcher.run("pokemon", "match-2", dry_run=False, only_unmapped=True)

    assert rerun.group_matching.considered == 0
    assert rerun.product_matching.considered == 1
    assert rerun.product_matching.no_match == 1
    assert await _count(session_factory, MatchRecord) == 3

    everything = await matcher.run("pokemon", "match-3", dry_run=True, only_unmapped=False)
    assert everything.group_matching.considered == 2
    assert everything.product_matching.considered == 4


# ---------------------------------------------------------------------------
# Test 10: Products without any group mapping -> warning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_products_without_group_mappings(session_factory, test_settings) -> None:
    await _seed(session_factory)

    summary = await ReconciliationMatcher(session_factory, test_settings).run(
        "pokemon", "match-p", dry_run=True, match_type=MatchType.PRODUCTS
    )

    assert summary.group_matching is None
    assert summary.product_matching.considered == 0
    assert summary.product_matching.warnings


# ---------------------------------------------------------------------------
# Test 11: A name-similarity tie is reported as ambiguous and writes nothing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ambiguous_tie_writes_no_record(session_factory, test_settings) -> None:
    async with session_factory() as session:
        session.add(Game(id="pokemon", name="Pokemon", catalog_category_id=3))
        await session.flush()
        session.add(CardSet(id="set-base", game_id="pokemon", external_id="base-set-pokemon",
                            name="Base Set", code="BS"))
        await session.flush()
        session.add_all([
            Card(id="c1", external_id="pikachu", set_id="set-base", game_id="pokemon", name="Pikachu"),
            CatalogGroup(group_id=604, category_id=3, game_id="pokemon", name="Base Set", abbreviation="BS"),
            CatalogProduct(product_id=1, group_id=604, category_id=3, game_id="pokemon", name="Pikachu"),
            CatalogProduct(product_id=2, group_id=604, category_id=3, game_id="pokemon", name="Pikachu"),
        ])
        await session.commit()

    summary = await ReconciliationMatcher(session_factory, test_settings).run(
        "pokemon", "match-tie", dry_run=False
    )

    assert summary.product_matching.ambiguous == 1
    assert summary.product_matching.applied == 0
    tie = summary.product_matching.candidates[0]
    assert tie.status == "ambiguous"
    assert sorted(c.product_id for c in tie.candidates) == [1, 2]

    assert await _count(session_factory, MatchRecord) == 0
    async with session_factory() as session:
        card = await session.get(Card, "c1")
    assert card.catalog_product_id is None
