"""
CardSync — Reconciliation Matcher

Associates internal sets/cards with TCGCSV catalog groups/products.

Two passes, set level first:

1. Group -> Set. Exact normalized name (1.0), then code/abbreviation (0.95),
   then name similarity. Auto-applied only when the best score clears
   GROUP_MATCH_THRESHOLD *and* beats the runner-up by GROUP_MATCH_MARGIN.
2. Product -> Card, restricted to products of the card's matched group
   (exact-id lookups may use any product of the game). Per card:

       unmatched -> exact_id        (confidence 1.0)
                 -> number_match    (0.9 + 0.1 * name similarity)
                 -> name_similarity (similarity score)
                 -> no_match

   Method precedence beats score. Ties within a method go to the candidate
   whose parent group matched with higher confidence; a remaining tie is
   reported as ambiguous and never applied.

Dry runs compute identical statistics but write nothing.
"""

from __future__ import annotations

import math
from collections import Counter, defaultdict
from typing import Any, Callable, NamedTuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import GroupMatchMethod, MatchMethod, MatchType, Settings, settings
from cardsync.models import Card, CardSet, CatalogGroup, CatalogProduct, MatchRecord
from cardsync.models.base import new_uuid
from cardsync.pipeline.persistence import upsert_in_batches
from cardsync.utils.text import (
    normalize_card_name,
    normalize_card_number,
    normalize_set_name,
    normalize_text,
    similarity,
)

logger = structlog.get_logger(__name__)

_METHOD_RANK = {
    MatchMethod.EXACT_ID: 0,
    MatchMethod.NUMBER_MATCH: 1,
    MatchMethod.NAME_SIMILARITY: 2,
}


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class SetCandidate(NamedTuple):
    id: str
    name: str
    code: str | None = None
    catalog_group_id: int | None = None
    catalog_match_confidence: float | None = None


class GroupCandidate(NamedTuple):
    group_id: int
    name: str
    abbreviation: str | None = None


class CardCandidate(NamedTuple):
    id: str
    set_id: str
    name: str
    number: str | None = None
    tcgplayer_id: str | None = None
    image_url: str | None = None


class ProductCandidate(NamedTuple):
    product_id: int
    group_id: int
    name: str
    number: str | None = None
    url: str | None = None
    image_url: str | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class GroupMatch(BaseModel):
    set_id: str
    set_name: str
    group_id: int | None = None
    group_name: str | None = None
    score: float = 0.0
    method: GroupMatchMethod | None = None
    runner_up_score: float | None = None
    status: str = Field(description="matched | ambiguous | low_confidence | no_candidates")


class ScoredCandidate(BaseModel):
    product_id: int
    product_name: str
    method: MatchMethod
    score: float
    name_similarity: float
    parent_confidence: float


class ProductMatch(BaseModel):
    card_id: str
    card_name: str
    status: str = Field(description="matched | ambiguous | no_match")
    product_id: int | None = None
    method: MatchMethod | None = None
    confidence: float | None = None
    candidates: list[ScoredCandidate] = Field(default_factory=list)


class GroupMatchingSummary(BaseModel):
    considered: int = 0
    matched: int = 0
    ambiguous: int = 0
    low_confidence: int = 0
    errors: int = 0
    applied: int = 0
    by_method: dict[str, int] = Field(default_factory=dict)
    candidates: list[GroupMatch] = Field(default_factory=list)


class ProductMatchingSummary(BaseModel):
    considered: int = 0
    matched: int = 0
    ambiguous: int = 0
    no_match: int = 0
    errors: int = 0
    applied: int = 0
    by_method: dict[str, int] = Field(default_factory=dict)
    candidates: list[ProductMatch] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class MatchSummary(BaseModel):
    operation_id: str
    game_id: str
    dry_run: bool
    only_unmapped: bool
    group_matching: GroupMatchingSummary | None = None
    product_matching: ProductMatchingSummary | None = None


# ---------------------------------------------------------------------------
# Scoring (pure)
# ---------------------------------------------------------------------------


def score_group(card_set: SetCandidate, group: GroupCandidate) -> tuple[float, GroupMatchMethod]:
    set_name = normalize_set_name(card_set.name)
    group_name = normalize_set_name(group.name)
    if set_name and set_name == group_name:
        return 1.0, GroupMatchMethod.EXACT_NAME
    if card_set.code and group.abbreviation and (
        normalize_text(card_set.code) == normalize_text(group.abbreviation)
    ):
        return 0.95, GroupMatchMethod.CODE
    return similarity(set_name, group_name), GroupMatchMethod.NAME_SIMILARITY


def match_groups_to_sets(
    sets: list[SetCandidate],
    groups: list[GroupCandidate],
    *,
    threshold: float,
    margin: float,
    scorer: Callable[[SetCandidate, GroupCandidate], tuple[float, GroupMatchMethod]] = score_group,
) -> tuple[list[GroupMatch], int]:
    """Returns (one GroupMatch per set, pair-scoring error count)."""
    results: list[GroupMatch] = []
    errors = 0

    for card_set in sets:
        scored: list[tuple[float, GroupMatchMethod, GroupCandidate]] = []
        for group in groups:
            try:
                score, method = scorer(card_set, group)
            except Exception as e:
                errors += 1
                logger.warning(
                    "match_pair_failed",
                    stage="groups",
                    set_id=card_set.id,
                    group_id=group.group_id,
                    error=str(e),
                )
                continue
            scored.append((score, method, group))

        if not scored:
            results.append(GroupMatch(set_id=card_set.id, set_name=card_set.name, status="no_candidates"))
            continue

        scored.sort(key=lambda item: item[0], reverse=True)
        best_score, best_method, best_group = scored[0]
        runner_up = scored[1][0] if len(scored) > 1 else None

        if best_score >= threshold and (runner_up is None or best_score - runner_up > margin):
            status = "matched"
        elif best_score >= threshold:
            status = "ambiguous"
        else:
            status = "low_confidence"

        results.append(
            GroupMatch(
                set_id=card_set.id,
                set_name=card_set.name,
                group_id=best_group.group_id,
                group_name=best_group.name,
                score=round(best_score, 4),
                method=best_method,
                runner_up_score=round(runner_up, 4) if runner_up is not None else None,
                status=status,
            )
        )
    return results, errors


def score_product(
    card: CardCandidate,
    product: ProductCandidate,
    *,
    parent_confidence: float,
    cfg: Settings = settings,
) -> ScoredCandidate | None:
    """Number match (with a name floor) first, then pure name similarity."""
    name_sim = similarity(normalize_card_name(card.name), normalize_card_name(product.name))
    card_no = normalize_card_number(card.number)
    product_no = normalize_card_number(product.number)

    if card_no and card_no == product_no and name_sim >= cfg.NUMBER_MATCH_MIN_NAME_SIMILARITY:
        method, score = MatchMethod.NUMBER_MATCH, 0.9 + 0.1 * name_sim
    elif name_sim >= cfg.NAME_MATCH_THRESHOLD:
        method, score = MatchMethod.NAME_SIMILARITY, name_sim
    else:
        return None

    return ScoredCandidate(
        product_id=product.product_id,
        product_name=product.name,
        method=method,
        score=round(score, 6),
        name_similarity=round(name_sim, 6),
        parent_confidence=parent_confidence,
    )


def match_card(
    card: CardCandidate,
    *,
    exact_index: dict[str, ProductCandidate],
    group_products: list[tuple[ProductCandidate, float]],
    cfg: Settings = settings,
    scorer: Callable[..., ScoredCandidate | None] = score_product,
) -> tuple[ProductMatch, int]:
    """Resolve one card. Returns (ProductMatch, pair-scoring error count)."""
    if card.tcgplayer_id:
        product = exact_index.get(str(card.tcgplayer_id).strip())
        if product is not None:
            exact = ScoredCandidate(
                product_id=product.product_id,
                product_name=product.name,
                method=MatchMethod.EXACT_ID,
                score=1.0,
                name_similarity=similarity(
                    normalize_card_name(card.name), normalize_card_name(product.name)
                ),
                parent_confidence=1.0,
            )
            return ProductMatch(
                card_id=card.id,
                card_name=card.name,
                status="matched",
                product_id=product.product_id,
                method=MatchMethod.EXACT_ID,
                confidence=1.0,
                candidates=[exact],
            ), 0

    errors = 0
    scored: list[ScoredCandidate] = []
    for product, parent_confidence in group_products:
        try:
            candidate = scorer(card, product, parent_confidence=parent_confidence, cfg=cfg)
        except Exception as e:
            errors += 1
            logger.warning(
                "match_pair_failed",
                stage="products",
                card_id=card.id,
                product_id=product.product_id,
                error=str(e),
            )
            continue
        if candidate is not None:
            scored.append(candidate)

    if not scored:
        return ProductMatch(card_id=card.id, card_name=card.name, status="no_match"), errors

    best_rank = min(_METHOD_RANK[c.method] for c in scored)
    pool = [c for c in scored if _METHOD_RANK[c.method] == best_rank]
    top_score = max(c.score for c in pool)
    pool = [c for c in pool if math.isclose(c.score, top_score, abs_tol=1e-9)]
    top_parent = max(c.parent_confidence for c in pool)
    pool = [c for c in pool if math.isclose(c.parent_confidence, top_parent, abs_tol=1e-9)]

    ranked = sorted(scored, key=lambda c: (_METHOD_RANK[c.method], -c.score))[:5]
    if len(pool) > 1:
        return ProductMatch(
            card_id=card.id,
            card_name=card.name,
            status="ambiguous",
            method=pool[0].method,
            confidence=pool[0].score,
            candidates=pool,
        ), errors

    winner = pool[0]
    return ProductMatch(
        card_id=card.id,
        card_name=card.name,
        status="matched",
        product_id=winner.product_id,
        method=winner.method,
        confidence=winner.score,
        candidates=ranked,
    ), errors


# ---------------------------------------------------------------------------
# Matcher (DB-backed)
# ---------------------------------------------------------------------------


class ReconciliationMatcher:
    """
    Loads sets/cards and staged catalog rows for one game, matches them and
    (unless dry_run) writes set mappings, MatchRecords and card columns.

    Usage:
        matcher = ReconciliationMatcher(session_factory)
        summary = await matcher.run("pokemon", operation_id, dry_run=True)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cfg: Settings = settings,
    ):
        self._session_factory = session_factory
        self._cfg = cfg

    async def run(
        self,
        game_id: str,
        operation_id: str,
        *,
        dry_run: bool = True,
        only_unmapped: bool = True,
        match_type: MatchType = MatchType.BOTH,
    ) -> MatchSummary:
        summary = MatchSummary(
            operation_id=operation_id,
            game_id=game_id,
            dry_run=dry_run,
            only_unmapped=only_unmapped,
        )
        # set_id -> (group_id, confidence); this run's matches overlay stored ones
        group_map = await self._stored_group_map(game_id)

        if match_type in (MatchType.GROUPS, MatchType.BOTH):
            summary.group_matching = await self._run_groups(
                game_id, dry_run=dry_run, only_unmapped=only_unmapped, group_map=group_map
            )
        if match_type in (MatchType.PRODUCTS, MatchType.BOTH):
            summary.product_matching = await self._run_products(
                game_id,
                operation_id,
                dry_run=dry_run,
                only_unmapped=only_unmapped,
                group_map=group_map,
            )
        return summary

    async def _stored_group_map(self, game_id: str) -> dict[str, tuple[int, float]]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(CardSet.id, CardSet.catalog_group_id, CardSet.catalog_match_confidence).where(
                    CardSet.game_id == game_id, CardSet.catalog_group_id.is_not(None)
                )
            )
            return {
                set_id: (group_id, confidence if confidence is not None else 1.0)
                for set_id, group_id, confidence in rows.all()
            }

    # -----------------------------------------------------------------------
    # Groups -> Sets
    # -----------------------------------------------------------------------

    async def _run_groups(
        self,
        game_id: str,
        *,
        dry_run: bool,
        only_unmapped: bool,
        group_map: dict[str, tuple[int, float]],
    ) -> GroupMatchingSummary:
        async with self._session_factory() as session:
            set_stmt = select(CardSet).where(CardSet.game_id == game_id)
            if only_unmapped:
                set_stmt = set_stmt.where(CardSet.catalog_group_id.is_(None))
            sets = [
                SetCandidate(s.id, s.name, s.code, s.catalog_group_id, s.catalog_match_confidence)
                for s in (await session.execute(set_stmt)).scalars().all()
            ]
            groups = [
                GroupCandidate(g.group_id, g.name, g.abbreviation)
                for g in (
                    await session.execute(
                        select(CatalogGroup).where(CatalogGroup.game_id == game_id)
                    )
                ).scalars().all()
            ]

        matches, errors = match_groups_to_sets(
            sets,
            groups,
            threshold=self._cfg.GROUP_MATCH_THRESHOLD,
            margin=self._cfg.GROUP_MATCH_MARGIN,
        )

        statuses = Counter(m.status for m in matches)
        matched = [m for m in matches if m.status == "matched"]
        result = GroupMatchingSummary(
            considered=len(sets),
            matched=len(matched),
            ambiguous=statuses["ambiguous"],
            low_confidence=statuses["low_confidence"],
            errors=errors,
            by_method=dict(Counter(m.method.value for m in matched if m.method)),
            candidates=matches[: self._cfg.MATCH_CANDIDATE_LIMIT],
        )
        for m in matched:
            group_map[m.set_id] = (m.group_id, m.score)

        if not dry_run and matched:
            async with self._session_factory() as session:
                for m in matched:
                    await session.execute(
                        update(CardSet)
                        .where(CardSet.id == m.set_id)
                        .values(
                            catalog_group_id=m.group_id,
                            catalog_match_confidence=m.score,
                            catalog_match_method=m.method.value if m.method else None,
                        )
                    )
                await session.commit()
            result.applied = len(matched)

        logger.info(
            "match_groups_complete",
            game_id=game_id,
            dry_run=dry_run,
            considered=result.considered,
            matched=result.matched,
            ambiguous=result.ambiguous,
            low_confidence=result.low_confidence,
            errors=errors,
        )
        return result

    # -----------------------------------------------------------------------
    # Products -> Cards
    # -----------------------------------------------------------------------

    async def _run_products(
        self,
        game_id: str,
        operation_id: str,
        *,
        dry_run: bool,
        only_unmapped: bool,
        group_map: dict[str, tuple[int, float]],
    ) -> ProductMatchingSummary:
        result = ProductMatchingSummary()
        if not group_map:
            result.warnings.append("No sets are mapped to catalog groups; run group matching first")
            logger.warning("match_products_no_group_mappings", game_id=game_id)
            return result

        async with self._session_factory() as session:
            card_stmt = select(Card).where(Card.set_id.in_(list(group_map)))
            if only_unmapped:
                card_stmt = card_stmt.where(
                    ~select(MatchRecord.id)
                    .where(MatchRecord.card_id == Card.id, MatchRecord.applied.is_(True))
                    .exists()
                )
            cards = [
                CardCandidate(c.id, c.set_id, c.name, c.number, c.tcgplayer_id, c.image_url)
                for c in (await session.execute(card_stmt)).scalars().all()
            ]
            products = [
                ProductCandidate(p.product_id, p.group_id, p.name, p.number, p.url, p.image_url)
                for p in (
                    await session.execute(
                        select(CatalogProduct).where(CatalogProduct.game_id == game_id)
                    )
                ).scalars().all()
            ]

        exact_index = {str(p.product_id): p for p in products}
        by_group: dict[int, list[ProductCandidate]] = defaultdict(list)
        for product in products:
            by_group[product.group_id].append(product)

        matches: list[ProductMatch] = []
        for card in cards:
            group_id, group_confidence = group_map[card.set_id]
            match, errors = match_card(
                card,
                exact_index=exact_index,
                group_products=[(p, group_confidence) for p in by_group.get(group_id, [])],
                cfg=self._cfg,
            )
            result.errors += errors
            matches.append(match)

        statuses = Counter(m.status for m in matches)
        matched = [m for m in matches if m.status == "matched"]
        result.considered = len(cards)
        result.matched = len(matched)
        result.ambiguous = statuses["ambiguous"]
        result.no_match = statuses["no_match"]
        result.by_method = dict(Counter(m.method.value for m in matched if m.method))
        result.candidates = [m for m in matches if m.status != "no_match"][
            : self._cfg.MATCH_CANDIDATE_LIMIT
        ]

        if not dry_run:
            products_by_id = {p.product_id: p for p in products}
            cards_by_id = {c.id: c for c in cards}
            result.applied = await self._apply_product_matches(
                operation_id, matches, products_by_id, cards_by_id
            )

        logger.info(
            "match_products_complete",
            game_id=game_id,
            dry_run=dry_run,
            considered=result.considered,
            matched=result.matched,
            ambiguous=result.ambiguous,
            no_match=result.no_match,
            errors=result.errors,
            by_method=result.by_method,
        )
        return result

    async def _apply_product_matches(
        self,
        operation_id: str,
        matches: list[ProductMatch],
        products_by_id: dict[int, ProductCandidate],
        cards_by_id: dict[str, CardCandidate],
    ) -> int:
        """Upsert a MatchRecord per matched card and stamp the card. Ambiguous cards get no record."""
        matched = [m for m in matches if m.status == "matched"]
        if not matched:
            return 0

        await upsert_in_batches(
            self._session_factory,
            MatchRecord,
            [self._record(operation_id, match) for match in matched],
            conflict_cols=["card_id", "catalog_product_id"],
            update_cols=["operation_id", "confidence", "method", "applied", "details"],
            cfg=self._cfg,
        )

        async with self._session_factory() as session:
            for match in matched:
                product = products_by_id[match.product_id]
                card = cards_by_id[match.card_id]
                await session.execute(
                    update(Card)
                    .where(Card.id == match.card_id)
                    .values(
                        catalog_product_id=product.product_id,
                        product_url=product.url,
                        image_url=card.image_url or product.image_url,
                        catalog_match_confidence=match.confidence,
                        catalog_match_method=match.method.value if match.method else None,
                    )
                )
            await session.commit()
        return len(matched)

    @staticmethod
    def _record(operation_id: str, match: ProductMatch) -> dict[str, Any]:
        return {
            "id": new_uuid(),
            "operation_id": operation_id,
            "card_id": match.card_id,
            "catalog_product_id": match.product_id,
            "confidence": match.confidence or 0.0,
            "method": match.method.value if match.method else MatchMethod.NAME_SIMILARITY.value,
            "applied": True,
            "details": {
                "status": match.status,
                "candidates": [c.model_dump(mode="json") for c in match.candidates],
            },
        }
