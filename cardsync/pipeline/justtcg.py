"""
CardSync — JustTCG Pricing API Client

Game and set discovery (`GET /games`, `GET /sets?game=`), card lookups and
full-set harvests against `GET /cards`. Every request goes through the shared
RateLimitedFetcher; this module only knows the endpoints' parameters and
response shapes.

Identifier precedence on /cards: tcgplayerId > cardId > variantId. Any
identifier suppresses the free-text parameters (game/set/name/...).
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, model_validator

from cardsync.config import Settings, settings
from cardsync.errors import InvalidRequestError
from cardsync.pipeline.fetcher import FetchPolicy, RateLimitedFetcher, SleepFn
from cardsync.pipeline.normalizer import (
    GameRecord,
    HarvestCard,
    SetRecord,
    normalize_game_record,
    normalize_game_slug,
    normalize_pricing_card,
    normalize_rows,
    normalize_set_record,
    require_items,
)
from cardsync.pipeline.paginator import Page, paginate

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 200

# ---------------------------------------------------------------------------
# Request / Response Models
# ---------------------------------------------------------------------------


class CardQuery(BaseModel):
    """
    Validated /cards query. Either an identifier or at least a game.

    Raises InvalidRequestError (not pydantic's ValidationError) so callers get
    a 400 before any network call.
    """

    tcgplayer_id: str | None = None
    card_id: str | None = None
    variant_id: str | None = None
    game: str | None = None
    set: str | None = None
    name: str | None = None
    limit: int | None = Field(default=None, ge=1, le=MAX_PAGE_SIZE)
    offset: int | None = Field(default=None, ge=0)
    order_by: str | None = None
    order: str | None = None

    @model_validator(mode="after")
    def check_identifiers(self) -> CardQuery:
        if not (self.tcgplayer_id or self.card_id or self.variant_id or self.game):
            raise ValueError("one of tcgplayer_id, card_id, variant_id or game is required")
        if self.order is not None and self.order not in ("asc", "desc"):
            raise ValueError("order must be 'asc' or 'desc'")
        return self

    @classmethod
    def build(cls, **kwargs: Any) -> CardQuery:
        try:
            return cls(**kwargs)
        except ValueError as e:
            # pydantic.ValidationError subclasses ValueError
            raise InvalidRequestError(f"Invalid card query: {e}") from e

    @property
    def identifier(self) -> tuple[str, str] | None:
        for param, value in (
            ("tcgplayerId", self.tcgplayer_id),
            ("cardId", self.card_id),
            ("variantId", self.variant_id),
        ):
            if value:
                return param, value
        return None

    def to_params(self) -> dict[str, Any]:
        ident = self.identifier
        if ident is not None:
            return {ident[0]: ident[1]}

        params: dict[str, Any] = {"game": normalize_game_slug(self.game or "")}
        optional = {
            "set": self.set,
            "name": self.name,
            "limit": self.limit,
            "offset": self.offset,
            "orderBy": self.order_by,
            "order": self.order,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        return params


class HarvestResult(BaseModel):
    """Every card of one set, deduplicated by card ID."""

    cards: list[HarvestCard] = Field(default_factory=list)
    total_pages: int = 0
    total_cards: int = 0
    expected_total: int | None = None
    game_id: str
    set_id: str
    harvested_at: datetime
    partial: bool = False
    hit_page_cap: bool = False
    warnings: list[str] = Field(default_factory=list)


class HarvestValidation(BaseModel):
    is_valid: bool
    warnings: list[str] = Field(default_factory=list)
    total_variants: int = 0
    avg_variants_per_card: float = 0.0
    cards_with_multiple_variants: int = 0
    distinct_printings: list[str] = Field(default_factory=list)
    distinct_conditions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


class JustTCGClient:
    """
    Async client for the JustTCG pricing API (/games, /sets, /cards).

    Usage:
        async with JustTCGClient() as client:
            result = await client.harvest_set("pokemon", "base-set-pokemon")

    Pass `fetcher=` to share one RateLimitedFetcher (and its limiter) across
    callers; the client then does not own the HTTP connection.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        fetcher: RateLimitedFetcher | None = None,
        policy: FetchPolicy | None = None,
        cfg: Settings = settings,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._api_key = api_key if api_key is not None else cfg.JUSTTCG_API_KEY
        self._base_url = base_url or cfg.JUSTTCG_BASE_URL
        self._policy = policy or FetchPolicy.for_justtcg(cfg)
        self._cfg = cfg
        self._sleep = sleep
        self._fetcher = fetcher
        self._http: httpx.AsyncClient | None = None

    def build_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"x-api-key": self._api_key, "Accept": "application/json"},
            timeout=self._policy.timeout,
        )

    async def __aenter__(self) -> JustTCGClient:
        if self._fetcher is None:
            self._http = self.build_http_client()
            self._fetcher = RateLimitedFetcher(
                self._http, self._policy, upstream="justtcg", sleep=self._sleep
            )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None
            self._fetcher = None

    @property
    def fetcher(self) -> RateLimitedFetcher:
        assert self._fetcher is not None, "Client not initialized. Use 'async with'."
        return self._fetcher

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_games(self) -> list[GameRecord]:
        payload = await self.fetcher.get_json("/games")
        found = require_items(payload, aliases=("games",), context="justtcg /games")
        batch = normalize_rows(
            (raw for raw in found.items if isinstance(raw, dict)), normalize_game_record
        )
        logger.info("justtcg_games_fetched", count=len(batch.records), skipped=batch.skipped)
        return batch.records

    async def fetch_sets(self, game_id: str) -> list[SetRecord]:
        """Every set the pricing API lists for one game (the endpoint is not paginated)."""
        game = normalize_game_slug(game_id)
        if not game:
            raise InvalidRequestError("game is required")
        payload = await self.fetcher.get_json("/sets", params={"game": game})
        found = require_items(payload, aliases=("sets",), context=f"justtcg /sets {game}")
        batch = normalize_rows(
            (raw for raw in found.items if isinstance(raw, dict)), normalize_set_record
        )
        logger.info(
            "justtcg_sets_fetched", game=game, count=len(batch.records), skipped=batch.skipped
        )
        return batch.records

    async def fetch_cards(self, query: CardQuery) -> Page[HarvestCard]:
        """One /cards request, normalized."""
        payload = await self.fetcher.get_json("/cards", params=query.to_params())
        found = require_items(payload, aliases=("cards",), context="justtcg /cards")
        cards = [normalize_pricing_card(raw) for raw in found.items if isinstance(raw, dict)]
        return Page(items=cards, meta=found.meta)

    async def harvest_set(
        self,
        game_id: str,
        set_id: str,
        *,
        page_size: int | None = None,
        order_by: str | None = None,
        order: str | None = None,
        max_pages: int | None = None,
    ) -> HarvestResult:
        """
        Paginate /cards for one set until the collection is exhausted.

        Returns partial data (partial=True) if a later page fails; raises
        if the first page fails.
        """
        game = normalize_game_slug(game_id)
        limit = page_size or self._cfg.HARVEST_PAGE_SIZE

        async def fetch_page(offset: int, page_limit: int) -> Page[HarvestCard]:
            query = CardQuery.build(
                game=game,
                set=set_id,
                limit=page_limit,
                offset=offset,
                order_by=order_by,
                order=order,
            )
            return await self.fetch_cards(query)

        logger.info("justtcg_harvest_start", game=game, set_id=set_id, page_size=limit)

        pagination = await paginate(
            fetch_page,
            limit=limit,
            max_pages=max_pages or self._cfg.HARVEST_MAX_PAGES,
            item_key=lambda card: card.id,
            page_delay=self._cfg.HARVEST_PAGE_DELAY_SECONDS,
            sleep=self._sleep,
            label=f"justtcg:{game}:{set_id}",
        )

        result = HarvestResult(
            cards=pagination.items,
            total_pages=pagination.pages_fetched,
            total_cards=len(pagination.items),
            expected_total=pagination.expected_total,
            game_id=game,
            set_id=set_id,
            harvested_at=datetime.now(timezone.utc),
            partial=pagination.partial,
            hit_page_cap=pagination.hit_page_cap,
            warnings=pagination.warnings,
        )

        logger.info(
            "justtcg_harvest_complete",
            game=game,
            set_id=set_id,
            total_cards=result.total_cards,
            total_pages=result.total_pages,
            expected_total=result.expected_total,
            partial=result.partial,
        )
        return result


# ---------------------------------------------------------------------------
# Harvest Validation
# ---------------------------------------------------------------------------


def validate_harvest(result: HarvestResult) -> HarvestValidation:
    """Sanity stats over a harvest. Never raises; problems become warnings."""
    warnings: list[str] = []
    if not result.cards:
        warnings.append("No cards harvested")
    if result.expected_total is not None and result.expected_total != result.total_cards:
        warnings.append(
            f"Count mismatch: expected {result.expected_total}, got {result.total_cards}"
        )

    printings: Counter[str] = Counter()
    conditions: Counter[str] = Counter()
    total_variants = 0
    multi = 0
    for card in result.cards:
        if not card.id:
            warnings.append(f"Card without id: {card.name!r}")
        if not card.variants:
            warnings.append(f"Card {card.id} has no variants")
        total_variants += len(card.variants)
        if len(card.variants) > 1:
            multi += 1
        printings.update(v.printing for v in card.variants)
        conditions.update(v.condition for v in card.variants)

    return HarvestValidation(
        is_valid=bool(result.cards) and not result.partial,
        warnings=warnings,
        total_variants=total_variants,
        avg_variants_per_card=round(total_variants / len(result.cards), 2) if result.cards else 0.0,
        cards_with_multiple_variants=multi,
        distinct_printings=sorted(printings),
        distinct_conditions=sorted(conditions),
    )
