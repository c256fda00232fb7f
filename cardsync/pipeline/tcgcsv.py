"""
CardSync — TCGCSV Catalog Client

Reads the category list (`/categories`) and the groups and products of one
category, either as JSON (`/{category}/groups`,
`/{category}/{group}/products`) or as CSV exports streamed through
StreamingCSVParser. CSV file names vary in case between
categories, so each export is tried under several names; only 403/404 fall
through to the next name.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import httpx
import structlog

from cardsync.config import Settings, settings
from cardsync.errors import UpstreamError
from cardsync.pipeline.csv_stream import Row, aiter_csv_rows
from cardsync.pipeline.fetcher import FetchPolicy, RateLimitedFetcher, SleepFn
from cardsync.pipeline.normalizer import require_items

logger = structlog.get_logger(__name__)

GROUP_CSV_NAMES = ("Groups.csv", "groups.csv")
PRODUCT_CSV_NAMES = (
    "ProductsAndPrices.csv",
    "productsandprices.csv",
    "ProductsAndPrices.CSV",
    "Products.csv",
    "products.csv",
)
FALLTHROUGH_STATUSES = frozenset({403, 404})


class TCGCSVClient:
    """
    Async client for the TCGCSV catalog.

    Usage:
        async with TCGCSVClient() as client:
            groups = await client.fetch_groups(3)
            products = await client.fetch_products(3, groups[0]["groupId"])
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        fetcher: RateLimitedFetcher | None = None,
        policy: FetchPolicy | None = None,
        cfg: Settings = settings,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._base_url = base_url or cfg.TCGCSV_BASE_URL
        self._policy = policy or FetchPolicy.for_tcgcsv(cfg)
        self._cfg = cfg
        self._sleep = sleep
        self._fetcher = fetcher
        self._http: httpx.AsyncClient | None = None

    def build_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Accept": "text/csv, application/json, */*",
                "User-Agent": self._cfg.USER_AGENT,
                "Referer": self._cfg.TCGCSV_REFERER,
            },
            timeout=self._policy.timeout,
        )

    async def __aenter__(self) -> TCGCSVClient:
        if self._fetcher is None:
            self._http = self.build_http_client()
            self._fetcher = RateLimitedFetcher(
                self._http, self._policy, upstream="tcgcsv", sleep=self._sleep
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
    # JSON endpoints
    # -----------------------------------------------------------------------

    async def fetch_categories(self) -> list[dict[str, Any]]:
        payload = await self.fetcher.get_json("/categories")
        found = require_items(payload, aliases=("categories",), context="tcgcsv categories")
        categories = [c for c in found.items if isinstance(c, dict)]
        logger.info("tcgcsv_categories_fetched", count=len(categories))
        return categories

    async def fetch_groups(self, category_id: int) -> list[dict[str, Any]]:
        payload = await self.fetcher.get_json(f"/{category_id}/groups")
        found = require_items(payload, aliases=("groups",), context=f"tcgcsv groups {category_id}")
        groups = [g for g in found.items if isinstance(g, dict)]
        logger.info("tcgcsv_groups_fetched", category_id=category_id, count=len(groups))
        return groups

    async def fetch_products(self, category_id: int, group_id: int) -> list[dict[str, Any]]:
        payload = await self.fetcher.get_json(f"/{category_id}/{group_id}/products")
        found = require_items(
            payload, aliases=("products",), context=f"tcgcsv products {category_id}/{group_id}"
        )
        products = [p for p in found.items if isinstance(p, dict)]
        logger.debug(
            "tcgcsv_products_fetched",
            category_id=category_id,
            group_id=group_id,
            count=len(products),
        )
        return products

    # -----------------------------------------------------------------------
    # CSV exports
    # -----------------------------------------------------------------------

    async def _stream_first_available(self, base_path: str, names: tuple[str, ...]) -> AsyncIterator[Row]:
        last_error: UpstreamError | None = None
        for name in names:
            path = f"{base_path}/{name}"
            chunks = self.fetcher.stream_text(path)
            try:
                first = await anext(chunks)
            except StopAsyncIteration:
                logger.info("tcgcsv_csv_empty", path=path)
                return
            except UpstreamError as e:
                if e.status not in FALLTHROUGH_STATUSES:
                    raise
                logger.info("tcgcsv_csv_name_miss", path=path, status_code=e.status)
                last_error = e
                continue

            async def replay() -> AsyncIterator[str]:
                yield first
                async for chunk in chunks:
                    yield chunk

            logger.info("tcgcsv_csv_streaming", path=path)
            async for row in aiter_csv_rows(replay()):
                yield row
            return

        assert last_error is not None
        raise last_error

    def stream_groups_csv(self, category_id: int) -> AsyncIterator[Row]:
        return self._stream_first_available(f"/{category_id}", GROUP_CSV_NAMES)

    def stream_products_csv(self, category_id: int, group_id: int) -> AsyncIterator[Row]:
        return self._stream_first_available(f"/{category_id}/{group_id}", PRODUCT_CSV_NAMES)
