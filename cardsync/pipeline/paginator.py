"""
CardSync — Offset/Limit Paginator

Drives sequential page fetches until the collection is exhausted, keyed-dedup
on item identifier (last write wins). Pages are requested strictly in
increasing offset order; the short-page stop rule depends on it.

Stop conditions, checked after each page in this order:
    1. metadata says has_more == False
    2. page shorter than the requested limit
    3. unique items reached the expected total from the first page's metadata
    4. the configurable page cap (surfaced as a warning)
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

import structlog
from pydantic import BaseModel, Field

from cardsync.errors import ShapeError, UpstreamError
from cardsync.pipeline.normalizer import PageMeta

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """One fetched page: items plus whatever metadata the upstream sent."""

    items: list[T] = Field(default_factory=list)
    meta: PageMeta = Field(default_factory=PageMeta)


class PaginationResult(BaseModel, Generic[T]):
    items: list[T] = Field(default_factory=list)
    pages_fetched: int = 0
    expected_total: int | None = None
    partial: bool = False
    hit_page_cap: bool = False
    skipped_items: int = 0
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None


FetchPage = Callable[[int, int], Awaitable[Page[Any]]]


async def paginate(
    fetch_page: FetchPage,
    *,
    limit: int,
    max_pages: int,
    item_key: Callable[[Any], Hashable | None],
    page_delay: float = 0.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "collection",
) -> PaginationResult[Any]:
    """
    Harvest an entire offset/limit collection.

    Args:
        fetch_page: Coroutine taking (offset, limit) and returning a Page.
        limit: Page size requested from upstream.
        max_pages: Hard cap on page requests.
        item_key: Identifier extractor; items returning None are skipped.
        page_delay: Seconds to wait between successive page requests.
        label: Used only in log events.

    Returns:
        PaginationResult. `partial` is set when a later page failed after
        earlier pages succeeded.

    Raises:
        UpstreamError / ShapeError: when the very first page fails.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if max_pages < 1:
        raise ValueError("max_pages must be >= 1")

    collected: dict[Hashable, Any] = {}
    offset = 0
    pages = 0
    skipped = 0
    expected_total: int | None = None
    partial = False
    hit_cap = False
    error: str | None = None
    warnings: list[str] = []

    while True:
        if pages >= max_pages:
            hit_cap = True
            warnings.append(f"page_cap_reached: stopped after {pages} pages at offset {offset}")
            logger.warning(
                "paginator_page_cap_reached", label=label, pages=pages, offset=offset
            )
            break

        if pages > 0 and page_delay > 0:
            await sleep(page_delay)

        try:
            page = await fetch_page(offset, limit)
        except (UpstreamError, ShapeError) as e:
            if pages == 0:
                raise
            partial = True
            error = str(e)
            warnings.append(f"partial_harvest: page at offset {offset} failed: {e}")
            logger.warning(
                "paginator_partial_result",
                label=label,
                offset=offset,
                pages=pages,
                collected=len(collected),
                error=str(e),
            )
            break

        pages += 1
        if pages == 1:
            expected_total = page.meta.total

        if not page.items:
            logger.debug("paginator_empty_page", label=label, offset=offset)
            break

        for item in page.items:
            key = item_key(item)
            if key is None:
                skipped += 1
                continue
            collected[key] = item

        logger.debug(
            "paginator_page_fetched",
            label=label,
            offset=offset,
            page_items=len(page.items),
            collected=len(collected),
        )

        if page.meta.has_more is False:
            break
        if len(page.items) < limit:
            break
        offset += len(page.items)
        if expected_total is not None and len(collected) >= expected_total:
            break

    if expected_total is not None and expected_total != len(collected):
        warnings.append(
            f"count_mismatch: expected {expected_total} items, harvested {len(collected)}"
        )
        logger.warning(
            "paginator_count_mismatch",
            label=label,
            expected_total=expected_total,
            harvested=len(collected),
        )
    if skipped:
        warnings.append(f"skipped_items: {skipped} items had no identifier")

    return PaginationResult(
        items=list(collected.values()),
        pages_fetched=pages,
        expected_total=expected_total,
        partial=partial,
        hit_page_cap=hit_cap,
        skipped_items=skipped,
        warnings=warnings,
        error=error,
    )
