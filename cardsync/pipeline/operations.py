"""
CardSync — Pipeline Entry Points

Each public coroutine here is one independently invocable operation. All of
them:

- validate input before any network call (400 on failure)
- write a `started` log entry and a terminal entry (success / warning / error)
  to the sync log before returning
- return an OperationResult envelope instead of raising

Status convention: 200 ok, 202 accepted (background), 400 validation,
404 nothing to operate on, upstream 429/4xx/5xx propagated (network -> 502),
502 unrecognized upstream shape, 500 persistence/internal.

PipelineContext is the only holder of per-process mutable state (HTTP
clients, per-upstream rate limiters, background tasks). Build it with
open_context(); it is torn down when the block exits.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, NamedTuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import LogStatus, MatchType, OperationType, Settings, settings
from cardsync.engine.matcher import ReconciliationMatcher
from cardsync.errors import (
    CardSyncError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
    ShapeError,
    UpstreamError,
)
from cardsync.models import Game
from cardsync.pipeline.fetcher import FetchPolicy, RateLimitedFetcher, RateLimiter, SleepFn
from cardsync.pipeline.justtcg import MAX_PAGE_SIZE, CardQuery, JustTCGClient, validate_harvest
from cardsync.pipeline.normalizer import (
    CatalogProductRecord,
    normalize_category_row,
    normalize_game_slug,
    normalize_group_row,
    normalize_product_row,
    normalize_rows,
)
from cardsync.pipeline.persistence import (
    link_game_categories,
    sync_game_sets,
    sync_harvested_set,
    upsert_catalog_categories,
    upsert_catalog_groups,
    upsert_catalog_products,
    upsert_games,
    wipe_catalog,
)
from cardsync.pipeline.sync_log import SyncLogStore, new_operation_id
from cardsync.pipeline.tcgcsv import TCGCSVClient

logger = structlog.get_logger(__name__)

MAX_LOG_QUERY_LIMIT = 1000


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------


class OperationResult(BaseModel):
    """
    Uniform return value for every entry point.

    success=True with empty data and a warning means "nothing matched";
    success=True with partial=True means "completed with gaps";
    success=False means the operation failed.
    """

    success: bool
    status: int = 200
    error: str | None = None
    operation_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    partial: bool = False


def _to_result(exc: Exception, operation_id: str | None) -> OperationResult:
    if isinstance(exc, UpstreamError):
        return OperationResult(
            success=False,
            status=exc.http_status,
            error=exc.message,
            operation_id=operation_id,
            data={"upstreamStatus": exc.status, "url": exc.url, "body": exc.body_snippet},
        )
    if isinstance(exc, PersistenceError):
        return OperationResult(
            success=False,
            status=exc.status,
            error=exc.message,
            operation_id=operation_id,
            partial=exc.committed > 0,
            data={"committed": exc.committed, "total": exc.result.total, "table": exc.result.table},
        )
    if isinstance(exc, CardSyncError):
        return OperationResult(
            success=False, status=exc.status, error=exc.message, operation_id=operation_id
        )
    if isinstance(exc, SQLAlchemyError):
        return OperationResult(
            success=False, status=500, error=f"Database error: {exc}", operation_id=operation_id
        )
    return OperationResult(
        success=False,
        status=500,
        error=f"Internal error: {type(exc).__name__}: {exc}",
        operation_id=operation_id,
    )


# ---------------------------------------------------------------------------
# Background execution
# ---------------------------------------------------------------------------


class TaskHandle(NamedTuple):
    operation_id: str
    accepted_at: datetime


class BackgroundRunner:
    """
    Detached task execution. The submitter only gets a TaskHandle; the outcome
    is observable through the sync log under the handle's operation_id.
    """

    def __init__(self, log_store: SyncLogStore | None = None) -> None:
        self._log_store = log_store
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    @property
    def active(self) -> list[str]:
        return list(self._tasks)

    def submit(self, operation_id: str, work: Callable[[], Awaitable[Any]]) -> TaskHandle:
        task = asyncio.create_task(self._run(operation_id, work), name=f"cardsync:{operation_id}")
        self._tasks[operation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(operation_id, None))
        logger.info("background_task_submitted", operation_id=operation_id)
        return TaskHandle(operation_id, datetime.now(timezone.utc))

    async def _run(self, operation_id: str, work: Callable[[], Awaitable[Any]]) -> None:
        try:
            await work()
        except Exception as e:
            logger.error(
                "background_task_crashed",
                operation_id=operation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self._log_store is None:
                return
            try:
                await self._log_store.append(
                    operation_id,
                    "background",
                    LogStatus.ERROR,
                    f"Background task crashed: {type(e).__name__}: {e}",
                    error_count=1,
                )
            except SQLAlchemyError as log_error:
                logger.error(
                    "background_crash_log_failed",
                    operation_id=operation_id,
                    error=str(log_error),
                )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks (called on context shutdown)."""
        if self._tasks:
            logger.info("background_drain", pending=len(self._tasks))
            await asyncio.wait(list(self._tasks.values()), timeout=timeout)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


@dataclass
class PipelineContext:
    session_factory: async_sessionmaker[AsyncSession]
    log_store: SyncLogStore
    justtcg: JustTCGClient
    tcgcsv: TCGCSVClient
    cfg: Settings = field(default_factory=lambda: settings)
    background: BackgroundRunner = field(default_factory=BackgroundRunner)
    sleep: SleepFn = asyncio.sleep


@asynccontextmanager
async def open_context(
    cfg: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    sleep: SleepFn = asyncio.sleep,
) -> AsyncIterator[PipelineContext]:
    """
    Build the per-process pipeline context: one HTTP client, fetcher and
    rate limiter per upstream. Background work is drained before the HTTP
    clients close.
    """
    justtcg_policy = FetchPolicy.for_justtcg(cfg)
    tcgcsv_policy = FetchPolicy.for_tcgcsv(cfg)

    justtcg_http = JustTCGClient(cfg=cfg).build_http_client()
    tcgcsv_http = TCGCSVClient(cfg=cfg).build_http_client()

    log_store = SyncLogStore(session_factory)
    ctx = PipelineContext(
        session_factory=session_factory,
        log_store=log_store,
        background=BackgroundRunner(log_store),
        justtcg=JustTCGClient(
            cfg=cfg,
            sleep=sleep,
            fetcher=RateLimitedFetcher(
                justtcg_http,
                justtcg_policy,
                limiter=RateLimiter.from_policy(justtcg_policy, sleep=sleep),
                upstream="justtcg",
                sleep=sleep,
            ),
        ),
        tcgcsv=TCGCSVClient(
            cfg=cfg,
            sleep=sleep,
            fetcher=RateLimitedFetcher(
                tcgcsv_http,
                tcgcsv_policy,
                limiter=RateLimiter.from_policy(tcgcsv_policy, sleep=sleep),
                upstream="tcgcsv",
                sleep=sleep,
            ),
        ),
        cfg=cfg,
        sleep=sleep,
    )
    try:
        yield ctx
    finally:
        await ctx.background.drain()
        await justtcg_http.aclose()
        await tcgcsv_http.aclose()


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def _log_summary(result: OperationResult) -> dict[str, Any]:
    """Terminal log details: scalar data only (no card lists)."""
    return {
        "status": result.status,
        "partial": result.partial,
        "warnings": result.warnings[:50],
        "data": {k: v for k, v in result.data.items() if not isinstance(v, list)},
    }


async def _reject(
    ctx: PipelineContext,
    operation_type: OperationType,
    error: InvalidRequestError,
    **scope: Any,
) -> OperationResult:
    operation_id = new_operation_id(operation_type.value.replace("_", "-"), scope.get("game_id"))
    await ctx.log_store.append(
        operation_id,
        operation_type,
        LogStatus.ERROR,
        f"Rejected: {error.message}",
        details={"status": error.status},
        error_count=1,
        **scope,
    )
    return _to_result(error, operation_id)


async def _execute(
    ctx: PipelineContext,
    operation_id: str,
    operation_type: OperationType,
    body: Callable[[], Awaitable[OperationResult]],
    *,
    started_at: float,
    game_id: str | None = None,
    set_id: str | None = None,
) -> OperationResult:
    """Run `body`, map failures onto the envelope, write the terminal log entry."""
    try:
        result = await body()
    except Exception as e:
        logger.error(
            "operation_failed",
            operation_id=operation_id,
            operation_type=operation_type.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        result = _to_result(e, operation_id)

    result.operation_id = operation_id
    if not result.success:
        status, message = LogStatus.ERROR, result.error or "failed"
    elif result.partial or result.warnings:
        status, message = LogStatus.WARNING, "Completed with warnings"
    else:
        status, message = LogStatus.SUCCESS, "Completed"

    await ctx.log_store.append(
        operation_id,
        operation_type,
        status,
        message,
        details=_log_summary(result),
        duration_ms=int((time.monotonic() - started_at) * 1000),
        error_count=0 if result.success else 1,
        game_id=game_id,
        set_id=set_id,
    )
    return result


async def _start(
    ctx: PipelineContext,
    operation_type: OperationType,
    message: str,
    *,
    game_id: str | None = None,
    set_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> tuple[str, float]:
    operation_id = new_operation_id(operation_type.value.replace("_", "-"), game_id, set_id)
    await ctx.log_store.append(
        operation_id,
        operation_type,
        LogStatus.STARTED,
        message,
        details=details,
        game_id=game_id,
        set_id=set_id,
    )
    return operation_id, time.monotonic()


def _validate_harvest_args(
    game_id: str, set_id: str, page_size: int | None, order: str | None
) -> InvalidRequestError | None:
    if not game_id or not game_id.strip():
        return InvalidRequestError("game_id is required")
    if not set_id or not set_id.strip():
        return InvalidRequestError("set_id is required")
    if page_size is not None and not 1 <= page_size <= MAX_PAGE_SIZE:
        return InvalidRequestError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if order is not None and order not in ("asc", "desc"):
        return InvalidRequestError("order must be 'asc' or 'desc'")
    return None


# ---------------------------------------------------------------------------
# Games / sets / categories discovery
# ---------------------------------------------------------------------------


async def sync_games(ctx: PipelineContext) -> OperationResult:
    """Upsert every game the pricing API lists. Counts are reported, not stored."""
    operation_id, started = await _start(ctx, OperationType.GAMES_SYNC, "Games sync started")

    async def body() -> OperationResult:
        games = await ctx.justtcg.fetch_games()
        result = await upsert_games(ctx.session_factory, games, cfg=ctx.cfg, sleep=ctx.sleep)
        warnings = [] if games else ["No games returned by the pricing API"]
        return OperationResult(
            success=True,
            warnings=warnings,
            data={
                "gamesUpserted": result.committed,
                "games": [game.model_dump(mode="json") for game in games],
            },
        )

    return await _execute(ctx, operation_id, OperationType.GAMES_SYNC, body, started_at=started)


async def sync_sets_for_game(ctx: PipelineContext, game_id: str) -> OperationResult:
    """Upsert one game's set list; new sets start as not_started."""
    if not game_id or not game_id.strip():
        return await _reject(
            ctx, OperationType.SETS_SYNC, InvalidRequestError("game_id is required")
        )

    game = normalize_game_slug(game_id)
    operation_id, started = await _start(
        ctx, OperationType.SETS_SYNC, "Sets sync started", game_id=game
    )

    async def body() -> OperationResult:
        sets = await ctx.justtcg.fetch_sets(game)
        if not sets:
            return OperationResult(
                success=True,
                warnings=[f"No sets found for game {game}"],
                data={"gameId": game, "setsUpserted": 0},
            )
        synced = await sync_game_sets(
            ctx.session_factory, game, sets, cfg=ctx.cfg, sleep=ctx.sleep
        )
        return OperationResult(
            success=True,
            data={
                "gameId": game,
                "setsUpserted": synced.sets_upserted,
                "setsStored": synced.sets_stored,
                "sets": [s.model_dump(mode="json") for s in sets],
            },
        )

    return await _execute(
        ctx, operation_id, OperationType.SETS_SYNC, body, started_at=started, game_id=game
    )


async def sync_catalog_categories(ctx: PipelineContext) -> OperationResult:
    """
    Stage the catalog's category list and link games that have no category yet.

    An empty category list is a warning and writes nothing.
    """
    operation_id, started = await _start(
        ctx, OperationType.CATEGORY_SYNC, "Category sync started"
    )

    async def body() -> OperationResult:
        rows = await ctx.tcgcsv.fetch_categories()
        batch = normalize_rows(rows, normalize_category_row)
        if not batch.records:
            return OperationResult(
                success=True,
                warnings=["No catalog categories fetched; nothing written"],
                data={"categoriesUpserted": 0, "categoriesSkipped": batch.skipped},
            )
        result = await upsert_catalog_categories(
            ctx.session_factory, batch.records, cfg=ctx.cfg, sleep=ctx.sleep
        )
        linked = await link_game_categories(ctx.session_factory, batch.records)
        return OperationResult(
            success=True,
            data={
                "categoriesUpserted": result.committed,
                "categoriesSkipped": batch.skipped,
                "gamesLinked": linked,
            },
        )

    return await _execute(
        ctx, operation_id, OperationType.CATEGORY_SYNC, body, started_at=started
    )


# ---------------------------------------------------------------------------
# Harvest-full-set / Sync-full-set
# ---------------------------------------------------------------------------


async def harvest_full_set(
    ctx: PipelineContext,
    game_id: str,
    set_id: str,
    page_size: int | None = None,
    order_by: str | None = None,
    order: str | None = None,
) -> OperationResult:
    """Paginate every card of one set from the pricing API. Nothing is persisted."""
    invalid = _validate_harvest_args(game_id, set_id, page_size, order)
    if invalid:
        return await _reject(ctx, OperationType.HARVEST_SET, invalid, game_id=game_id, set_id=set_id)

    game = normalize_game_slug(game_id)
    operation_id, started = await _start(
        ctx, OperationType.HARVEST_SET, "Harvest started", game_id=game, set_id=set_id
    )

    async def body() -> OperationResult:
        harvest = await ctx.justtcg.harvest_set(
            game, set_id, page_size=page_size, order_by=order_by, order=order
        )
        validation = validate_harvest(harvest)
        warnings = list(harvest.warnings)
        if not harvest.cards:
            warnings.append(f"No cards found for set {set_id}")
        return OperationResult(
            success=True,
            partial=harvest.partial,
            warnings=warnings,
            data={
                "cards": [card.model_dump(mode="json") for card in harvest.cards],
                "totalPages": harvest.total_pages,
                "totalCards": harvest.total_cards,
                "expectedTotal": harvest.expected_total,
                "harvestedAt": harvest.harvested_at.isoformat(),
                "gameId": harvest.game_id,
                "setId": harvest.set_id,
                "hitPageCap": harvest.hit_page_cap,
                "validation": validation.model_dump(mode="json"),
            },
        )

    return await _execute(
        ctx, operation_id, OperationType.HARVEST_SET, body,
        started_at=started, game_id=game, set_id=set_id,
    )


async def sync_full_set(
    ctx: PipelineContext,
    game_id: str,
    set_id: str,
    page_size: int | None = None,
    order_by: str | None = None,
    order: str | None = None,
) -> OperationResult:
    """Harvest one set and persist it (game -> set -> cards -> prices)."""
    invalid = _validate_harvest_args(game_id, set_id, page_size, order)
    if invalid:
        return await _reject(ctx, OperationType.SYNC_SET, invalid, game_id=game_id, set_id=set_id)

    game = normalize_game_slug(game_id)
    operation_id, started = await _start(
        ctx, OperationType.SYNC_SET, "Set sync started", game_id=game, set_id=set_id
    )

    async def body() -> OperationResult:
        harvest = await ctx.justtcg.harvest_set(
            game, set_id, page_size=page_size, order_by=order_by, order=order
        )
        if not harvest.cards:
            raise NotFoundError(f"No cards found for {game}/{set_id}")

        synced = await sync_harvested_set(
            ctx.session_factory, harvest, cfg=ctx.cfg, sleep=ctx.sleep
        )
        return OperationResult(
            success=True,
            partial=harvest.partial,
            warnings=list(harvest.warnings),
            data={
                "gameId": synced.game_id,
                "setId": synced.set_id,
                "externalSetId": synced.external_set_id,
                "totalPages": harvest.total_pages,
                "expectedTotal": harvest.expected_total,
                "cardsUpserted": synced.cards_upserted,
                "pricesUpserted": synced.prices_upserted,
                "historyAppended": synced.history_appended,
            },
        )

    return await _execute(
        ctx, operation_id, OperationType.SYNC_SET, body,
        started_at=started, game_id=game, set_id=set_id,
    )


# ---------------------------------------------------------------------------
# Sync-catalog-for-game
# ---------------------------------------------------------------------------


async def _fetch_group_products(
    ctx: PipelineContext,
    category_id: int,
    game_id: str,
    group_id: int,
    use_csv: bool,
) -> tuple[list[CatalogProductRecord], int]:
    if use_csv:
        rows = [row async for row in ctx.tcgcsv.stream_products_csv(category_id, group_id)]
    else:
        rows = await ctx.tcgcsv.fetch_products(category_id, group_id)
    batch = normalize_rows(
        rows, normalize_product_row, category_id=category_id, game_id=game_id, group_id=group_id
    )
    return batch.records, batch.skipped


async def _sync_catalog(
    ctx: PipelineContext,
    operation_id: str,
    game_id: str,
    category_id: int,
    wipe_before: bool,
    use_csv: bool,
) -> OperationResult:
    if wipe_before:
        await wipe_catalog(ctx.session_factory, game_id)

    if use_csv:
        group_rows = [row async for row in ctx.tcgcsv.stream_groups_csv(category_id)]
    else:
        group_rows = await ctx.tcgcsv.fetch_groups(category_id)
    groups = normalize_rows(
        group_rows, normalize_group_row, category_id=category_id, game_id=game_id
    )
    group_result = await upsert_catalog_groups(
        ctx.session_factory, groups.records, cfg=ctx.cfg, sleep=ctx.sleep
    )

    semaphore = asyncio.Semaphore(ctx.cfg.CATALOG_GROUP_CONCURRENCY)
    failed: list[int] = []
    done = 0
    total = len(groups.records)
    progress_every = max(1, total // 10)

    async def one_group(group_id: int) -> tuple[list[CatalogProductRecord], int]:
        nonlocal done
        async with semaphore:
            try:
                return await _fetch_group_products(ctx, category_id, game_id, group_id, use_csv)
            except (UpstreamError, ShapeError) as e:
                failed.append(group_id)
                logger.warning(
                    "catalog_group_products_failed",
                    operation_id=operation_id,
                    group_id=group_id,
                    error=str(e),
                )
                return [], 0
            finally:
                done += 1
                if done % progress_every == 0 or done == total:
                    await ctx.log_store.append(
                        operation_id,
                        OperationType.CATALOG_SYNC,
                        LogStatus.PROGRESS,
                        f"Fetched products for {done}/{total} groups",
                        game_id=game_id,
                        progress_current=done,
                        progress_total=total,
                    )

    per_group = await asyncio.gather(*(one_group(g.group_id) for g in groups.records))
    products = [record for records, _ in per_group for record in records]
    products_skipped = sum(skipped for _, skipped in per_group)

    product_result = await upsert_catalog_products(
        ctx.session_factory, products, cfg=ctx.cfg, sleep=ctx.sleep
    )

    warnings = []
    if failed:
        warnings.append(f"Products failed for {len(failed)} of {total} groups")
    if not groups.records:
        warnings.append(f"No catalog groups found for category {category_id}")

    return OperationResult(
        success=True,
        partial=bool(failed),
        warnings=warnings,
        data={
            "gameId": game_id,
            "categoryId": category_id,
            "groupsUpserted": group_result.committed,
            "productsUpserted": product_result.committed,
            "groupsSkipped": groups.skipped,
            "productsSkipped": products_skipped,
            "groupsFailed": sorted(failed),
        },
    )


async def sync_catalog_for_game(
    ctx: PipelineContext,
    game_id: str,
    category_id: int | None = None,
    wipe_before: bool = False,
    background: bool = False,
    use_csv: bool = False,
) -> OperationResult:
    """
    Stage every catalog group and product of one category.

    With background=True returns 202 immediately; follow progress and the
    final outcome with query_sync_logs(operation_id).
    """
    if not game_id or not game_id.strip():
        return await _reject(
            ctx, OperationType.CATALOG_SYNC, InvalidRequestError("game_id is required")
        )
    if category_id is not None and category_id < 1:
        return await _reject(
            ctx,
            OperationType.CATALOG_SYNC,
            InvalidRequestError("category_id must be a positive integer"),
            game_id=game_id,
        )

    if category_id is None:
        async with ctx.session_factory() as session:
            game = await session.get(Game, game_id)
        if game is None or game.catalog_category_id is None:
            operation_id, started = await _start(
                ctx, OperationType.CATALOG_SYNC, "Catalog sync started", game_id=game_id
            )

            async def missing() -> OperationResult:
                raise NotFoundError(f"No catalog category known for game {game_id!r}")

            return await _execute(
                ctx, operation_id, OperationType.CATALOG_SYNC, missing,
                started_at=started, game_id=game_id,
            )
        category_id = game.catalog_category_id

    operation_id, started = await _start(
        ctx,
        OperationType.CATALOG_SYNC,
        "Catalog sync started",
        game_id=game_id,
        details={
            "categoryId": category_id,
            "wipeBefore": wipe_before,
            "background": background,
            "useCsv": use_csv,
        },
    )

    async def run() -> OperationResult:
        return await _execute(
            ctx,
            operation_id,
            OperationType.CATALOG_SYNC,
            lambda: _sync_catalog(ctx, operation_id, game_id, category_id, wipe_before, use_csv),
            started_at=started,
            game_id=game_id,
        )

    if background:
        handle = ctx.background.submit(operation_id, run)
        return OperationResult(
            success=True,
            status=202,
            operation_id=handle.operation_id,
            data={"accepted": True, "acceptedAt": handle.accepted_at.isoformat()},
        )
    return await run()


# ---------------------------------------------------------------------------
# Run-match
# ---------------------------------------------------------------------------


async def run_match(
    ctx: PipelineContext,
    game_id: str,
    dry_run: bool = True,
    only_unmapped: bool = True,
    match_type: str = MatchType.BOTH.value,
) -> OperationResult:
    """Reconcile a game's sets/cards against its staged catalog."""
    if not game_id or not game_id.strip():
        return await _reject(ctx, OperationType.MATCH, InvalidRequestError("game_id is required"))
    try:
        kind = MatchType(match_type)
    except ValueError:
        return await _reject(
            ctx,
            OperationType.MATCH,
            InvalidRequestError(
                f"match_type must be one of {', '.join(m.value for m in MatchType)}"
            ),
            game_id=game_id,
        )

    operation_id, started = await _start(
        ctx,
        OperationType.MATCH,
        "Matching started",
        game_id=game_id,
        details={"dryRun": dry_run, "onlyUnmapped": only_unmapped, "matchType": kind.value},
    )

    async def body() -> OperationResult:
        summary = await ReconciliationMatcher(ctx.session_factory, ctx.cfg).run(
            game_id,
            operation_id,
            dry_run=dry_run,
            only_unmapped=only_unmapped,
            match_type=kind,
        )
        data: dict[str, Any] = {"dryRun": dry_run, "onlyUnmapped": only_unmapped}
        warnings: list[str] = []
        if summary.group_matching is not None:
            data["groupMatching"] = summary.group_matching.model_dump(mode="json")
        if summary.product_matching is not None:
            data["productMatching"] = summary.product_matching.model_dump(mode="json")
            warnings.extend(summary.product_matching.warnings)
        return OperationResult(success=True, data=data, warnings=warnings)

    return await _execute(
        ctx, operation_id, OperationType.MATCH, body, started_at=started, game_id=game_id
    )


# ---------------------------------------------------------------------------
# Lookup & log queries
# ---------------------------------------------------------------------------


async def lookup_card_variants(
    ctx: PipelineContext, query: dict[str, Any] | None = None, **params: Any
) -> OperationResult:
    """
    One /cards call. Identifier precedence tcgplayer_id > card_id > variant_id;
    otherwise a game is required.
    """
    try:
        card_query = CardQuery.build(**{**(query or {}), **params})
    except InvalidRequestError as e:
        return await _reject(ctx, OperationType.CARD_LOOKUP, e)

    game = normalize_game_slug(card_query.game) if card_query.game else None
    operation_id, started = await _start(
        ctx,
        OperationType.CARD_LOOKUP,
        "Card lookup started",
        game_id=game,
        details={"params": card_query.to_params()},
    )

    async def body() -> OperationResult:
        page = await ctx.justtcg.fetch_cards(card_query)
        warnings = [] if page.items else ["No cards matched the query"]
        return OperationResult(
            success=True,
            warnings=warnings,
            data={
                "cards": [card.model_dump(mode="json") for card in page.items],
                "meta": page.meta.model_dump(mode="json"),
                "count": len(page.items),
            },
        )

    return await _execute(
        ctx, operation_id, OperationType.CARD_LOOKUP, body, started_at=started, game_id=game
    )


async def query_sync_logs(
    ctx: PipelineContext,
    operation_id: str | None = None,
    limit: int | None = None,
) -> OperationResult:
    """Newest-first log entries, optionally for one operation."""
    if limit is not None and not 1 <= limit <= MAX_LOG_QUERY_LIMIT:
        return OperationResult(
            success=False,
            status=400,
            error=f"limit must be between 1 and {MAX_LOG_QUERY_LIMIT}",
        )
    try:
        entries = await ctx.log_store.query(operation_id, limit=limit)
    except SQLAlchemyError as e:
        logger.error("sync_log_query_failed", operation_id=operation_id, error=str(e))
        return _to_result(e, operation_id)

    return OperationResult(
        success=True,
        operation_id=operation_id,
        data={"logs": [entry.model_dump(mode="json") for entry in entries]},
    )
