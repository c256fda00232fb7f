"""
CardSync — Persistence Sync

Chunked, retrying writes of normalized records, always parents before
children (games -> sets -> cards -> prices; categories -> groups -> products).

Each chunk commits in its own session. A chunk that still fails after its
retries aborts the remaining chunks and raises PersistenceError carrying a
BatchResult, so callers see exactly how many rows were committed first.
"""

from __future__ import annotations

import asyncio
import math
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardsync.config import Settings, SyncStatus, settings
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
from cardsync.models.base import new_uuid
from cardsync.pipeline.justtcg import HarvestResult
from cardsync.pipeline.normalizer import (
    CatalogCategoryRecord,
    CatalogGroupRecord,
    CatalogProductRecord,
    GameRecord,
    SetRecord,
    normalize_game_slug,
    slugify,
)

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError)
IN_CLAUSE_CHUNK = 500

SessionFactory = async_sessionmaker[AsyncSession]
StatementBuilder = Callable[[AsyncSession, list[dict[str, Any]]], Any]


class BatchResult(BaseModel):
    """Outcome of one chunked write."""

    table: str
    total: int
    committed: int = 0
    batches_total: int = 0
    batches_committed: int = 0
    failed_batch: int | None = None   # 1-based index of the chunk that aborted the run
    error: str | None = None


def chunked(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def dialect_insert(session: AsyncSession, model: Any) -> Any:
    """INSERT construct supporting ON CONFLICT for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")


async def _write_in_batches(
    session_factory: SessionFactory,
    table: str,
    rows: list[dict[str, Any]],
    build_statement: StatementBuilder,
    *,
    batch_size: int,
    max_retries: int,
    base_delay: float,
    sleep: Callable[[float], Awaitable[Any]],
) -> BatchResult:
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    result = BatchResult(
        table=table, total=len(rows), batches_total=math.ceil(len(rows) / batch_size)
    )

    for index, chunk in enumerate(chunked(rows, batch_size), start=1):
        attempt = 0
        while True:
            try:
                async with session_factory() as session:
                    await session.execute(build_statement(session, list(chunk)))
                    await session.commit()
                break
            except TRANSIENT_ERRORS as e:
                if attempt >= max_retries:
                    result.failed_batch = index
                    result.error = str(e)
                    break
                wait_time = base_delay * (2 ** attempt) + random.uniform(0, base_delay)
                attempt += 1
                logger.warning(
                    "persistence_chunk_retry",
                    table=table,
                    batch=index,
                    attempt=attempt,
                    wait_seconds=round(wait_time, 3),
                    error=str(e),
                )
                await sleep(wait_time)
            except SQLAlchemyError as e:
                result.failed_batch = index
                result.error = str(e)
                break

        if result.failed_batch is not None:
            logger.error(
                "persistence_aborted",
                table=table,
                failed_batch=index,
                batches_total=result.batches_total,
                committed=result.committed,
                total=result.total,
                error=result.error,
            )
            raise PersistenceError(
                f"{table}: chunk {index}/{result.batches_total} failed after "
                f"{result.committed}/{result.total} rows committed: {result.error}",
                result,
            )

        result.committed += len(chunk)
        result.batches_committed += 1
        logger.debug(
            "persistence_chunk_committed",
            table=table,
            batch=index,
            batches_total=result.batches_total,
            committed=result.committed,
        )

    logger.info(
        "persistence_batches_complete",
        table=table,
        committed=result.committed,
        batches=result.batches_committed,
    )
    return result


async def upsert_in_batches(
    session_factory: SessionFactory,
    model: Any,
    rows: Iterable[dict[str, Any]],
    *,
    conflict_cols: Sequence[str],
    update_cols: Sequence[str] | None = None,
    batch_size: int | None = None,
    max_retries: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    cfg: Settings = settings,
) -> BatchResult:
    """
    Upsert rows in ceil(N/B) chunks keyed on `conflict_cols`.

    Rows sharing a conflict key are collapsed first (last wins); Postgres
    rejects an ON CONFLICT statement that touches the same row twice.
    `update_cols` defaults to every column except the key columns and `id`.
    """
    deduped = list({tuple(r[c] for c in conflict_cols): r for r in rows}.values())
    if update_cols is None:
        columns = deduped[0].keys() if deduped else ()
        update_cols = [c for c in columns if c not in conflict_cols and c != "id"]

    def build(session: AsyncSession, chunk: list[dict[str, Any]]) -> Any:
        stmt = dialect_insert(session, model).values(chunk)
        if not update_cols:
            return stmt.on_conflict_do_nothing(index_elements=list(conflict_cols))
        return stmt.on_conflict_do_update(
            index_elements=list(conflict_cols),
            set_={col: stmt.excluded[col] for col in update_cols},
        )

    return await _write_in_batches(
        session_factory,
        model.__tablename__,
        deduped,
        build,
        batch_size=batch_size or cfg.UPSERT_BATCH_SIZE,
        max_retries=cfg.UPSERT_MAX_RETRIES if max_retries is None else max_retries,
        base_delay=cfg.UPSERT_BASE_DELAY_SECONDS if base_delay is None else base_delay,
        sleep=sleep,
    )


async def append_in_batches(
    session_factory: SessionFactory,
    model: Any,
    rows: list[dict[str, Any]],
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    cfg: Settings = settings,
) -> BatchResult:
    """Plain chunked INSERT for append-only tables."""
    return await _write_in_batches(
        session_factory,
        model.__tablename__,
        rows,
        lambda session, chunk: insert(model).values(chunk),
        batch_size=cfg.UPSERT_BATCH_SIZE,
        max_retries=cfg.UPSERT_MAX_RETRIES,
        base_delay=cfg.UPSERT_BASE_DELAY_SECONDS,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Harvested set -> games / card_sets / cards / card_prices
# ---------------------------------------------------------------------------


class SetSyncResult(BaseModel):
    game_id: str
    set_id: str
    external_set_id: str
    cards_upserted: int
    prices_upserted: int
    history_appended: int
    partial: bool = False


async def ensure_game(session: AsyncSession, game_id: str, name: str | None = None) -> Game:
    game = await session.get(Game, game_id)
    if game is None:
        game = Game(
            id=game_id,
            name=name or game_id.replace("-", " ").title(),
            sets_count=0,
            cards_count=0,
        )
        session.add(game)
        await session.flush()
        logger.info("persistence_game_created", game_id=game_id)
    return game


async def ensure_set(
    session: AsyncSession, game_id: str, external_set_id: str, name: str | None = None
) -> CardSet:
    card_set = (
        await session.execute(
            select(CardSet).where(
                CardSet.game_id == game_id, CardSet.external_id == external_set_id
            )
        )
    ).scalar_one_or_none()
    if card_set is None:
        card_set = CardSet(
            game_id=game_id,
            external_id=external_set_id,
            name=name or external_set_id,
            cards_synced_count=0,
            sync_status=SyncStatus.NOT_STARTED.value,
        )
        session.add(card_set)
        await session.flush()
        logger.info("persistence_set_created", game_id=game_id, external_set_id=external_set_id)
    return card_set


async def _card_id_map(session_factory: SessionFactory, external_ids: list[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    async with session_factory() as session:
        for chunk in chunked(external_ids, IN_CLAUSE_CHUNK):
            rows = await session.execute(
                select(Card.external_id, Card.id).where(Card.external_id.in_(list(chunk)))
            )
            mapping.update({external: internal for external, internal in rows.all()})
    return mapping


async def refresh_game_counts(session: AsyncSession, game_id: str) -> None:
    sets_count = await session.scalar(
        select(func.count()).select_from(CardSet).where(CardSet.game_id == game_id)
    )
    cards_count = await session.scalar(
        select(func.count()).select_from(Card).where(Card.game_id == game_id)
    )
    await session.execute(
        update(Game)
        .where(Game.id == game_id)
        .values(
            sets_count=sets_count or 0,
            cards_count=cards_count or 0,
            last_synced_at=datetime.now(timezone.utc),
        )
    )


async def sync_harvested_set(
    session_factory: SessionFactory,
    harvest: HarvestResult,
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> SetSyncResult:
    """
    Persist one harvest: game, set, cards, prices, price history, then counts.

    The set is marked in_progress up front and completed/failed at the end.
    A partial harvest still completes, but its warnings are kept in
    last_sync_error so the shortfall against total_cards stays visible.
    """
    set_name = next((c.set_name for c in harvest.cards if c.set_name), None)

    async with session_factory() as session:
        await ensure_game(session, harvest.game_id)
        card_set = await ensure_set(session, harvest.game_id, harvest.set_id, set_name)
        card_set.sync_status = SyncStatus.IN_PROGRESS.value
        if harvest.expected_total is not None:
            card_set.total_cards = harvest.expected_total
        await session.commit()
        set_pk = card_set.id

    try:
        now = datetime.now(timezone.utc)
        card_rows = [
            {
                "id": new_uuid(),
                "external_id": card.id,
                "set_id": set_pk,
                "game_id": harvest.game_id,
                "name": card.name,
                "number": card.number,
                "rarity": card.rarity,
                "image_url": card.image_url,
                "tcgplayer_id": card.tcgplayer_id,
                "attributes": card.attributes,
                "updated_at": now,
            }
            for card in harvest.cards
            if card.id
        ]
        card_result = await upsert_in_batches(
            session_factory, Card, card_rows, conflict_cols=["external_id"], cfg=cfg, sleep=sleep
        )

        id_map = await _card_id_map(session_factory, [row["external_id"] for row in card_rows])
        price_rows = [
            {
                "id": new_uuid(),
                "card_id": id_map[card.id],
                "printing": variant.printing,
                "condition": variant.condition,
                "currency": variant.currency,
                "market_price": variant.market_price,
                "low_price": variant.low_price,
                "high_price": variant.high_price,
                "source": cfg.PRICE_SOURCE,
                "fetched_at": harvest.harvested_at,
            }
            for card in harvest.cards
            if card.id in id_map
            for variant in card.variants
        ]
        price_result = await upsert_in_batches(
            session_factory,
            CardPrice,
            price_rows,
            conflict_cols=["card_id", "printing", "condition", "source"],
            cfg=cfg,
            sleep=sleep,
        )

        history_rows = [
            {
                "id": new_uuid(),
                "card_id": row["card_id"],
                "printing": row["printing"],
                "condition": row["condition"],
                "currency": row["currency"],
                "market_price": row["market_price"],
                "source": row["source"],
                "recorded_at": harvest.harvested_at,
            }
            for row in price_rows
        ]
        history_result = await append_in_batches(
            session_factory, CardPriceHistory, history_rows, cfg=cfg, sleep=sleep
        )
    except (PersistenceError, SQLAlchemyError) as e:
        async with session_factory() as session:
            await session.execute(
                update(CardSet)
                .where(CardSet.id == set_pk)
                .values(sync_status=SyncStatus.FAILED.value, last_sync_error=str(e)[:2000])
            )
            await session.commit()
        logger.error(
            "persistence_set_sync_failed",
            game_id=harvest.game_id,
            set_id=harvest.set_id,
            error=str(e),
        )
        raise

    sync_note = None
    if harvest.partial:
        sync_note = ("; ".join(harvest.warnings) or "partial harvest")[:2000]
        logger.warning(
            "persistence_set_partial",
            game_id=harvest.game_id,
            set_id=harvest.set_id,
            cards=card_result.committed,
            expected=harvest.expected_total,
        )

    async with session_factory() as session:
        await session.execute(
            update(CardSet)
            .where(CardSet.id == set_pk)
            .values(
                sync_status=SyncStatus.COMPLETED.value,
                cards_synced_count=card_result.committed,
                last_synced_at=datetime.now(timezone.utc),
                last_sync_error=sync_note,
            )
        )
        await refresh_game_counts(session, harvest.game_id)
        await session.commit()

    logger.info(
        "persistence_set_synced",
        game_id=harvest.game_id,
        set_id=harvest.set_id,
        cards=card_result.committed,
        prices=price_result.committed,
    )
    return SetSyncResult(
        game_id=harvest.game_id,
        set_id=set_pk,
        external_set_id=harvest.set_id,
        cards_upserted=card_result.committed,
        prices_upserted=price_result.committed,
        history_appended=history_result.committed,
        partial=harvest.partial,
    )


# ---------------------------------------------------------------------------
# Games and sets discovery
# ---------------------------------------------------------------------------


class SetsSyncResult(BaseModel):
    game_id: str
    sets_upserted: int
    sets_stored: int


async def upsert_games(
    session_factory: SessionFactory,
    games: list[GameRecord],
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchResult:
    """New games start with zero counts; existing games only get their name refreshed."""
    rows = [
        {"id": g.id, "name": g.name, "sets_count": 0, "cards_count": 0} for g in games
    ]
    return await upsert_in_batches(
        session_factory,
        Game,
        rows,
        conflict_cols=["id"],
        update_cols=["name"],
        cfg=cfg,
        sleep=sleep,
    )


async def sync_game_sets(
    session_factory: SessionFactory,
    game_id: str,
    sets: list[SetRecord],
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> SetsSyncResult:
    """
    Upsert a game's set list, then recount the game.

    New sets start as not_started. An existing set keeps its id, sync status
    and harvest counters; only its metadata is refreshed.
    """
    async with session_factory() as session:
        await ensure_game(session, game_id)
        await session.commit()

    rows = [
        {
            "id": new_uuid(),
            "game_id": game_id,
            "external_id": s.external_id,
            "name": s.name,
            "code": s.code,
            "release_date": s.release_date,
            "total_cards": s.total_cards,
            "cards_synced_count": 0,
            "sync_status": SyncStatus.NOT_STARTED.value,
        }
        for s in sets
    ]
    result = await upsert_in_batches(
        session_factory,
        CardSet,
        rows,
        conflict_cols=["game_id", "external_id"],
        update_cols=["name", "code", "release_date", "total_cards"],
        cfg=cfg,
        sleep=sleep,
    )

    async with session_factory() as session:
        await refresh_game_counts(session, game_id)
        await session.commit()
        stored = await session.scalar(select(Game.sets_count).where(Game.id == game_id)) or 0

    logger.info(
        "persistence_game_sets_synced",
        game_id=game_id,
        sets_upserted=result.committed,
        sets_stored=stored,
    )
    return SetsSyncResult(game_id=game_id, sets_upserted=result.committed, sets_stored=stored)


# ---------------------------------------------------------------------------
# Catalog staging
# ---------------------------------------------------------------------------


async def upsert_catalog_groups(
    session_factory: SessionFactory,
    groups: list[CatalogGroupRecord],
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchResult:
    now = datetime.now(timezone.utc)
    rows = [{**g.model_dump(), "updated_at": now} for g in groups]
    return await upsert_in_batches(
        session_factory, CatalogGroup, rows, conflict_cols=["group_id"], cfg=cfg, sleep=sleep
    )


async def upsert_catalog_products(
    session_factory: SessionFactory,
    products: list[CatalogProductRecord],
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchResult:
    now = datetime.now(timezone.utc)
    rows = [{**p.model_dump(), "updated_at": now} for p in products]
    return await upsert_in_batches(
        session_factory, CatalogProduct, rows, conflict_cols=["product_id"], cfg=cfg, sleep=sleep
    )


async def upsert_catalog_categories(
    session_factory: SessionFactory,
    categories: list[CatalogCategoryRecord],
    *,
    cfg: Settings = settings,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchResult:
    now = datetime.now(timezone.utc)
    rows = [{**c.model_dump(), "updated_at": now} for c in categories]
    return await upsert_in_batches(
        session_factory, CatalogCategory, rows, conflict_cols=["category_id"], cfg=cfg, sleep=sleep
    )


async def link_game_categories(
    session_factory: SessionFactory, categories: list[CatalogCategoryRecord]
) -> dict[str, int]:
    """
    Fill Game.catalog_category_id for games that have none yet.

    A category belongs to a game when its name (or display name) slugs to the
    game's id or to the slug of the game's name. Games with zero or several
    candidate categories are left alone. Returns {game_id: category_id} linked.
    """
    by_slug: dict[str, set[int]] = {}
    for category in categories:
        for label in (category.name, category.display_name):
            if label:
                by_slug.setdefault(normalize_game_slug(slugify(label)), set()).add(
                    category.category_id
                )

    linked: dict[str, int] = {}
    async with session_factory() as session:
        games = (
            await session.execute(select(Game).where(Game.catalog_category_id.is_(None)))
        ).scalars().all()
        for game in games:
            candidates = by_slug.get(game.id, set()) | by_slug.get(
                normalize_game_slug(slugify(game.name)), set()
            )
            if len(candidates) == 1:
                game.catalog_category_id = next(iter(candidates))
                linked[game.id] = game.catalog_category_id
            elif candidates:
                logger.warning(
                    "persistence_game_category_ambiguous",
                    game_id=game.id,
                    categories=sorted(candidates),
                )
        await session.commit()

    if linked:
        logger.info("persistence_game_categories_linked", linked=linked)
    return linked


async def wipe_catalog(session_factory: SessionFactory, game_id: str) -> tuple[int, int]:
    """Delete a game's staged products, then its groups. Returns (products, groups) deleted."""
    async with session_factory() as session:
        products = await session.execute(
            delete(CatalogProduct).where(CatalogProduct.game_id == game_id)
        )
        groups = await session.execute(delete(CatalogGroup).where(CatalogGroup.game_id == game_id))
        await session.commit()
    logger.warning(
        "persistence_catalog_wiped",
        game_id=game_id,
        products_deleted=products.rowcount,
        groups_deleted=groups.rowcount,
    )
    return products.rowcount, groups.rowcount
