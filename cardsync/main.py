"""
CardSync — Application Entrypoint

Configures structlog, creates the async SQLAlchemy engine, verifies the
database connection and dispatches one pipeline operation. The operation's
result envelope is printed as JSON.

Run via:
    python -m cardsync.main sync-games
    python -m cardsync.main sync-sets --game pokemon
    python -m cardsync.main sync-categories
    python -m cardsync.main harvest --game pokemon --set base-set-pokemon
    python -m cardsync.main sync-set --game pokemon --set base-set-pokemon
    python -m cardsync.main sync-catalog --game pokemon --category-id 3 --csv
    python -m cardsync.main match --game pokemon --apply
    python -m cardsync.main lookup --tcgplayer-id 42369
    python -m cardsync.main logs --operation-id catalog-sync-pokemon-...
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardsync.config import MatchType, settings
from cardsync.pipeline.operations import (
    OperationResult,
    PipelineContext,
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


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    # stdlib logging first (sqlalchemy, httpx)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine() -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    The DATABASE_URL is read from settings (env variable DATABASE_URL).

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)

    logger.info("database_engine_initializing")

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

JUSTTCG_COMMANDS = ("sync-games", "sync-sets", "harvest", "sync-set", "lookup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cardsync",
        description="Harvest card prices, stage the catalog and reconcile the two.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cardsync sync-games
  cardsync sync-sets --game pokemon
  cardsync harvest --game pokemon --set base-set-pokemon
  cardsync sync-catalog --game pokemon --background
  cardsync match --game pokemon --type products --apply
  cardsync logs --limit 20
""",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sync-games", help="Store every game the pricing API lists.")
    sets = commands.add_parser("sync-sets", help="Store one game's set list.")
    sets.add_argument("--game", required=True, help="Game slug, e.g. pokemon.")
    commands.add_parser(
        "sync-categories", help="Stage catalog categories and link games to them."
    )

    for name, help_text in (
        ("harvest", "Harvest every card of one set (no persistence)."),
        ("sync-set", "Harvest one set and persist cards and prices."),
    ):
        cmd = commands.add_parser(name, help=help_text)
        cmd.add_argument("--game", required=True, help="Game slug, e.g. pokemon.")
        cmd.add_argument("--set", dest="set_id", required=True, help="Upstream set id.")
        cmd.add_argument("--page-size", type=int, default=None)
        cmd.add_argument("--order-by", default=None)
        cmd.add_argument("--order", choices=("asc", "desc"), default=None)

    catalog = commands.add_parser("sync-catalog", help="Stage catalog groups and products.")
    catalog.add_argument("--game", required=True)
    catalog.add_argument(
        "--category-id",
        type=int,
        default=None,
        help="Catalog category id (default: the game's stored category).",
    )
    catalog.add_argument("--wipe", action="store_true", help="Delete staged rows first.")
    catalog.add_argument("--csv", action="store_true", help="Use the CSV exports.")
    catalog.add_argument(
        "--background",
        action="store_true",
        help="Return the operation id immediately; poll with `logs`.",
    )

    match = commands.add_parser("match", help="Reconcile sets/cards with the catalog.")
    match.add_argument("--game", required=True)
    match.add_argument(
        "--type",
        dest="match_type",
        choices=[m.value for m in MatchType],
        default=MatchType.BOTH.value,
    )
    match.add_argument("--apply", action="store_true", help="Persist matches (default: dry run).")
    match.add_argument("--all", dest="include_mapped", action="store_true",
                       help="Re-match cards that already have an applied match.")

    lookup = commands.add_parser("lookup", help="Look up cards and variant prices.")
    lookup.add_argument("--tcgplayer-id", default=None)
    lookup.add_argument("--card-id", default=None)
    lookup.add_argument("--variant-id", default=None)
    lookup.add_argument("--game", default=None)
    lookup.add_argument("--set", dest="set_id", default=None)
    lookup.add_argument("--name", default=None)
    lookup.add_argument("--limit", type=int, default=None)
    lookup.add_argument("--offset", type=int, default=None)

    logs = commands.add_parser("logs", help="Show sync log entries, newest first.")
    logs.add_argument("--operation-id", default=None)
    logs.add_argument("--limit", type=int, default=None)

    return parser


async def dispatch(ctx: PipelineContext, args: argparse.Namespace) -> OperationResult:
    if args.command == "sync-games":
        return await sync_games(ctx)
    if args.command == "sync-sets":
        return await sync_sets_for_game(ctx, args.game)
    if args.command == "sync-categories":
        return await sync_catalog_categories(ctx)
    if args.command == "harvest":
        return await harvest_full_set(
            ctx, args.game, args.set_id,
            page_size=args.page_size, order_by=args.order_by, order=args.order,
        )
    if args.command == "sync-set":
        return await sync_full_set(
            ctx, args.game, args.set_id,
            page_size=args.page_size, order_by=args.order_by, order=args.order,
        )
    if args.command == "sync-catalog":
        return await sync_catalog_for_game(
            ctx,
            args.game,
            category_id=args.category_id,
            wipe_before=args.wipe,
            background=args.background,
            use_csv=args.csv,
        )
    if args.command == "match":
        return await run_match(
            ctx,
            args.game,
            dry_run=not args.apply,
            only_unmapped=not args.include_mapped,
            match_type=args.match_type,
        )
    if args.command == "lookup":
        query = {
            "tcgplayer_id": args.tcgplayer_id,
            "card_id": args.card_id,
            "variant_id": args.variant_id,
            "game": args.game,
            "set": args.set_id,
            "name": args.name,
            "limit": args.limit,
            "offset": args.offset,
        }
        return await lookup_card_variants(ctx, {k: v for k, v in query.items() if v is not None})
    return await query_sync_logs(ctx, operation_id=args.operation_id, limit=args.limit)


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def main(argv: list[str] | None = None) -> int:
    """
    Execution order:
    1. Configure logging (structlog JSON on stderr)
    2. Create async database engine and session factory
    3. Verify database connection (health check)
    4. Run the requested operation and print its result on stdout

    A background catalog sync keeps running until it finishes; the context
    drains it before the process exits.
    """
    args = build_parser().parse_args(argv)

    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    logger.info("cardsync_startup_begin", version="0.1.0", command=args.command)

    if not settings.JUSTTCG_API_KEY and args.command in JUSTTCG_COMMANDS:
        logger.warning("config_justtcg_api_key_missing", note="using empty API key")

    try:
        engine, session_factory = await create_db_engine()
    except Exception as e:
        logger.error(
            "database_engine_creation_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise

    # Health check: verify database connection
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error(
            "database_health_check_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        await engine.dispose()
        raise

    try:
        async with open_context(settings, session_factory) as ctx:
            result = await dispatch(ctx, args)
            print(result.model_dump_json(indent=2))
    finally:
        await engine.dispose()
        logger.info("cardsync_shutdown_complete")

    return 0 if result.success else 1


def run() -> None:
    """Console-script entry."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
