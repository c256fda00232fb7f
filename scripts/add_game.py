"""
CardSync — Admin Game Registration Script

Creates (or updates) a games row with its TCGCSV category id, so that
`sync-catalog --game <slug>` can run without an explicit --category-id.

Usage:
    python scripts/add_game.py --game-id pokemon --name "Pokemon" --category-id 3
    python scripts/add_game.py --game-id mtg --name "Magic: The Gathering" --category-id 1
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Resolve project root so this script can be run from any working directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cardsync.config import settings
from cardsync.models.game import Game
from cardsync.pipeline.normalizer import normalize_game_slug


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Register a game (games row) and its catalog category.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/add_game.py --game-id pokemon --name "Pokemon" --category-id 3
  python scripts/add_game.py --game-id one-piece-card-game --name "One Piece" --category-id 68
  python scripts/add_game.py --game-id lorcana --name "Disney Lorcana"
""",
    )
    parser.add_argument(
        "--game-id",
        type=str,
        required=True,
        help="Game slug as used by the pricing API (e.g., pokemon, mtg).",
    )
    parser.add_argument(
        "--name",
        type=str,
        required=True,
        help="Display name.",
    )
    parser.add_argument(
        "--category-id",
        type=int,
        default=None,
        help="TCGCSV category id (optional; can be passed per sync instead).",
    )
    return parser.parse_args()


async def upsert_game(game_id: str, name: str, category_id: int | None) -> tuple[Game, bool]:
    """Insert the game, or update name/category on an existing row. Returns (game, created)."""
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with session_factory() as session:
        game = await session.get(Game, game_id)
        created = game is None
        if created:
            game = Game(id=game_id, name=name, catalog_category_id=category_id)
            session.add(game)
        else:
            game.name = name
            if category_id is not None:
                game.catalog_category_id = category_id
        await session.commit()

    await engine.dispose()
    return game, created


async def main() -> None:
    args = parse_args()
    if args.category_id is not None and args.category_id < 1:
        print("--category-id must be a positive integer", file=sys.stderr)
        sys.exit(2)

    game_id = normalize_game_slug(args.game_id)
    print(f"Registering game: id={game_id}, name={args.name!r}, category_id={args.category_id}")

    try:
        game, created = await upsert_game(game_id, args.name, args.category_id)
        print("Game created." if created else "Game updated.")
        print(f"  games.id             = {game.id}")
        print(f"  name                 = {game.name}")
        print(f"  catalog_category_id  = {game.catalog_category_id}")
    except Exception as e:
        print(f"Failed to register game: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
