"""
Models package — export all SQLAlchemy models.
"""

from cardsync.models.base import Base
from cardsync.models.card import Card
from cardsync.models.card_price import CardPrice, CardPriceHistory
from cardsync.models.card_set import CardSet
from cardsync.models.catalog import CatalogCategory, CatalogGroup, CatalogProduct
from cardsync.models.game import Game
from cardsync.models.match_record import MatchRecord
from cardsync.models.sync_log import SyncLog

__all__ = [
    "Base",
    "Card",
    "CardPrice",
    "CardPriceHistory",
    "CardSet",
    "CatalogCategory",
    "CatalogGroup",
    "CatalogProduct",
    "Game",
    "MatchRecord",
    "SyncLog",
]
