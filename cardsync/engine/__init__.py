from cardsync.engine.matcher import (
    ReconciliationMatcher,
    match_card,
    match_groups_to_sets,
    score_group,
    score_product,
)

__all__ = [
    "ReconciliationMatcher",
    "match_card",
    "match_groups_to_sets",
    "score_group",
    "score_product",
]
