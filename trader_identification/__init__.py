"""
Trader Identification.
Scores the monitored wallets and selects which of them to follow.
"""

from .scoring import INELIGIBLE_SCORE, ScoringEngine
from .selection import (
    FollowMode,
    LeaderSelection,
    LeaderSelector,
    LeaderWeight,
    SelectionConfig,
)

__all__ = [
    "INELIGIBLE_SCORE",
    "ScoringEngine",
    "FollowMode",
    "LeaderSelection",
    "LeaderSelector",
    "LeaderWeight",
    "SelectionConfig",
]
