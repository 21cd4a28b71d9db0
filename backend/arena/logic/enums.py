"""
String enum definitions for arena rating concepts.
"""

from enum import StrEnum


class ParticipantOutcome(StrEnum):
    """How a single participant fared in a settled match."""

    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


class RankTier(StrEnum):
    """Display tier derived from a score."""

    MASTER = "Master"
    DIAMOND = "Diamond"
    GOLD = "Gold"
    SILVER = "Silver"
    BRONZE = "Bronze"
    IRON = "Iron"
