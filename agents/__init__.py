"""
agents/__init__.py
Shared types for the agents taking part in consensus rounds.
"""

from dataclasses import dataclass, field
from enum import Enum


class Direction(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

    @classmethod
    def parse(cls, value: object) -> "Direction | None":
        """Case-insensitive parse; None for anything unrecognised."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class AgentCategory(str, Enum):
    SENTIMENT = "sentiment"
    PREDICTION = "prediction"
    DEFI = "defi"
    NEWS = "news"
    ONCHAIN = "onchain"
    OTHER = "other"


@dataclass(frozen=True)
class AgentReply:
    """Raw result of one successful agent call."""
    key: str
    category: AgentCategory
    payload: dict | None
    headers: dict[str, str] = field(default_factory=dict)   # lower-cased X-ACP-* headers
    status: int = 200
    response_time_ms: float | None = None


@dataclass(frozen=True)
class Opinion:
    """An agent's directional opinion on one topic."""
    direction: Direction
    confidence_score: float        # 0.00 - 1.00
    signals: tuple[str, ...] = ()
    declared_stake: float | None = None
    from_protocol_header: bool = False
