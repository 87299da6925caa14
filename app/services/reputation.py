"""
app/services/reputation.py
Reputation & staking ledger — the single source of truth for agent trust.

Settlement formula (per agent entry):
    staked   = BASE_STAKE * confidence * reputation
    agree    -> returned = staked * (1 + REWARD_RATE * confidence)
                score    = min(1, score * DECAY + CORRECT_REWARD)
    disagree -> returned = max(0, staked * (1 - SLASH_RATE * confidence))
                score    = max(0.05, score * DECAY - INCORRECT_PENALTY)
A neutral consensus counts as agreement for everyone.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable

from pydantic import BaseModel, Field, field_validator

from agents import Direction
from core.constants import (
    BASE_STAKE,
    CORRECT_REWARD,
    DECAY_FACTOR,
    HISTORY_SIZE,
    INCORRECT_PENALTY,
    INITIAL_REPUTATION,
    MAX_REPUTATION,
    MIN_REPUTATION,
    REWARD_RATE,
    SLASH_RATE,
)
from core.store import StateStore

logger = logging.getLogger(__name__)


def clamp_score(score: float) -> float:
    return max(MIN_REPUTATION, min(MAX_REPUTATION, score))


# ---------------------------------------------------------------------------
# Persisted models
# ---------------------------------------------------------------------------

class AgentReputation(BaseModel):
    """Trust record for one agent."""
    key: str
    score: float = INITIAL_REPUTATION
    hunts: int = 0
    correct: int = 0
    pnl: float = 0.0
    history: list[float] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, v: float) -> float:
        return clamp_score(v)

    @field_validator("hunts", "correct")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("history")
    @classmethod
    def _trim_history(cls, v: list[float]) -> list[float]:
        return [clamp_score(s) for s in v[-HISTORY_SIZE:]]


class ReputationData(BaseModel):
    """Persisted blob: reputation table keyed by agent."""
    version: int = 1
    agents: dict[str, AgentReputation] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


# ---------------------------------------------------------------------------
# Settlement value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StakeEntry:
    """One agent's position going into settlement."""
    key: str
    direction: Direction
    confidence: float


@dataclass
class StakeResult:
    key: str
    confidence: float
    direction: Direction
    staked: float
    returned: float
    reputation_before: float
    reputation_after: float
    correct: bool


@dataclass
class StakingSummary:
    round_id: str
    consensus: Direction
    results: list[StakeResult] = field(default_factory=list)
    total_staked: float = 0.0
    total_returned: float = 0.0

    @property
    def net_pnl(self) -> float:
        return round(self.total_returned - self.total_staked, 2)


@dataclass(frozen=True)
class OutcomeUpdate:
    """Reputation change produced by one settlement entry."""
    key: str
    reputation_before: float
    reputation_after: float

    @property
    def delta(self) -> float:
        return self.reputation_after - self.reputation_before


# ---------------------------------------------------------------------------
# Pure formulas
# ---------------------------------------------------------------------------

def stake_amount(confidence: float, reputation: float) -> float:
    return round(BASE_STAKE * confidence * reputation, 2)


def reward_return(staked: float, confidence: float) -> float:
    return staked * (1 + REWARD_RATE * confidence)


def slash_return(staked: float, confidence: float) -> float:
    return max(0.0, staked * (1 - SLASH_RATE * confidence))


def next_score(score: float, agreed: bool, extra_delta: float = 0.0) -> float:
    """Decay toward the new evidence, then apply any extra delta, within bounds."""
    if agreed:
        base = min(MAX_REPUTATION, score * DECAY_FACTOR + CORRECT_REWARD)
    else:
        base = max(MIN_REPUTATION, score * DECAY_FACTOR - INCORRECT_PENALTY)
    return clamp_score(base + extra_delta)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class ReputationLedger:
    """Reputation table with settlement, backed by a state store.

    ``lock`` is re-entrant: a caller settling several agents as one step
    holds it across the whole step so readers never see a partial update.
    """

    def __init__(
        self,
        store: StateStore[ReputationData],
        known_keys: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self._store = store
        self._known_keys = known_keys
        self.lock = threading.RLock()

    def load(self) -> None:
        data = self._store.load()
        for key, rep in data.agents.items():
            if rep.key != key:
                rep.key = key
        logger.info("Reputation loaded: %d agents", len(data.agents))

    @property
    def _agents(self) -> dict[str, AgentReputation]:
        return self._store.get().agents

    def _get_or_init(self, key: str) -> AgentReputation:
        rep = self._agents.get(key)
        if rep is None:
            rep = AgentReputation(key=key)
            self._agents[key] = rep
        return rep

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_reputation(self, key: str) -> AgentReputation:
        """Copy of the agent's record; defaults for an unknown agent."""
        with self.lock:
            rep = self._agents.get(key)
            return rep.model_copy(deep=True) if rep else AgentReputation(key=key)

    def score(self, key: str) -> float:
        with self.lock:
            rep = self._agents.get(key)
            return rep.score if rep else INITIAL_REPUTATION

    def _keys(self) -> list[str]:
        keys = list(self._known_keys()) if self._known_keys else []
        for key in self._agents:
            if key not in keys:
                keys.append(key)
        return keys

    def all_reputations(self) -> list[AgentReputation]:
        with self.lock:
            return [self.get_reputation(k) for k in self._keys()]

    def snapshot(self) -> dict[str, dict]:
        with self.lock:
            snap: dict[str, dict] = {}
            for rep in self.all_reputations():
                snap[rep.key] = {
                    "score": round(rep.score, 3),
                    "hunts": rep.hunts,
                    "correct": rep.correct,
                    "pnl": round(rep.pnl, 2),
                }
            return snap

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def reset_all(self) -> None:
        with self.lock:
            for key in self._keys():
                self._agents[key] = AgentReputation(key=key)
            self._store.mark_dirty()
        logger.info("All reputations reset to %.2f", INITIAL_REPUTATION)

    def apply_outcome(
        self,
        key: str,
        agreed: bool,
        staked: float,
        returned: float,
        extra_delta: float = 0.0,
    ) -> OutcomeUpdate:
        """Record one settled stake against the agent's reputation."""
        with self.lock:
            rep = self._get_or_init(key)
            before = rep.score
            rep.score = next_score(rep.score, agreed, extra_delta)
            if agreed:
                rep.correct += 1
            rep.hunts += 1
            rep.pnl = round(rep.pnl + returned - staked, 2)
            rep.history.append(round(rep.score, 4))
            if len(rep.history) > HISTORY_SIZE:
                del rep.history[: len(rep.history) - HISTORY_SIZE]
            self._store.mark_dirty()
            return OutcomeUpdate(key=key, reputation_before=before, reputation_after=rep.score)

    def settle(
        self,
        round_id: str,
        entries: Iterable[StakeEntry],
        consensus: Direction,
    ) -> StakingSummary:
        """Settle a round of plain stakes against the consensus direction."""
        summary = StakingSummary(round_id=round_id, consensus=consensus)
        total_staked = 0.0
        total_returned = 0.0

        with self.lock:
            for entry in entries:
                staked = stake_amount(entry.confidence, self.score(entry.key))
                correct = entry.direction == consensus or consensus == Direction.NEUTRAL
                if correct:
                    returned = round(reward_return(staked, entry.confidence), 2)
                else:
                    returned = round(slash_return(staked, entry.confidence), 2)

                update = self.apply_outcome(entry.key, correct, staked, returned)
                total_staked += staked
                total_returned += returned
                summary.results.append(StakeResult(
                    key=entry.key,
                    confidence=entry.confidence,
                    direction=entry.direction,
                    staked=staked,
                    returned=returned,
                    reputation_before=round(update.reputation_before, 3),
                    reputation_after=round(update.reputation_after, 3),
                    correct=correct,
                ))

        summary.total_staked = round(total_staked, 2)
        summary.total_returned = round(total_returned, 2)
        logger.info(
            "Settled %s: consensus=%s agents=%d staked=%.2f returned=%.2f",
            round_id, consensus.value, len(summary.results),
            summary.total_staked, summary.total_returned,
        )
        return summary
