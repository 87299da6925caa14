"""
app/services/acp.py
Alpha Consensus Protocol (ACP) engine using LangGraph (state machine).

Graph topology:
    START -> collect   (replies -> votes; protocol headers or category heuristic)
          -> consensus (effectiveStake * reputation weighted vote)
          -> settle    (reward agreement, slash disagreement, update reputation)
          -> END

One round runs under the engine lock: settlement never interleaves with
another round, and readers never observe a half-settled round.
"""

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Mapping

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field, field_validator
from typing_extensions import TypedDict

from agents import AgentReply, Direction, Opinion
from agents.extractors import collect_opinion
from app.services.reputation import ReputationLedger
from core.constants import (
    ACP_HEADER_CONFIDENCE,
    ACP_HEADER_DIRECTION,
    ACP_HEADER_STAKE,
    ACP_HEADER_VERSION,
    ACP_VERSION,
    CONSENSUS_WEIGHT_FLOOR,
    CORRECT_REWARD,
    DECAY_FACTOR,
    HIGH_CONF_EXTRA_REWARD,
    HIGH_CONF_EXTRA_SLASH,
    HIGH_CONFIDENCE_THRESHOLD,
    INCORRECT_PENALTY,
    MAX_EVENTS,
    MAX_REPUTATION,
    MAX_ROUNDS,
    MAX_SETTLED_IDS,
    MAX_STAKE,
    MIN_REPUTATION,
    REP_HIGH_CONF_RIGHT,
    REP_HIGH_CONF_WRONG,
    REWARD_RATE,
    SLASH_RATE,
)
from core.exceptions import DuplicateRoundError
from core.store import StateStore

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[str, dict[str, Any]], None]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ACPPhase(str, Enum):
    COLLECT = "collect"
    CONSENSUS = "consensus"
    SETTLE = "settle"


class PhaseTiming(BaseModel):
    phase: ACPPhase
    duration_ms: float


class ACPAgentVote(BaseModel):
    """One agent's participation in a round. Stake and weight are derived."""
    key: str
    direction: Direction
    confidence: float
    declared_stake: float
    effective_stake: float
    reputation: float
    weight: float
    agreed_with_consensus: bool = False
    from_protocol_header: bool = False
    response_time_ms: float | None = None

    @classmethod
    def from_opinion(
        cls,
        key: str,
        opinion: Opinion,
        reputation: float,
        response_time_ms: float | None = None,
    ) -> "ACPAgentVote":
        declared = opinion.declared_stake
        if declared is None:
            declared = MAX_STAKE * opinion.confidence_score
        effective = round(min(declared, MAX_STAKE * reputation), 2)
        return cls(
            key=key,
            direction=opinion.direction,
            confidence=round(opinion.confidence_score, 3),
            declared_stake=round(declared, 2),
            effective_stake=effective,
            reputation=round(reputation, 3),
            weight=round(effective * reputation, 2),
            from_protocol_header=opinion.from_protocol_header,
            response_time_ms=response_time_ms,
        )


class ACPConsensusResult(BaseModel):
    direction: Direction
    strength: float
    unanimity: bool
    quorum: int
    total_weight: float
    weight_breakdown: dict[Direction, float]


class SlashEvent(BaseModel):
    round_id: str
    agent: str
    reason: str
    amount: float
    reputation_delta: float
    timestamp: str


class RewardEvent(BaseModel):
    round_id: str
    agent: str
    reason: str
    amount: float
    reputation_delta: float
    timestamp: str


class ACPSettlementResult(BaseModel):
    total_staked: float
    total_returned: float
    net_pnl: float
    slashed_agents: list[str] = Field(default_factory=list)
    rewarded_agents: list[str] = Field(default_factory=list)
    slash_events: list[SlashEvent] = Field(default_factory=list)
    reward_events: list[RewardEvent] = Field(default_factory=list)


class ACPRound(BaseModel):
    round_id: str
    topic: str
    timestamp: str
    phase_timings: list[PhaseTiming]
    votes: list[ACPAgentVote]
    consensus: ACPConsensusResult
    settlement: ACPSettlementResult

    model_config = {"frozen": True}


class ACPAgentStats(BaseModel):
    key: str
    rounds: int = 0
    total_staked: float = 0.0
    total_returned: float = 0.0
    pnl: float = 0.0
    agreement_rate: float = 0.0      # percent
    current_streak: int = 0          # > 0 agreements in a row, < 0 slashes in a row
    best_streak: int = 0
    slash_count: int = 0
    reward_count: int = 0


class ACPData(BaseModel):
    """Persisted blob: round history and event logs, oldest first."""
    version: int = 1
    rounds: list[ACPRound] = Field(default_factory=list)
    slash_log: list[SlashEvent] = Field(default_factory=list)
    reward_log: list[RewardEvent] = Field(default_factory=list)
    settled_ids: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}

    @field_validator("rounds")
    @classmethod
    def _trim_rounds(cls, v: list[ACPRound]) -> list[ACPRound]:
        return v[-MAX_ROUNDS:]

    @field_validator("slash_log", "reward_log")
    @classmethod
    def _trim_events(cls, v: list) -> list:
        return v[-MAX_EVENTS:]

    @field_validator("settled_ids")
    @classmethod
    def _trim_ids(cls, v: list[str]) -> list[str]:
        return v[-MAX_SETTLED_IDS:]


# ---------------------------------------------------------------------------
# Pure protocol math
# ---------------------------------------------------------------------------

def decide_direction(breakdown: Mapping[Direction, float]) -> Direction:
    """Strictly heaviest direction above the weight floor, else neutral."""
    best = max(breakdown, key=lambda d: breakdown[d])
    best_weight = breakdown[best]
    if best_weight <= CONSENSUS_WEIGHT_FLOOR:
        return Direction.NEUTRAL
    if any(w >= best_weight for d, w in breakdown.items() if d != best):
        return Direction.NEUTRAL
    return best


def compute_consensus(votes: list[ACPAgentVote]) -> tuple[ACPConsensusResult, list[ACPAgentVote]]:
    """Weighted vote. Returns the result and the votes marked with agreement."""
    breakdown: dict[Direction, float] = {d: 0.0 for d in Direction}
    for vote in votes:
        breakdown[vote.direction] += vote.weight
    total_weight = sum(breakdown.values())

    direction = decide_direction(breakdown) if votes else Direction.NEUTRAL

    marked: list[ACPAgentVote] = []
    agree_weight = 0.0
    for vote in votes:
        agreed = direction == Direction.NEUTRAL or vote.direction == direction
        if agreed:
            agree_weight += vote.weight
        marked.append(vote.model_copy(update={"agreed_with_consensus": agreed}))

    strength = round(agree_weight / total_weight, 3) if total_weight > 0 else 0.0
    result = ACPConsensusResult(
        direction=direction,
        strength=strength,
        unanimity=bool(marked) and all(v.agreed_with_consensus for v in marked),
        quorum=len(marked),
        total_weight=round(total_weight, 2),
        weight_breakdown={d: round(w, 2) for d, w in breakdown.items()},
    )
    return result, marked


def settle_vote(vote: ACPAgentVote) -> tuple[float, float, str]:
    """Return (returned, extra reputation delta, reason) for one vote."""
    staked = vote.effective_stake
    high_confidence = vote.confidence > HIGH_CONFIDENCE_THRESHOLD

    if vote.agreed_with_consensus:
        returned = staked * (1 + REWARD_RATE * vote.confidence)
        extra_delta = 0.0
        reason = "agreed with consensus"
        if high_confidence:
            returned += staked * HIGH_CONF_EXTRA_REWARD
            extra_delta = REP_HIGH_CONF_RIGHT
            reason = "high-confidence correct"
    else:
        returned = staked * (1 - SLASH_RATE * vote.confidence)
        extra_delta = 0.0
        reason = "against consensus"
        if high_confidence:
            returned -= staked * HIGH_CONF_EXTRA_SLASH
            extra_delta = -REP_HIGH_CONF_WRONG
            reason = "high-confidence wrong"
        returned = max(0.0, returned)

    return round(returned, 2), extra_delta, reason


# ---------------------------------------------------------------------------
# Graph state
# ---------------------------------------------------------------------------

def _append_timings(left: list, right: list) -> list:
    """Reducer: accumulate phase timings."""
    return left + right


class RoundState(TypedDict):
    """Shared state for one consensus round."""
    round_id: str
    topic: str
    timestamp: str
    replies: list[AgentReply]

    votes: list[ACPAgentVote]
    consensus: ACPConsensusResult | None
    settlement: ACPSettlementResult | None

    phase_timings: Annotated[list[PhaseTiming], _append_timings]


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ACPEngine:
    """Runs consensus rounds and answers read queries over the round log."""

    def __init__(self, store: StateStore[ACPData], ledger: ReputationLedger) -> None:
        self._store = store
        self._ledger = ledger
        self._lock = threading.Lock()
        self._on_phase: PhaseCallback | None = None
        self._graph = self._build_graph().compile()

    def load(self) -> None:
        data = self._store.load()
        logger.info(
            "ACP loaded: %d rounds, %d slashes, %d rewards",
            len(data.rounds), len(data.slash_log), len(data.reward_log),
        )

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _notify(self, phase: ACPPhase, payload: dict[str, Any]) -> None:
        if self._on_phase is None:
            return
        try:
            self._on_phase(phase.value, payload)
        except Exception as exc:
            logger.warning("Phase observer failed on %s: %s", phase.value, exc)

    def _collect_node(self, state: RoundState) -> dict:
        started = time.perf_counter()
        votes = [
            ACPAgentVote.from_opinion(
                key=reply.key,
                opinion=collect_opinion(reply),
                reputation=self._ledger.score(reply.key),
                response_time_ms=reply.response_time_ms,
            )
            for reply in state["replies"]
        ]
        timing = PhaseTiming(phase=ACPPhase.COLLECT, duration_ms=_elapsed_ms(started))
        self._notify(ACPPhase.COLLECT, {"votes": [v.model_dump(mode="json") for v in votes]})
        return {"votes": votes, "phase_timings": [timing]}

    def _consensus_node(self, state: RoundState) -> dict:
        started = time.perf_counter()
        consensus, votes = compute_consensus(state["votes"])
        timing = PhaseTiming(phase=ACPPhase.CONSENSUS, duration_ms=_elapsed_ms(started))
        self._notify(ACPPhase.CONSENSUS, consensus.model_dump(mode="json"))
        return {"votes": votes, "consensus": consensus, "phase_timings": [timing]}

    def _settle_node(self, state: RoundState) -> dict:
        started = time.perf_counter()
        round_id = state["round_id"]
        ts = state["timestamp"]
        data = self._store.get()

        total_staked = 0.0
        total_returned = 0.0
        settlement = ACPSettlementResult(total_staked=0.0, total_returned=0.0, net_pnl=0.0)

        with self._ledger.lock:
            for vote in state["votes"]:
                staked = vote.effective_stake
                returned, extra_delta, reason = settle_vote(vote)
                update = self._ledger.apply_outcome(
                    vote.key, vote.agreed_with_consensus, staked, returned, extra_delta,
                )
                total_staked += staked
                total_returned += returned
                rep_delta = round(update.delta, 3)

                if vote.agreed_with_consensus:
                    event = RewardEvent(
                        round_id=round_id, agent=vote.key, reason=reason,
                        amount=round(returned - staked, 2),
                        reputation_delta=rep_delta, timestamp=ts,
                    )
                    settlement.rewarded_agents.append(vote.key)
                    settlement.reward_events.append(event)
                    data.reward_log.append(event)
                else:
                    event = SlashEvent(
                        round_id=round_id, agent=vote.key, reason=reason,
                        amount=round(staked - returned, 2),
                        reputation_delta=rep_delta, timestamp=ts,
                    )
                    settlement.slashed_agents.append(vote.key)
                    settlement.slash_events.append(event)
                    data.slash_log.append(event)

        settlement.total_staked = round(total_staked, 2)
        settlement.total_returned = round(total_returned, 2)
        settlement.net_pnl = round(settlement.total_returned - settlement.total_staked, 2)

        if len(data.slash_log) > MAX_EVENTS:
            del data.slash_log[: len(data.slash_log) - MAX_EVENTS]
        if len(data.reward_log) > MAX_EVENTS:
            del data.reward_log[: len(data.reward_log) - MAX_EVENTS]

        timing = PhaseTiming(phase=ACPPhase.SETTLE, duration_ms=_elapsed_ms(started))
        self._notify(ACPPhase.SETTLE, {
            "total_staked": settlement.total_staked,
            "total_returned": settlement.total_returned,
            "net_pnl": settlement.net_pnl,
            "slashed_agents": settlement.slashed_agents,
            "rewarded_agents": settlement.rewarded_agents,
        })
        return {"settlement": settlement, "phase_timings": [timing]}

    def _build_graph(self) -> StateGraph:
        """Construct the three-phase LangGraph state machine."""
        graph = StateGraph(RoundState)

        graph.add_node("collect", self._collect_node)
        graph.add_node("consensus", self._consensus_node)
        graph.add_node("settle", self._settle_node)

        graph.add_edge(START, "collect")
        graph.add_edge("collect", "consensus")
        graph.add_edge("consensus", "settle")
        graph.add_edge("settle", END)

        return graph

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_hunt_round(
        self,
        topic: str,
        replies: Mapping[str, AgentReply | None],
        round_id: str | None = None,
        on_phase: PhaseCallback | None = None,
    ) -> ACPRound:
        """
        Run COLLECT -> CONSENSUS -> SETTLE over one hunt's agent replies.

        Agents mapped to None did not respond and are left out of the round.
        A round id that was already settled raises DuplicateRoundError.
        """
        round_id = round_id or uuid.uuid4().hex[:12]

        with self._lock:
            data = self._store.get()
            if round_id in data.settled_ids:
                raise DuplicateRoundError(round_id)

            initial: RoundState = {
                "round_id": round_id,
                "topic": topic,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "replies": [r for r in replies.values() if r is not None],
                "votes": [],
                "consensus": None,
                "settlement": None,
                "phase_timings": [],
            }

            self._on_phase = on_phase
            try:
                final = self._graph.invoke(initial)
            finally:
                self._on_phase = None

            acp_round = ACPRound(
                round_id=round_id,
                topic=topic,
                timestamp=final["timestamp"],
                phase_timings=final["phase_timings"],
                votes=final["votes"],
                consensus=final["consensus"],
                settlement=final["settlement"],
            )

            data.rounds.append(acp_round)
            if len(data.rounds) > MAX_ROUNDS:
                del data.rounds[: len(data.rounds) - MAX_ROUNDS]
            data.settled_ids.append(round_id)
            if len(data.settled_ids) > MAX_SETTLED_IDS:
                del data.settled_ids[: len(data.settled_ids) - MAX_SETTLED_IDS]
            self._store.set(data)

        logger.info(
            "ACP round %s: consensus=%s strength=%.2f quorum=%d slashed=%d rewarded=%d net_pnl=%.2f",
            round_id,
            acp_round.consensus.direction.value,
            acp_round.consensus.strength,
            acp_round.consensus.quorum,
            len(acp_round.settlement.slashed_agents),
            len(acp_round.settlement.rewarded_agents),
            acp_round.settlement.net_pnl,
        )
        return acp_round

    # ------------------------------------------------------------------
    # Read views (recomputed on demand)
    # ------------------------------------------------------------------

    @property
    def lock(self) -> threading.Lock:
        """Held for a whole round, ledger updates included."""
        return self._lock

    def _recent_rounds(self, limit: int) -> list[ACPRound]:
        rounds = self._store.get().rounds
        return list(reversed(rounds[-limit:])) if limit > 0 else []

    def _slash_log(self, limit: int, offset: int) -> list[SlashEvent]:
        return list(reversed(self._store.get().slash_log))[offset:offset + limit]

    def _reward_log(self, limit: int, offset: int) -> list[RewardEvent]:
        return list(reversed(self._store.get().reward_log))[offset:offset + limit]

    def _leaderboard(self) -> list[ACPAgentStats]:
        return sorted(self._all_stats().values(), key=lambda s: s.pnl, reverse=True)

    def get_round(self, round_id: str) -> ACPRound | None:
        with self._lock:
            for acp_round in self._store.get().rounds:
                if acp_round.round_id == round_id:
                    return acp_round
        return None

    def recent_rounds(self, limit: int = 10) -> list[ACPRound]:
        with self._lock:
            return self._recent_rounds(limit)

    def slash_log(self, limit: int = 50, offset: int = 0) -> list[SlashEvent]:
        """Most recent first."""
        with self._lock:
            return self._slash_log(limit, offset)

    def reward_log(self, limit: int = 50, offset: int = 0) -> list[RewardEvent]:
        """Most recent first."""
        with self._lock:
            return self._reward_log(limit, offset)

    def _all_stats(self) -> dict[str, ACPAgentStats]:
        stats: dict[str, ACPAgentStats] = {}
        for acp_round in self._store.get().rounds:
            outcomes: dict[str, float] = {}
            for ev in acp_round.settlement.reward_events:
                outcomes[ev.agent] = ev.amount
            for ev in acp_round.settlement.slash_events:
                outcomes[ev.agent] = -ev.amount

            for vote in acp_round.votes:
                s = stats.setdefault(vote.key, ACPAgentStats(key=vote.key))
                staked = vote.effective_stake
                returned = staked + outcomes.get(vote.key, 0.0)
                s.rounds += 1
                s.total_staked += staked
                s.total_returned += returned
                if vote.agreed_with_consensus:
                    s.reward_count += 1
                    s.current_streak = s.current_streak + 1 if s.current_streak >= 0 else 1
                    s.best_streak = max(s.best_streak, s.current_streak)
                else:
                    s.slash_count += 1
                    s.current_streak = s.current_streak - 1 if s.current_streak <= 0 else -1

        for s in stats.values():
            s.total_staked = round(s.total_staked, 2)
            s.total_returned = round(s.total_returned, 2)
            s.pnl = round(s.total_returned - s.total_staked, 2)
            s.agreement_rate = round(s.reward_count / s.rounds * 100, 1) if s.rounds else 0.0
        return stats

    def agent_stats(self, key: str) -> ACPAgentStats | None:
        with self._lock:
            return self._all_stats().get(key)

    def leaderboard(self) -> list[ACPAgentStats]:
        """Agents sorted by net pnl, best first."""
        with self._lock:
            return self._leaderboard()

    def status(self) -> dict[str, Any]:
        """Totals, recent rounds, leaderboard and logs from one consistent state."""
        with self._lock:
            data = self._store.get()
            return {
                "version": ACP_VERSION,
                "total_rounds": len(data.rounds),
                "total_slashes": len(data.slash_log),
                "total_rewards": len(data.reward_log),
                "recent_rounds": self._recent_rounds(10),
                "leaderboard": self._leaderboard(),
                "recent_slashes": self._slash_log(20, 0),
                "recent_rewards": self._reward_log(20, 0),
            }


# ---------------------------------------------------------------------------
# Static protocol description
# ---------------------------------------------------------------------------

def protocol_spec() -> dict[str, Any]:
    """Phases, formulas and thresholds for external auditors and agents."""
    return {
        "protocol": "Alpha Consensus Protocol",
        "version": ACP_VERSION,
        "headers": {
            "version": ACP_HEADER_VERSION,
            "direction": ACP_HEADER_DIRECTION,
            "confidence": ACP_HEADER_CONFIDENCE,
            "stake": ACP_HEADER_STAKE,
        },
        "phases": [
            {"name": ACPPhase.COLLECT.value,
             "description": "Read X-ACP-* headers from agent responses; "
                            "fall back to per-category direction/confidence extraction"},
            {"name": ACPPhase.CONSENSUS.value,
             "description": "Weighted vote using effectiveStake * reputation; the strictly "
                            f"heaviest direction above {CONSENSUS_WEIGHT_FLOOR} wins, else neutral"},
            {"name": ACPPhase.SETTLE.value,
             "description": "Slash agents against consensus, reward those aligned; "
                            "bonus/penalty for high-confidence votes"},
        ],
        "staking": {
            "max_stake": MAX_STAKE,
            "effective_stake_formula": "min(declaredStake, MAX_STAKE * reputation)",
            "weight_formula": "effectiveStake * reputation",
            "default_declared_stake": "MAX_STAKE * confidence",
        },
        "slashing_rules": [
            {"rule": "Against consensus", "trigger": "direction != consensus",
             "slash": f"{SLASH_RATE:.0%} of stake * confidence",
             "reputation": f"score * {DECAY_FACTOR} - {INCORRECT_PENALTY}"},
            {"rule": "With consensus", "trigger": "direction == consensus or consensus neutral",
             "reward": f"{REWARD_RATE:.0%} of stake * confidence",
             "reputation": f"score * {DECAY_FACTOR} + {CORRECT_REWARD}"},
            {"rule": "High confidence wrong",
             "trigger": f"wrong AND confidence > {HIGH_CONFIDENCE_THRESHOLD}",
             "extra_slash": f"{HIGH_CONF_EXTRA_SLASH:.0%} of stake",
             "extra_reputation": -REP_HIGH_CONF_WRONG},
            {"rule": "High confidence correct",
             "trigger": f"correct AND confidence > {HIGH_CONFIDENCE_THRESHOLD}",
             "extra_reward": f"{HIGH_CONF_EXTRA_REWARD:.0%} of stake",
             "extra_reputation": REP_HIGH_CONF_RIGHT},
        ],
        "reputation_bounds": [MIN_REPUTATION, MAX_REPUTATION],
        "limits": {"max_rounds": MAX_ROUNDS, "max_events": MAX_EVENTS},
        "endpoints": {
            "GET /acp/status": "Protocol stats, leaderboard, recent rounds",
            "GET /acp/round/{id}": "Individual round detail",
            "GET /acp/slashes": "Slash event log (query: limit, offset)",
            "GET /acp/rewards": "Reward event log (query: limit, offset)",
            "GET /acp/agent/{key}": "Agent-specific ACP stats",
            "GET /acp/spec": "This specification",
        },
    }
