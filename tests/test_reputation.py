"""
tests/test_reputation.py
Tests for the reputation ledger: score bounds, settlement formulas, reset.
"""

import pytest

from agents import Direction
from app.services.reputation import (
    AgentReputation,
    ReputationData,
    ReputationLedger,
    StakeEntry,
    next_score,
    slash_return,
    stake_amount,
)
from core.constants import HISTORY_SIZE, INITIAL_REPUTATION, MAX_REPUTATION, MIN_REPUTATION
from core.store import MemoryStore


def _ledger(scores: dict[str, float] | None = None, keys=None) -> ReputationLedger:
    initial = ReputationData(agents={
        k: AgentReputation(key=k, score=s) for k, s in (scores or {}).items()
    })
    store = MemoryStore("reputation", ReputationData, initial=initial)
    return ReputationLedger(store, known_keys=(lambda: keys) if keys else None)


class TestNextScore:
    def test_agreement_raises_score(self):
        assert next_score(0.5, True) == pytest.approx(0.525)

    def test_disagreement_lowers_score(self):
        assert next_score(0.5, False) == pytest.approx(0.395)

    def test_extra_delta_applies_after_decay(self):
        assert next_score(0.5, True, 0.03) == pytest.approx(0.555)
        assert next_score(0.5, False, -0.05) == pytest.approx(0.345)

    def test_score_stays_in_bounds(self):
        score = INITIAL_REPUTATION
        for i in range(500):
            agreed = (i // 7) % 2 == 0
            extra = 0.03 if agreed else -0.05
            score = next_score(score, agreed, extra)
            assert MIN_REPUTATION <= score <= MAX_REPUTATION

    def test_floor_and_ceiling(self):
        assert next_score(MIN_REPUTATION, False, -0.05) == MIN_REPUTATION
        assert next_score(MAX_REPUTATION, True, 0.03) == MAX_REPUTATION


class TestFormulas:
    def test_stake_amount(self):
        assert stake_amount(0.8, 0.5) == 40.0

    def test_slash_never_negative(self):
        assert slash_return(10, 5.0) == 0.0


class TestLedgerReads:
    def test_unknown_agent_has_defaults(self):
        ledger = _ledger()
        rep = ledger.get_reputation("ghost")
        assert rep.score == INITIAL_REPUTATION
        assert rep.hunts == 0
        assert ledger.score("ghost") == INITIAL_REPUTATION

    def test_get_reputation_returns_copy(self):
        ledger = _ledger({"a": 0.7})
        rep = ledger.get_reputation("a")
        rep.score = 0.1
        assert ledger.score("a") == 0.7

    def test_all_reputations_includes_known_keys(self):
        ledger = _ledger({"a": 0.7}, keys=["a", "b"])
        keys = [r.key for r in ledger.all_reputations()]
        assert keys == ["a", "b"]


class TestSettle:
    def test_settle_rewards_and_slashes(self):
        ledger = _ledger()
        summary = ledger.settle(
            "s1",
            [
                StakeEntry("a", Direction.BULLISH, 0.8),
                StakeEntry("b", Direction.BEARISH, 0.5),
            ],
            Direction.BULLISH,
        )
        a, b = summary.results

        assert a.staked == 40.0
        assert a.returned == pytest.approx(49.6)
        assert a.correct is True
        assert a.reputation_after == pytest.approx(0.525)

        assert b.staked == 25.0
        assert b.returned == pytest.approx(18.75)
        assert b.correct is False
        assert b.reputation_after == pytest.approx(0.395)

        assert summary.total_staked == 65.0
        assert summary.net_pnl == pytest.approx(3.35)

    def test_neutral_consensus_rewards_everyone(self):
        ledger = _ledger()
        summary = ledger.settle(
            "s2",
            [StakeEntry("a", Direction.BULLISH, 0.5), StakeEntry("b", Direction.BEARISH, 0.5)],
            Direction.NEUTRAL,
        )
        assert all(r.correct for r in summary.results)

    def test_settle_updates_counters_and_history(self):
        ledger = _ledger()
        for i in range(HISTORY_SIZE + 5):
            ledger.settle(f"r{i}", [StakeEntry("a", Direction.BULLISH, 0.5)], Direction.BULLISH)
        rep = ledger.get_reputation("a")
        assert rep.hunts == HISTORY_SIZE + 5
        assert rep.correct == HISTORY_SIZE + 5
        assert len(rep.history) == HISTORY_SIZE
        assert rep.pnl > 0


class TestApplyOutcome:
    def test_reports_before_and_after(self):
        ledger = _ledger({"a": 0.5})
        update = ledger.apply_outcome("a", True, 50.0, 68.75, extra_delta=0.03)
        assert update.reputation_before == 0.5
        assert update.reputation_after == pytest.approx(0.555)
        assert update.delta == pytest.approx(0.055)
        assert ledger.get_reputation("a").pnl == pytest.approx(18.75)


class TestReset:
    def test_reset_all_restores_initial_scores(self):
        ledger = _ledger({"a": 0.9, "b": 0.1}, keys=["a", "b", "c"])
        ledger.apply_outcome("a", True, 10, 12)
        ledger.reset_all()

        for rep in ledger.all_reputations():
            assert rep.score == INITIAL_REPUTATION
            assert rep.hunts == 0
            assert rep.pnl == 0.0
