"""
tests/test_orchestrator.py
Tests for the agent fan-out: retries, circuit breakers, cancellation,
HTTP transport and rival-agent competitions.
"""

import asyncio
import json

import httpx
import pytest

from agents import AgentCategory
from agents.registry import AgentEntry, AgentRegistry, RegistryData
from app.services.orchestrator import HttpAgentCaller, Orchestrator
from app.services.reputation import AgentReputation, ReputationData, ReputationLedger
from core.circuit_breaker import CircuitState
from core.exceptions import AgentCallError
from core.store import MemoryStore
from conftest import FakeCaller, make_reply


def _orchestrator(settings, breakers, caller, scores=None) -> Orchestrator:
    registry = AgentRegistry(MemoryStore("registry", RegistryData), settings)
    registry.load()
    reps = ReputationData(agents={
        k: AgentReputation(key=k, score=s) for k, s in (scores or {}).items()
    })
    ledger = ReputationLedger(MemoryStore("reputation", ReputationData, initial=reps))
    return Orchestrator(
        registry=registry, breakers=breakers, ledger=ledger, caller=caller, settings=settings,
    )


def _entry(**overrides) -> AgentEntry:
    fields = dict(
        key="ext", display_name="External", url="http://ext.test", endpoint="/analyze",
        category=AgentCategory.OTHER, online=True,
    )
    fields.update(overrides)
    return AgentEntry(**fields)


def _retryable(key: str = "defi") -> AgentCallError:
    return AgentCallError(key, "HTTP 503", status=503, retryable=True)


class TestFanOut:
    @pytest.mark.asyncio
    async def test_every_online_agent_is_called(self, settings, breakers):
        caller = FakeCaller()
        orch = _orchestrator(settings, breakers, caller)
        hunt = await orch.hunt_all_agents("bitcoin")

        assert sorted(caller.calls) == sorted(
            ["sentiment", "sentiment2", "polymarket", "defi", "news", "whale"]
        )
        assert len(hunt.responded) == 6
        assert hunt.warnings == []

    @pytest.mark.asyncio
    async def test_failed_agent_maps_to_none(self, settings, breakers):
        caller = FakeCaller({"news": AgentCallError("news", "HTTP 404", status=404)})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("bitcoin")

        assert hunt.replies["news"] is None
        assert "news" not in hunt.responded
        assert any(w.startswith("news:") for w in hunt.warnings)

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, settings, breakers):
        caller = FakeCaller({"whale": RuntimeError("boom")})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("bitcoin")
        assert hunt.replies["whale"] is None
        assert breakers.entry("whale").failures == 1


class TestRetry:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried(self, settings, breakers):
        reply = make_reply("defi", "bullish", 0.6)
        caller = FakeCaller({"defi": [_retryable(), _retryable(), reply]})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("eth")

        assert caller.count("defi") == 3
        assert hunt.replies["defi"] is reply
        assert breakers.entry("defi").failures == 0

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, settings, breakers):
        caller = FakeCaller({"defi": _retryable()})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("eth")

        assert caller.count("defi") == settings.AGENT_CALL_RETRIES + 1
        assert hunt.replies["defi"] is None
        # One failed call is one breaker failure, however many attempts it took
        assert breakers.entry("defi").failures == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, settings, breakers):
        caller = FakeCaller({"defi": AgentCallError("defi", "HTTP 400", status=400)})
        await _orchestrator(settings, breakers, caller).hunt_all_agents("eth")
        assert caller.count("defi") == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, settings, breakers):
        settings.AGENT_CALL_TIMEOUT = 0.05
        attempts = 0

        async def slow_then_fast(entry, topic):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                await asyncio.sleep(1)
            return make_reply(entry.key, "bearish", 0.5)

        caller = FakeCaller({"news": slow_then_fast})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("eth")
        assert attempts == 2
        assert hunt.replies["news"] is not None


class TestCircuitBreakerGating:
    @pytest.mark.asyncio
    async def test_open_circuit_skips_network(self, settings, breakers):
        caller = FakeCaller({"defi": AgentCallError("defi", "HTTP 400", status=400)})
        orch = _orchestrator(settings, breakers, caller)
        for _ in range(3):
            await orch.hunt_all_agents("eth")
        assert breakers.state("defi") == CircuitState.OPEN

        hunt = await orch.hunt_all_agents("eth")
        assert caller.count("defi") == 3
        assert hunt.replies["defi"] is None
        assert "defi: circuit open" in hunt.warnings

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_on_success(self, settings, breakers, clock):
        caller = FakeCaller({"defi": [
            AgentCallError("defi", "HTTP 400", status=400),
            AgentCallError("defi", "HTTP 400", status=400),
            AgentCallError("defi", "HTTP 400", status=400),
            make_reply("defi", "bullish", 0.5),
        ]})
        orch = _orchestrator(settings, breakers, caller)
        for _ in range(3):
            await orch.hunt_all_agents("eth")

        clock.advance(120)
        hunt = await orch.hunt_all_agents("eth")
        assert hunt.replies["defi"] is not None
        assert breakers.state("defi") == CircuitState.CLOSED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_calls(self, settings, breakers):
        settings.AGENT_CALL_TIMEOUT = 30

        async def hang(entry, topic):
            await asyncio.sleep(30)

        caller = FakeCaller({"polymarket": hang})
        orch = _orchestrator(settings, breakers, caller)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        hunt = await asyncio.wait_for(orch.hunt_all_agents("eth", cancel=cancel), timeout=5)

        assert hunt.replies["polymarket"] is None
        assert "polymarket: aborted" in hunt.warnings
        assert breakers.entry("polymarket").failures == 1
        assert hunt.replies["news"] is not None

    @pytest.mark.asyncio
    async def test_already_cancelled_makes_no_calls(self, settings, breakers):
        caller = FakeCaller()
        cancel = asyncio.Event()
        cancel.set()
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("eth", cancel=cancel)

        assert caller.calls == []
        assert hunt.responded == []


class TestCompetition:
    @pytest.mark.asyncio
    async def test_better_ratio_wins_slot(self, settings, breakers):
        orch = _orchestrator(settings, breakers, FakeCaller(), scores={"sentiment2": 0.8})
        hunt = await orch.hunt_all_agents("eth")

        assert len(hunt.competitions) == 1
        comp = hunt.competitions[0]
        assert comp.winner == "sentiment2"
        assert comp.loser == "sentiment"
        # 0.8 / (0.001 * 1.3) vs 0.5 / (0.001 * 1.0)
        assert comp.winner_ratio == pytest.approx(615.4)
        assert comp.loser_ratio == pytest.approx(500.0)
        assert hunt.round_input["sentiment"] is None
        assert hunt.replies["sentiment"] is not None

    @pytest.mark.asyncio
    async def test_offline_rival_loses_by_default(self, settings, breakers):
        caller = FakeCaller({"sentiment": AgentCallError("sentiment", "HTTP 404", status=404)})
        hunt = await _orchestrator(settings, breakers, caller).hunt_all_agents("eth")

        comp = hunt.competitions[0]
        assert comp.winner == "sentiment2"
        assert "wins by default" in comp.reason
        assert comp.loser_ratio == 0.0
        assert hunt.round_input["sentiment2"] is not None


class TestHttpAgentCaller:
    @pytest.mark.asyncio
    async def test_posts_topic_and_collects_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(
                200,
                json={"result": {"direction": "bullish"}},
                headers={"X-ACP-Direction": "bullish", "X-ACP-Confidence": "0.7", "Server": "x"},
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            reply = await HttpAgentCaller(client)(_entry(), "bitcoin")

        assert seen["url"] == "http://ext.test/analyze"
        assert b'"topic"' in seen["body"]
        assert reply.headers == {"x-acp-direction": "bullish", "x-acp-confidence": "0.7"}
        assert reply.payload == {"result": {"direction": "bullish"}}
        assert reply.response_time_ms is not None

    @pytest.mark.asyncio
    async def test_builtin_sentiment_gets_text_body(self, settings):
        registry = AgentRegistry(MemoryStore("registry", RegistryData), settings)
        registry.load()

        def handler(request: httpx.Request) -> httpx.Response:
            if "text" not in json.loads(request.content):
                return httpx.Response(400, json={"error": "text is required"})
            return httpx.Response(200, json={"result": {"sentiment": "positive"}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            reply = await HttpAgentCaller(client)(registry.get("sentiment"), "bitcoin")

        assert reply.payload == {"result": {"sentiment": "positive"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True),
                                                  (404, False), (400, False)])
    async def test_error_status_classification(self, status, retryable):
        transport = httpx.MockTransport(lambda request: httpx.Response(status))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(AgentCallError) as exc_info:
                await HttpAgentCaller(client)(_entry(), "bitcoin")
        assert exc_info.value.status == status
        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(AgentCallError) as exc_info:
                await HttpAgentCaller(client)(_entry(), "bitcoin")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_non_json_body_gives_empty_payload(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        async with httpx.AsyncClient(transport=transport) as client:
            reply = await HttpAgentCaller(client)(_entry(), "bitcoin")
        assert reply.payload is None
