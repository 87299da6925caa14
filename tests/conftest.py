"""
tests/conftest.py
Shared fixtures for the test suite.
"""

import httpx
import pytest

from agents import AgentCategory, AgentReply
from agents.registry import AgentEntry
from app.services.coordinator import Coordinator
from core.circuit_breaker import CircuitBreakerRegistry
from core.config import Settings
from core.constants import (
    ACP_HEADER_CONFIDENCE,
    ACP_HEADER_DIRECTION,
    ACP_HEADER_STAKE,
    ACP_HEADER_VERSION,
)
from core.store import StoreRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_reply(
    key: str,
    direction: str | None = None,
    confidence: float | None = None,
    stake: float | None = None,
    payload: dict | None = None,
    category: AgentCategory = AgentCategory.OTHER,
) -> AgentReply:
    """Agent reply; protocol headers are set when direction/confidence are given."""
    headers: dict[str, str] = {}
    if direction is not None and confidence is not None:
        headers[ACP_HEADER_VERSION] = "1"
        headers[ACP_HEADER_DIRECTION] = direction
        headers[ACP_HEADER_CONFIDENCE] = str(confidence)
        if stake is not None:
            headers[ACP_HEADER_STAKE] = str(stake)
    return AgentReply(
        key=key,
        category=category,
        payload=payload if payload is not None else {"result": {}},
        headers=headers,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCaller:
    """
    Agent caller driven by per-agent behaviours.

    A behaviour is an AgentReply, an exception instance, an async callable
    (entry, topic) -> AgentReply, or a list of those consumed in order
    (the last item repeats). Agents without a behaviour reply neutrally.
    """

    def __init__(self, behaviours: dict | None = None) -> None:
        self.behaviours = behaviours or {}
        self.calls: list[str] = []

    async def __call__(self, entry: AgentEntry, topic: str) -> AgentReply:
        self.calls.append(entry.key)
        behaviour = self.behaviours.get(entry.key)
        if isinstance(behaviour, list):
            behaviour = behaviour.pop(0) if len(behaviour) > 1 else behaviour[0]

        if behaviour is None:
            return AgentReply(key=entry.key, category=entry.category, payload={"result": {}})
        if isinstance(behaviour, BaseException):
            raise behaviour
        if isinstance(behaviour, AgentReply):
            return behaviour
        return await behaviour(entry, topic)

    def count(self, key: str) -> int:
        return self.calls.count(key)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with fast retries."""
    return Settings(
        _env_file=None,
        AGENT_CALL_TIMEOUT=1.0,
        AGENT_CALL_RETRIES=2,
        AGENT_RETRY_BASE_DELAY=0,
        HEALTH_MAX_FAILURES=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breakers(clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(clock=clock)


@pytest.fixture
def fake_caller() -> FakeCaller:
    return FakeCaller()


def _health_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/health":
        return httpx.Response(200, json={"status": "ok"})
    return httpx.Response(404)


@pytest.fixture
def http_client() -> httpx.AsyncClient:
    """httpx client whose agents all answer /health with 200."""
    return httpx.AsyncClient(transport=httpx.MockTransport(_health_handler))


@pytest.fixture
def coordinator(
    settings: Settings,
    fake_caller: FakeCaller,
    breakers: CircuitBreakerRegistry,
) -> Coordinator:
    """In-memory coordinator with built-in agents loaded."""
    coord = Coordinator(settings, StoreRegistry(), caller=fake_caller, breakers=breakers)
    coord.load()
    return coord
