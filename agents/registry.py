"""
agents/registry.py
Agent registry — built-in agents plus externally registered ones.

Built-in agents are seeded from settings on load and are always online.
External agents persist in the "registry" blob, start offline, and are
health-checked periodically (offline after HEALTH_MAX_FAILURES misses).
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field

from agents import AgentCategory
from core.config import Settings
from core.constants import MIN_EFFECTIVE_PRICE
from core.exceptions import RegistryError
from core.store import StateStore

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class AgentRegistration(BaseModel):
    """What an external agent supplies when it registers."""
    key: str = Field(min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_\-]+$")
    display_name: str
    url: str
    endpoint: str = "/analyze"
    price: float = Field(default=0.001, ge=0)
    description: str = ""
    category: AgentCategory = AgentCategory.OTHER

    model_config = {"extra": "ignore"}


class AgentEntry(AgentRegistration):
    """A registry row: registration plus liveness bookkeeping."""
    builtin: bool = False
    online: bool = False
    registered_at: str = Field(default_factory=_utcnow_iso)
    last_health_check: str | None = None
    health_failures: int = 0


class RegistryData(BaseModel):
    """Persisted blob: only external registrations are stored."""
    version: int = 1
    external: list[AgentRegistration] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


# ---------------------------------------------------------------------------
# Built-ins and rival slots
# ---------------------------------------------------------------------------

# Two agents competing for one opinion slot; the higher reputation/price wins.
COMPETITION_SLOTS: dict[str, tuple[str, str]] = {
    "sentiment": ("sentiment", "sentiment2"),
}

# Request bodies the built-in agents accept; external agents get {"topic": ...}.
BUILTIN_REQUEST_BODIES: dict[str, Callable[[str], dict[str, Any]]] = {
    "sentiment": lambda topic: {"text": topic},
    "sentiment2": lambda topic: {"text": topic},
    "polymarket": lambda topic: {"filter": topic, "limit": 5},
    "defi": lambda topic: {"asset": topic, "limit": 5},
    "news": lambda topic: {"topic": topic, "limit": 5},
    "whale": lambda topic: {"limit": 10},
}


def request_body(entry: AgentEntry, topic: str) -> dict[str, Any]:
    """JSON body for one agent call."""
    build = BUILTIN_REQUEST_BODIES.get(entry.key) if entry.builtin else None
    return build(topic) if build else {"topic": topic}


def builtin_agents(settings: Settings) -> list[AgentEntry]:
    """Built-in agent definitions, addressed on AGENT_HOST."""
    host = settings.AGENT_HOST.rstrip("/")
    defs = [
        ("sentiment", "crypto-sentiment", settings.PORT_SENTIMENT, "/analyze", 0.001,
         "Crypto market sentiment: bullish/bearish signals from text", AgentCategory.SENTIMENT),
        ("sentiment2", "crypto-sentiment-v2", settings.PORT_SENTIMENT2, "/analyze", 0.001,
         "Conservative sentiment analysis, competing agent", AgentCategory.SENTIMENT),
        ("polymarket", "polymarket-alpha-scanner", settings.PORT_POLYMARKET, "/scan", 0.02,
         "Mispriced prediction markets", AgentCategory.PREDICTION),
        ("defi", "defi-alpha-scanner", settings.PORT_DEFI, "/scan", 0.015,
         "DeFi momentum, yield and arbitrage signals", AgentCategory.DEFI),
        ("news", "news-agent", settings.PORT_NEWS, "/news", 0.001,
         "Fresh news articles for a topic", AgentCategory.NEWS),
        ("whale", "whale-agent", settings.PORT_WHALE, "/whale", 0.002,
         "Large on-chain wallet flows", AgentCategory.ONCHAIN),
    ]
    return [
        AgentEntry(
            key=key,
            display_name=name,
            url=f"{host}:{port}",
            endpoint=endpoint,
            price=price,
            description=description,
            category=category,
            builtin=True,
            online=True,
        )
        for key, name, port, endpoint, price, description, category in defs
    ]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class AgentRegistry:
    """Built-in and external agents known to the coordinator."""

    def __init__(
        self,
        store: StateStore[RegistryData],
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._client = client
        self._agents: dict[str, AgentEntry] = {}
        self._builtin_keys: set[str] = set()

    def load(self) -> None:
        """Seed built-ins, then restore persisted external agents (offline)."""
        data = self._store.load()
        self._agents.clear()
        for entry in builtin_agents(self._settings):
            self._agents[entry.key] = entry
        self._builtin_keys = set(self._agents)

        restored = 0
        for reg in data.external:
            if reg.key in self._builtin_keys:
                continue
            self._agents[reg.key] = AgentEntry(**reg.model_dump(), builtin=False, online=False)
            restored += 1

        logger.info(
            "Registry loaded: %d built-in, %d external", len(self._builtin_keys), restored,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, reg: AgentRegistration) -> AgentEntry:
        if reg.key in self._builtin_keys:
            raise RegistryError(f"Cannot overwrite built-in agent: {reg.key}")
        entry = AgentEntry(**reg.model_dump(), builtin=False, online=False)
        self._agents[reg.key] = entry
        self._save()
        logger.info("Agent registered: %s at %s", reg.key, reg.url)
        return entry

    def unregister(self, key: str) -> bool:
        if key in self._builtin_keys:
            raise RegistryError(f"Cannot unregister built-in agent: {key}")
        removed = self._agents.pop(key, None) is not None
        if removed:
            self._save()
            logger.info("Agent unregistered: %s", key)
        return removed

    def _save(self) -> None:
        external = [
            AgentRegistration(**a.model_dump(include=set(AgentRegistration.model_fields)))
            for a in self.external()
        ]
        self._store.set(RegistryData(external=external))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, key: str) -> AgentEntry | None:
        return self._agents.get(key)

    def all(self) -> list[AgentEntry]:
        return list(self._agents.values())

    def keys(self) -> list[str]:
        return list(self._agents)

    def external(self) -> list[AgentEntry]:
        return [a for a in self._agents.values() if not a.builtin]

    def online(self) -> list[AgentEntry]:
        return [a for a in self._agents.values() if a.online]

    def is_builtin(self, key: str) -> bool:
        return key in self._builtin_keys

    def effective_price(self, key: str, reputation: float) -> float:
        """Base price scaled by reputation: price * (0.5 + reputation)."""
        entry = self._agents.get(key)
        base = entry.price if entry else 0.0
        return max(round(base * (0.5 + reputation), 6), MIN_EFFECTIVE_PRICE)

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def check_health(self, entry: AgentEntry) -> bool:
        """GET {url}/health; mark offline after repeated misses."""
        if self._client is None:
            raise RuntimeError("Registry has no HTTP client for health checks")
        healthy = False
        try:
            resp = await self._client.get(
                f"{entry.url}/health", timeout=self._settings.HEALTH_CHECK_TIMEOUT,
            )
            healthy = resp.is_success
        except httpx.HTTPError as exc:
            logger.debug("Health check failed for %s: %s", entry.key, exc)

        entry.last_health_check = _utcnow_iso()
        if healthy:
            entry.online = True
            entry.health_failures = 0
        else:
            entry.health_failures += 1
            if entry.health_failures >= self._settings.HEALTH_MAX_FAILURES:
                if entry.online:
                    logger.warning("Agent %s offline after %d failed checks",
                                   entry.key, entry.health_failures)
                entry.online = False
        return healthy

    async def run_health_checks(self) -> int:
        """Check every external agent concurrently. Returns how many are online."""
        external = self.external()
        if not external:
            return 0
        await asyncio.gather(*(self.check_health(a) for a in external))
        return sum(1 for a in external if a.online)
