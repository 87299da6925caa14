"""
app/services/coordinator.py
Owns the stateful components of one process and wires them together:
stores -> registry / ledger / ACP engine, breakers, orchestrator.

The FastAPI lifespan builds one Coordinator and stores it on app.state;
routes get it through the get_coordinator dependency.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass

import httpx
from fastapi import Request

from agents.registry import AgentRegistry, RegistryData
from app.services.acp import ACPData, ACPEngine, ACPRound
from app.services.events import HuntEvents
from app.services.orchestrator import AgentCaller, HttpAgentCaller, HuntResult, Orchestrator
from app.services.reputation import ReputationData, ReputationLedger
from core.circuit_breaker import CircuitBreakerRegistry
from core.config import Settings
from core.store import StoreRegistry

logger = logging.getLogger(__name__)


@dataclass
class HuntOutcome:
    hunt_id: str
    hunt: HuntResult
    round: ACPRound


class Coordinator:
    """Process-wide owner of agent state."""

    def __init__(
        self,
        settings: Settings,
        stores: StoreRegistry,
        client: httpx.AsyncClient | None = None,
        caller: AgentCaller | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        if client is None and caller is None:
            raise ValueError("Coordinator needs an HTTP client or an agent caller")

        self.settings = settings
        self.stores = stores
        self.breakers = breakers or CircuitBreakerRegistry()
        self.registry = AgentRegistry(stores.create("registry", RegistryData), settings, client)
        self.ledger = ReputationLedger(
            stores.create("reputation", ReputationData), known_keys=self.registry.keys,
        )
        self.acp = ACPEngine(stores.create("acp-rounds", ACPData), self.ledger)
        self.orchestrator = Orchestrator(
            registry=self.registry,
            breakers=self.breakers,
            ledger=self.ledger,
            caller=caller or HttpAgentCaller(client),
            settings=settings,
        )

    def load(self) -> None:
        """Load persisted state; order matters (registry keys feed the ledger)."""
        self.registry.load()
        self.ledger.load()
        self.acp.load()

    async def run_hunt(
        self,
        topic: str,
        cancel: asyncio.Event | None = None,
        events: HuntEvents | None = None,
    ) -> HuntOutcome:
        """
        Fan out to all agents, then run one ACP round on the replies.

        Cancellation stops agent calls only; once settlement starts it runs
        to completion.
        """
        hunt_id = uuid.uuid4().hex[:12]
        hunt = await self.orchestrator.hunt_all_agents(topic, cancel=cancel, events=events)

        on_phase = events.publish if events is not None else None
        settle = asyncio.ensure_future(asyncio.to_thread(
            self.acp.run_hunt_round, topic, hunt.round_input, hunt_id, on_phase,
        ))
        try:
            acp_round = await asyncio.shield(settle)
        except asyncio.CancelledError:
            await settle
            raise

        if events is not None:
            events.publish("round", acp_round.model_dump(mode="json"))
        return HuntOutcome(hunt_id=hunt_id, hunt=hunt, round=acp_round)

    def flush(self) -> int:
        """Write dirty stores between rounds, never in the middle of one.

        Lock order matches run_hunt_round: engine lock, then ledger lock.
        """
        with self.acp.lock, self.ledger.lock:
            return self.stores.flush_all()


def get_coordinator(request: Request) -> Coordinator:
    """FastAPI dependency: the process coordinator."""
    return request.app.state.coordinator
