"""
app/routes/agents.py
Agent registry and circuit breaker endpoints.
  GET    /registry            -> all agents with online status and effective price
  POST   /registry/register   -> add an external agent (health-checked immediately)
  DELETE /registry/{key}      -> remove an external agent
  GET    /circuits            -> breaker state per agent
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from agents.registry import AgentEntry, AgentRegistration
from app.services.coordinator import Coordinator, get_coordinator
from core.exceptions import RegistryError

logger = logging.getLogger(__name__)
router = APIRouter(tags=["agents"])


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class AgentView(BaseModel):
    """One agent as listed by GET /registry."""
    agent: AgentEntry
    reputation: float
    effective_price: float
    circuit: str


class RegistryResponse(BaseModel):
    agents: list[AgentView]
    online: int
    external: int


class RegisterResponse(BaseModel):
    agent: AgentEntry
    healthy: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/registry", response_model=RegistryResponse)
def list_agents(coordinator: Coordinator = Depends(get_coordinator)) -> RegistryResponse:
    registry = coordinator.registry
    views = []
    for entry in registry.all():
        rep = coordinator.ledger.score(entry.key)
        views.append(AgentView(
            agent=entry,
            reputation=round(rep, 3),
            effective_price=registry.effective_price(entry.key, rep),
            circuit=coordinator.breakers.state(entry.key).value,
        ))
    return RegistryResponse(
        agents=views,
        online=len(registry.online()),
        external=len(registry.external()),
    )


@router.post("/registry/register", response_model=RegisterResponse)
async def register_agent(
    body: AgentRegistration,
    coordinator: Coordinator = Depends(get_coordinator),
) -> RegisterResponse:
    try:
        entry = coordinator.registry.register(body)
    except RegistryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    healthy = await coordinator.registry.check_health(entry)
    if not healthy:
        logger.warning("Registered agent %s failed its first health check", entry.key)
    return RegisterResponse(agent=entry, healthy=healthy)


@router.delete("/registry/{key}")
async def unregister_agent(
    key: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> dict:
    try:
        removed = coordinator.registry.unregister(key)
    except RegistryError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=404, detail=f"Agent not found: {key}")
    return {"removed": key}


@router.get("/circuits")
def circuits(coordinator: Coordinator = Depends(get_coordinator)) -> dict[str, dict]:
    return coordinator.breakers.snapshot()
