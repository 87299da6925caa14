"""
app/routes/acp.py
Alpha Consensus Protocol endpoints — read-only views over settled rounds.
Handlers that read engine state are plain functions run in FastAPI's
threadpool, so the engine lock is never taken on the event loop.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.services.acp import ACPAgentStats, ACPRound, RewardEvent, SlashEvent, protocol_spec
from app.services.coordinator import Coordinator, get_coordinator
from core.constants import MAX_EVENTS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/acp", tags=["acp"])


# ------------------------------------------------------------------
# Response models
# ------------------------------------------------------------------

class ACPStatusResponse(BaseModel):
    """Response for GET /acp/status."""
    version: int
    total_rounds: int
    total_slashes: int
    total_rewards: int
    recent_rounds: list[ACPRound]
    leaderboard: list[ACPAgentStats]
    recent_slashes: list[SlashEvent]
    recent_rewards: list[RewardEvent]


class SlashLogResponse(BaseModel):
    slashes: list[SlashEvent]
    limit: int
    offset: int


class RewardLogResponse(BaseModel):
    rewards: list[RewardEvent]
    limit: int
    offset: int


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.get("/status", response_model=ACPStatusResponse)
def acp_status(coordinator: Coordinator = Depends(get_coordinator)) -> ACPStatusResponse:
    return ACPStatusResponse(**coordinator.acp.status())


@router.get("/round/{round_id}", response_model=ACPRound)
def acp_round(
    round_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> ACPRound:
    found = coordinator.acp.get_round(round_id)
    if found is None:
        raise HTTPException(status_code=404, detail=f"Round not found: {round_id}")
    return found


@router.get("/slashes", response_model=SlashLogResponse)
def acp_slashes(
    limit: int = Query(50, ge=1, le=MAX_EVENTS),
    offset: int = Query(0, ge=0),
    coordinator: Coordinator = Depends(get_coordinator),
) -> SlashLogResponse:
    return SlashLogResponse(
        slashes=coordinator.acp.slash_log(limit, offset), limit=limit, offset=offset,
    )


@router.get("/rewards", response_model=RewardLogResponse)
def acp_rewards(
    limit: int = Query(50, ge=1, le=MAX_EVENTS),
    offset: int = Query(0, ge=0),
    coordinator: Coordinator = Depends(get_coordinator),
) -> RewardLogResponse:
    return RewardLogResponse(
        rewards=coordinator.acp.reward_log(limit, offset), limit=limit, offset=offset,
    )


@router.get("/agent/{key}", response_model=ACPAgentStats)
def acp_agent(
    key: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> ACPAgentStats:
    stats = coordinator.acp.agent_stats(key)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No ACP history for agent: {key}")
    return stats


@router.get("/spec")
async def acp_spec() -> dict[str, Any]:
    return protocol_spec()
