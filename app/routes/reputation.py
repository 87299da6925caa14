"""
app/routes/reputation.py
Reputation endpoints — current scores and a full reset.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.services.coordinator import Coordinator, get_coordinator
from app.services.reputation import AgentReputation

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/reputation", tags=["reputation"])


class ReputationResponse(BaseModel):
    agents: list[AgentReputation]


@router.get("", response_model=ReputationResponse)
def list_reputation(coordinator: Coordinator = Depends(get_coordinator)) -> ReputationResponse:
    return ReputationResponse(agents=coordinator.ledger.all_reputations())


@router.post("/reset", response_model=ReputationResponse)
def reset_reputation(coordinator: Coordinator = Depends(get_coordinator)) -> ReputationResponse:
    """Reset every known agent to the initial score."""
    coordinator.ledger.reset_all()
    logger.info("Reputation reset requested via API")
    return ReputationResponse(agents=coordinator.ledger.all_reputations())
