"""
app/routes/hunt.py
Hunt endpoints — fan out a topic to all agents and run one ACP round.
  POST /hunt          -> JSON result once the round has settled
  GET  /hunt/stream   -> server-sent events: agent results, phases, round
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.services.acp import ACPRound
from app.services.coordinator import Coordinator, get_coordinator
from app.services.events import HuntEvents

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/hunt", tags=["hunt"])

DISCONNECT_POLL_SECONDS = 0.5


# ------------------------------------------------------------------
# Request / response models
# ------------------------------------------------------------------

class HuntRequest(BaseModel):
    topic: str = Field(default="crypto market", min_length=1, max_length=200)
    deadline_seconds: float | None = Field(default=None, gt=0, le=300)


class CompetitionRow(BaseModel):
    slot: str
    winner: str
    loser: str
    winner_ratio: float
    loser_ratio: float
    reason: str


class HuntResponse(BaseModel):
    """Full response for POST /hunt."""
    hunt_id: str
    topic: str
    responded: list[str]
    warnings: list[str]
    competitions: list[CompetitionRow]
    round: ACPRound


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    """Set ``cancel`` when the client goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected, cancelling hunt")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def _sse(kind: str, data: dict) -> str:
    return f"event: {kind}\ndata: {json.dumps(data, default=str)}\n\n"


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("", response_model=HuntResponse)
async def hunt(
    body: HuntRequest,
    request: Request,
    coordinator: Coordinator = Depends(get_coordinator),
) -> HuntResponse:
    """Call every online agent, then run COLLECT -> CONSENSUS -> SETTLE."""
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    deadline = None
    if body.deadline_seconds is not None:
        deadline = asyncio.get_running_loop().call_later(body.deadline_seconds, cancel.set)

    try:
        outcome = await coordinator.run_hunt(body.topic, cancel=cancel)
    finally:
        watcher.cancel()
        if deadline is not None:
            deadline.cancel()

    return HuntResponse(
        hunt_id=outcome.hunt_id,
        topic=body.topic,
        responded=outcome.hunt.responded,
        warnings=outcome.hunt.warnings,
        competitions=[CompetitionRow(**asdict(c)) for c in outcome.hunt.competitions],
        round=outcome.round,
    )


@router.get("/stream")
async def hunt_stream(
    topic: str = Query("crypto market", min_length=1, max_length=200),
    coordinator: Coordinator = Depends(get_coordinator),
) -> StreamingResponse:
    """Stream hunt progress as server-sent events."""

    async def _generate() -> AsyncIterator[str]:
        events = HuntEvents()
        cancel = asyncio.Event()

        async def _run() -> None:
            try:
                outcome = await coordinator.run_hunt(topic, cancel=cancel, events=events)
                events.publish("done", {
                    "hunt_id": outcome.hunt_id,
                    "warnings": outcome.hunt.warnings,
                    "competitions": [asdict(c) for c in outcome.hunt.competitions],
                })
            except Exception as exc:
                logger.exception("Streaming hunt failed")
                events.publish("error", {"error": str(exc)[:300]})
            finally:
                events.close()

        task = asyncio.create_task(_run())
        try:
            yield _sse("start", {"topic": topic})
            async for event in events:
                yield _sse(event.kind, {"timestamp": event.timestamp, **event.data})
        finally:
            cancel.set()
            await task

    return StreamingResponse(_generate(), media_type="text/event-stream")
