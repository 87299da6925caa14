"""
app/main.py
FastAPI entry point for the Alpha Consensus hunt coordinator.
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from app.routes.acp import router as acp_router
from app.routes.agents import router as agents_router
from app.routes.hunt import router as hunt_router
from app.routes.reputation import router as reputation_router
from app.services.coordinator import Coordinator, get_coordinator
from core.config import get_settings
from core.constants import ACP_VERSION, SYSTEM_VERSION
from core.exceptions import DuplicateRoundError
from core.store import StoreRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: load state and start the scheduler. Shutdown: stop it and flush."""
    from app.services.scheduler import start_scheduler, stop_scheduler

    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stores = StoreRegistry(Path(settings.DATA_DIR))
    client = httpx.AsyncClient(timeout=settings.AGENT_CALL_TIMEOUT)
    coordinator = Coordinator(settings, stores, client=client)
    coordinator.load()
    app.state.coordinator = coordinator
    logger.info("Coordinator ready: %d agents, data in %s",
                len(coordinator.registry.all()), settings.DATA_DIR)

    start_scheduler(coordinator)
    try:
        yield
    finally:
        stop_scheduler()
        written = coordinator.flush()
        logger.info("Final flush: %d stores written", written)
        await client.aclose()


app = FastAPI(
    title="Alpha Consensus Hunt Coordinator",
    version=SYSTEM_VERSION,
    lifespan=lifespan,
)

app.include_router(hunt_router)
app.include_router(acp_router)
app.include_router(reputation_router)
app.include_router(agents_router)


@app.exception_handler(DuplicateRoundError)
async def duplicate_round_handler(_request: Request, exc: DuplicateRoundError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.get("/health")
async def health_check(coordinator: Coordinator = Depends(get_coordinator)) -> dict:
    """Prove the API is alive and report agent counts."""
    return {
        "status": "healthy",
        "version": SYSTEM_VERSION,
        "acp_version": ACP_VERSION,
        "agents": len(coordinator.registry.all()),
        "online": len(coordinator.registry.online()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
