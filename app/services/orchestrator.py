"""
app/services/orchestrator.py
Fan-out of one topic to every online agent, in parallel.

Each call goes through:
  1. circuit breaker admission (rejected -> None, no network attempt)
  2. per-call timeout
  3. tenacity retry with exponential backoff for retryable failures only
     (timeouts, connection errors, 429, 5xx)
The orchestrator waits for every call to settle, then resolves rival-agent
competitions. A cancel event aborts in-flight calls; aborted calls count as
breaker failures and are not retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from agents import AgentReply
from agents.registry import COMPETITION_SLOTS, AgentEntry, AgentRegistry, request_body
from app.services.events import HuntEvents
from app.services.reputation import ReputationLedger
from core.circuit_breaker import CircuitBreakerRegistry
from core.config import Settings
from core.exceptions import AgentCallError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Agent transport
# ---------------------------------------------------------------------------

class AgentCaller(Protocol):
    """Calls one agent with a topic; raises AgentCallError on failure."""

    async def __call__(self, entry: AgentEntry, topic: str) -> AgentReply: ...


class HttpAgentCaller:
    """POST the agent's request body to its endpoint over httpx."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def __call__(self, entry: AgentEntry, topic: str) -> AgentReply:
        started = time.perf_counter()
        try:
            resp = await self._client.post(
                f"{entry.url}{entry.endpoint}", json=request_body(entry, topic),
            )
        except httpx.TimeoutException as exc:
            raise AgentCallError(entry.key, "timeout", retryable=True) from exc
        except httpx.TransportError as exc:
            raise AgentCallError(entry.key, f"connection error: {exc}", retryable=True) from exc

        status = resp.status_code
        if status >= 400:
            raise AgentCallError(
                entry.key,
                f"HTTP {status}",
                status=status,
                retryable=status == 429 or status >= 500,
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        headers = {k.lower(): v for k, v in resp.headers.items() if k.lower().startswith("x-acp-")}
        return AgentReply(
            key=entry.key,
            category=entry.category,
            payload=payload if isinstance(payload, dict) else None,
            headers=headers,
            status=status,
            response_time_ms=round((time.perf_counter() - started) * 1000, 1),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompetitionResult:
    slot: str
    winner: str
    loser: str
    winner_ratio: float
    loser_ratio: float
    reason: str


@dataclass
class HuntResult:
    """Every online agent's reply (or None), plus the round input after competitions."""
    topic: str
    replies: dict[str, AgentReply | None] = field(default_factory=dict)
    round_input: dict[str, AgentReply | None] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    competitions: list[CompetitionResult] = field(default_factory=list)

    @property
    def responded(self) -> list[str]:
        return [k for k, r in self.replies.items() if r is not None]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, AgentCallError) and exc.retryable


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class Orchestrator:
    """Calls all online agents concurrently under breaker, timeout and retry."""

    def __init__(
        self,
        registry: AgentRegistry,
        breakers: CircuitBreakerRegistry,
        ledger: ReputationLedger,
        caller: AgentCaller,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._breakers = breakers
        self._ledger = ledger
        self._caller = caller
        self._timeout = settings.AGENT_CALL_TIMEOUT
        self._retries = max(0, settings.AGENT_CALL_RETRIES)
        self._base_delay = settings.AGENT_RETRY_BASE_DELAY

    async def _attempt(self, entry: AgentEntry, topic: str) -> AgentReply:
        try:
            return await asyncio.wait_for(self._caller(entry, topic), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise AgentCallError(
                entry.key, f"timeout after {self._timeout:g}s", retryable=True,
            ) from exc

    async def _call_with_retry(self, entry: AgentEntry, topic: str) -> AgentReply:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_exponential(multiplier=self._base_delay),
            stop=stop_after_attempt(self._retries + 1),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(entry, topic)
        raise AgentCallError(entry.key, "retries exhausted")

    async def _guarded_call(
        self,
        entry: AgentEntry,
        topic: str,
        cancel: asyncio.Event | None,
    ) -> tuple[AgentReply | None, str | None]:
        """One agent call. Returns (reply, None) or (None, warning)."""
        key = entry.key
        if cancel is not None and cancel.is_set():
            return None, f"{key}: cancelled"

        if not self._breakers.is_call_admitted(key):
            logger.info("Circuit open, skipping agent %s", key)
            return None, f"{key}: circuit open"

        call = asyncio.ensure_future(self._call_with_retry(entry, topic))
        try:
            if cancel is not None:
                waiter = asyncio.ensure_future(cancel.wait())
                try:
                    done, _ = await asyncio.wait(
                        {call, waiter}, return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    waiter.cancel()
                if call not in done:
                    call.cancel()
                    await asyncio.gather(call, return_exceptions=True)
                    self._breakers.record_failure(key)
                    logger.info("Agent %s call aborted", key)
                    return None, f"{key}: aborted"
            reply = await call
        except asyncio.CancelledError:
            call.cancel()
            self._breakers.record_failure(key)
            raise
        except AgentCallError as exc:
            self._breakers.record_failure(key)
            logger.warning("Agent %s failed: %s", key, exc)
            return None, f"{key}: {exc}"
        except Exception as exc:
            self._breakers.record_failure(key)
            logger.warning("Agent %s raised unexpectedly: %s", key, exc)
            return None, f"{key}: {exc}"

        self._breakers.record_success(key)
        return reply, None

    def _resolve_competitions(self, hunt: HuntResult) -> None:
        """Pick one agent per rival slot by reputation / effective price."""
        for slot, (first, second) in COMPETITION_SLOTS.items():
            if first not in hunt.replies and second not in hunt.replies:
                continue
            reply_a = hunt.replies.get(first)
            reply_b = hunt.replies.get(second)
            if reply_a is None and reply_b is None:
                continue

            ratios = {}
            for key in (first, second):
                rep = self._ledger.score(key)
                ratios[key] = rep / self._registry.effective_price(key, rep)

            if reply_a is not None and reply_b is not None:
                winner, loser = (second, first) if ratios[second] > ratios[first] else (first, second)
                reason = (
                    f"{winner} wins: {ratios[winner]:.1f} vs {ratios[loser]:.1f} "
                    "reputation/price ratio"
                )
                loser_ratio = ratios[loser]
            else:
                winner, loser = (first, second) if reply_a is not None else (second, first)
                reason = f"{loser} offline, {winner} wins by default"
                loser_ratio = 0.0

            hunt.round_input[loser] = None
            hunt.competitions.append(CompetitionResult(
                slot=slot,
                winner=winner,
                loser=loser,
                winner_ratio=round(ratios[winner], 1),
                loser_ratio=round(loser_ratio, 1),
                reason=reason,
            ))
            logger.info("Competition %s: %s", slot, reason)

    async def hunt_all_agents(
        self,
        topic: str,
        cancel: asyncio.Event | None = None,
        events: HuntEvents | None = None,
    ) -> HuntResult:
        """
        Call every online agent with ``topic`` and wait for all of them.

        The result has an entry (reply or None) for each online agent.
        """
        agents = self._registry.online()
        hunt = HuntResult(topic=topic)

        async def _run(entry: AgentEntry) -> tuple[AgentReply | None, str | None]:
            reply, warning = await self._guarded_call(entry, topic, cancel)
            if events is not None:
                events.publish("agent_result", {
                    "agent": entry.key,
                    "ok": reply is not None,
                    "warning": warning,
                    "response_time_ms": reply.response_time_ms if reply else None,
                })
            return reply, warning

        outcomes = await asyncio.gather(*(_run(a) for a in agents))

        for entry, (reply, warning) in zip(agents, outcomes):
            hunt.replies[entry.key] = reply
            if warning:
                hunt.warnings.append(warning)

        hunt.round_input = dict(hunt.replies)
        self._resolve_competitions(hunt)

        logger.info(
            "Hunt '%s': %d/%d agents responded, %d warnings",
            topic, len(hunt.responded), len(agents), len(hunt.warnings),
        )
        return hunt
