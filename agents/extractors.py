"""
agents/extractors.py
Turns an agent reply into an Opinion.

Protocol headers (X-ACP-Direction / -Confidence / -Stake) win when they are
present and well-formed. Otherwise the payload is read by the extractor
registered for the agent's category.
"""

import logging
import math
from typing import Any, Callable

from agents import AgentCategory, AgentReply, Direction, Opinion
from core.constants import (
    ACP_HEADER_CONFIDENCE,
    ACP_HEADER_DIRECTION,
    ACP_HEADER_STAKE,
    DEFAULT_CONFIDENCE,
    MAX_STAKE,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[dict[str, Any]], tuple[Direction, tuple[str, ...]]]


# ------------------------------------------------------------------
# Payload helpers
# ------------------------------------------------------------------

def _result(payload: dict | None) -> dict[str, Any]:
    """Agents wrap their output as {"result": {...}}."""
    if not isinstance(payload, dict):
        return {}
    result = payload.get("result")
    return result if isinstance(result, dict) else {}


def _signal_strings(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    signals: list[str] = []
    for item in raw:
        if isinstance(item, str):
            signals.append(item)
        elif isinstance(item, dict):
            text = item.get("word") or item.get("text") or item.get("signal")
            if isinstance(text, str):
                signals.append(text)
    return tuple(signals)


def _to_float(value: object) -> float | None:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


# ------------------------------------------------------------------
# Per-category extractors
# ------------------------------------------------------------------

def _extract_sentiment(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    label = str(result.get("label", ""))
    signals = _signal_strings(result.get("signals"))
    if label in ("strongly_bullish", "bullish"):
        return Direction.BULLISH, signals
    if label in ("strongly_bearish", "bearish"):
        return Direction.BEARISH, signals
    return Direction.NEUTRAL, signals


def _extract_prediction(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    top = str(result.get("topSignal", ""))
    signals = (f"topSignal:{top}",) if top else ()
    if top in ("HIGH", "MEDIUM"):
        return Direction.BULLISH, signals
    return Direction.NEUTRAL, signals


def _extract_defi(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    top = result.get("topOpportunity")
    if not isinstance(top, dict):
        return Direction.NEUTRAL, ()
    level = str(top.get("alphaLevel", ""))
    signals = (f"alphaLevel:{level}",) if level else ()
    if level in ("HOT", "WARM"):
        return Direction.BULLISH, signals
    change = _to_float(top.get("change24h"))
    if change is not None and change < -5:
        return Direction.BEARISH, signals + (f"change24h:{change}",)
    return Direction.NEUTRAL, signals


def _extract_news(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    articles = result.get("articles")
    count = len(articles) if isinstance(articles, list) else 0
    if count > 2:
        return Direction.BULLISH, (f"articles:{count}",)
    return Direction.NEUTRAL, (f"articles:{count}",)


def _extract_onchain(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    signal = str(result.get("signal", ""))
    signals = (signal,) if signal else ()
    if signal == "ACCUMULATION":
        return Direction.BULLISH, signals
    if signal == "QUIET":
        return Direction.BEARISH, signals
    return Direction.NEUTRAL, signals


def _extract_other(result: dict[str, Any]) -> tuple[Direction, tuple[str, ...]]:
    """External agents report {direction, confidenceScore, signals} directly."""
    direction = Direction.parse(result.get("direction")) or Direction.NEUTRAL
    return direction, _signal_strings(result.get("signals"))


EXTRACTORS: dict[AgentCategory, Extractor] = {
    AgentCategory.SENTIMENT: _extract_sentiment,
    AgentCategory.PREDICTION: _extract_prediction,
    AgentCategory.DEFI: _extract_defi,
    AgentCategory.NEWS: _extract_news,
    AgentCategory.ONCHAIN: _extract_onchain,
    AgentCategory.OTHER: _extract_other,
}

_missing = set(AgentCategory) - set(EXTRACTORS)
if _missing:
    raise RuntimeError(f"No extractor for categories: {sorted(c.value for c in _missing)}")


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------

def extract_confidence(payload: dict | None) -> float:
    """result.confidenceScore when it is a number in [0, 1], else the default."""
    score = _result(payload).get("confidenceScore")
    if isinstance(score, (int, float)) and not isinstance(score, bool) and 0 <= score <= 1:
        return float(score)
    return DEFAULT_CONFIDENCE


def heuristic_opinion(reply: AgentReply) -> Opinion:
    """Derive an opinion from the payload shape of the agent's category."""
    direction, signals = EXTRACTORS[reply.category](_result(reply.payload))
    confidence = extract_confidence(reply.payload)
    return Opinion(
        direction=direction,
        confidence_score=confidence,
        signals=signals,
        declared_stake=MAX_STAKE * confidence,
        from_protocol_header=False,
    )


def protocol_opinion(reply: AgentReply) -> Opinion | None:
    """Opinion from X-ACP-* headers; None when absent or malformed."""
    headers = reply.headers
    raw_direction = headers.get(ACP_HEADER_DIRECTION)
    raw_confidence = headers.get(ACP_HEADER_CONFIDENCE)
    if raw_direction is None or raw_confidence is None:
        return None

    direction = Direction.parse(raw_direction)
    confidence = _to_float(raw_confidence)
    if direction is None or confidence is None:
        logger.debug("Malformed ACP headers from %s: %s", reply.key, headers)
        return None
    confidence = max(0.0, min(1.0, confidence))

    stake = _to_float(headers.get(ACP_HEADER_STAKE))
    if stake is None:
        stake = MAX_STAKE * confidence

    return Opinion(
        direction=direction,
        confidence_score=confidence,
        signals=_signal_strings(_result(reply.payload).get("signals")),
        declared_stake=max(0.0, stake),
        from_protocol_header=True,
    )


def collect_opinion(reply: AgentReply) -> Opinion:
    """Protocol headers first, category heuristic second."""
    return protocol_opinion(reply) or heuristic_opinion(reply)
