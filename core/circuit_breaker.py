"""
core/circuit_breaker.py
Per-agent circuit breakers gating outbound agent calls.

States:
  CLOSED    -> calls pass; 3 consecutive failures open the circuit
  OPEN      -> calls rejected without a network attempt for 120s
  HALF_OPEN -> exactly one trial call admitted; success closes, failure re-opens

A rejected call means "agent unavailable right now", never a fatal error.
State lives in process memory only.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable

from core.constants import CIRCUIT_FAILURE_THRESHOLD, CIRCUIT_OPEN_SECONDS

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitEntry:
    """Breaker bookkeeping for one agent."""
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure: float = 0.0
    last_success: float = 0.0
    opened_at: float = 0.0
    trial_in_flight: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreakerRegistry:
    """Thread-safe registry of per-agent circuit breakers."""

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD,
        open_seconds: float = CIRCUIT_OPEN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._open_seconds = open_seconds
        self._clock = clock
        self._circuits: dict[str, CircuitEntry] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, key: str) -> CircuitEntry:
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = CircuitEntry()
            self._circuits[key] = circuit
        return circuit

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def is_call_admitted(self, key: str) -> bool:
        """Decide whether a call to ``key`` may go out now."""
        with self._lock:
            circuit = self._get_or_create(key)

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.OPEN:
                if self._clock() - circuit.opened_at >= self._open_seconds:
                    circuit.state = CircuitState.HALF_OPEN
                    circuit.trial_in_flight = True
                    logger.info("Circuit %s half-open (probing)", key)
                    return True
                return False

            # HALF_OPEN: one trial call at a time
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True
            return True

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_success(self, key: str) -> None:
        with self._lock:
            circuit = self._get_or_create(key)
            circuit.last_success = self._clock()
            circuit.trial_in_flight = False

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.CLOSED
                circuit.failures = 0
                logger.info("Circuit %s closed (recovered)", key)
            elif circuit.state == CircuitState.CLOSED:
                circuit.failures = 0

    def record_failure(self, key: str) -> None:
        with self._lock:
            circuit = self._get_or_create(key)
            now = self._clock()
            circuit.failures += 1
            circuit.last_failure = now
            circuit.trial_in_flight = False

            if circuit.state == CircuitState.HALF_OPEN:
                circuit.state = CircuitState.OPEN
                circuit.opened_at = now
                logger.warning("Circuit %s re-opened (trial call failed)", key)
                return

            if (
                circuit.state == CircuitState.CLOSED
                and circuit.failures >= self._failure_threshold
            ):
                circuit.state = CircuitState.OPEN
                circuit.opened_at = now
                logger.warning("Circuit %s opened after %d failures", key, circuit.failures)

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    def state(self, key: str) -> CircuitState:
        with self._lock:
            return self._get_or_create(key).state

    def entry(self, key: str) -> CircuitEntry:
        """Copy of the breaker entry for ``key``."""
        with self._lock:
            return CircuitEntry(**asdict(self._get_or_create(key)))

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {key: c.to_dict() for key, c in self._circuits.items()}
