"""
core/constants.py
Protocol constants for staking, reputation, consensus and circuit breaking.
These values are NOT configurable via environment; they define the protocol.
"""

from typing import Final

# ---------------------------------------------------------------------------
# Alpha Consensus Protocol
# ---------------------------------------------------------------------------
ACP_VERSION: Final[int] = 1
ACP_HEADER_VERSION: Final[str] = "x-acp-version"
ACP_HEADER_DIRECTION: Final[str] = "x-acp-direction"
ACP_HEADER_CONFIDENCE: Final[str] = "x-acp-confidence"
ACP_HEADER_STAKE: Final[str] = "x-acp-stake"

MAX_STAKE: Final[float] = 100.0                 # cap on effective stake at reputation 1.0
CONSENSUS_WEIGHT_FLOOR: Final[float] = 0.3      # winning direction must exceed this weight
HIGH_CONFIDENCE_THRESHOLD: Final[float] = 0.7
HIGH_CONF_EXTRA_REWARD: Final[float] = 0.15     # extra fraction of stake returned
HIGH_CONF_EXTRA_SLASH: Final[float] = 0.20      # extra fraction of stake slashed
REP_HIGH_CONF_RIGHT: Final[float] = 0.03
REP_HIGH_CONF_WRONG: Final[float] = 0.05
DEFAULT_CONFIDENCE: Final[float] = 0.3          # used when a payload carries no confidence

MAX_ROUNDS: Final[int] = 200
MAX_EVENTS: Final[int] = 500
MAX_SETTLED_IDS: Final[int] = 1000

# ---------------------------------------------------------------------------
# Reputation & staking
# ---------------------------------------------------------------------------
INITIAL_REPUTATION: Final[float] = 0.5
MIN_REPUTATION: Final[float] = 0.05
MAX_REPUTATION: Final[float] = 1.0
DECAY_FACTOR: Final[float] = 0.95
CORRECT_REWARD: Final[float] = 0.05
INCORRECT_PENALTY: Final[float] = 0.08
BASE_STAKE: Final[float] = 100.0
SLASH_RATE: Final[float] = 0.5
REWARD_RATE: Final[float] = 0.3
HISTORY_SIZE: Final[int] = 20

# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------
CIRCUIT_FAILURE_THRESHOLD: Final[int] = 3
CIRCUIT_OPEN_SECONDS: Final[float] = 120.0      # cool-down, unrelated to per-call timeouts

# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------
MIN_EFFECTIVE_PRICE: Final[float] = 0.001       # floor used when ranking rival agents

# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------
SYSTEM_VERSION: Final[str] = "v1.0-alpha-consensus"
