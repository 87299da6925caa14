"""
core/config.py
Environment-based configuration using pydantic-settings.
Loads from .env file automatically; every key has a working default.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # --- Service ---
    LOG_LEVEL: str = "INFO"
    DATA_DIR: str = "./data"
    STORE_FLUSH_SECONDS: int = 5

    # --- Agent calls (per-call timeout, independent of the breaker cool-down) ---
    AGENT_HOST: str = "http://localhost"
    AGENT_CALL_TIMEOUT: float = 15.0
    AGENT_CALL_RETRIES: int = 2
    AGENT_RETRY_BASE_DELAY: float = 0.5

    # --- Registry health checks ---
    HEALTH_CHECK_INTERVAL_SECONDS: int = 60
    HEALTH_CHECK_TIMEOUT: float = 5.0
    HEALTH_MAX_FAILURES: int = 3

    # --- Built-in agent ports ---
    PORT_SENTIMENT: int = 4001
    PORT_POLYMARKET: int = 4002
    PORT_DEFI: int = 4003
    PORT_NEWS: int = 4004
    PORT_WHALE: int = 4005
    PORT_SENTIMENT2: int = 4006

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Singleton access to application settings."""
    return Settings()
