"""
core/exceptions.py
Domain errors raised by the coordinator. Routes translate them to HTTP errors.
"""


class CoordinatorError(Exception):
    """Base class for coordinator errors."""


class AgentCallError(CoordinatorError):
    """A single agent call failed.

    ``retryable`` is True for timeouts, connection errors, 429 and 5xx.
    Other 4xx responses are permanent for the call.
    """

    def __init__(
        self,
        key: str,
        message: str,
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.key = key
        self.status = status
        self.retryable = retryable
        super().__init__(message)


class DuplicateRoundError(CoordinatorError):
    """A round id was submitted for settlement more than once."""

    def __init__(self, round_id: str) -> None:
        self.round_id = round_id
        super().__init__(f"Round {round_id} has already been settled")


class RegistryError(CoordinatorError):
    """Invalid registry operation (e.g. overwriting a built-in agent)."""
