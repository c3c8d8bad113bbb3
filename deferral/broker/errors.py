"""Exception taxonomy for the suspension broker.

Only InvalidRequestError, UnknownTokenError, CapacityExceededError and
BrokerClosedError are raised to callers. Call failures and timeouts travel
as CallOutcome values, and RetryLimitExceededError is surfaced through
FinalResult.error rather than raised across the suspension boundary.
"""

from __future__ import annotations


class DeferralError(Exception):
    """Base class for deferral errors."""

    pass


class InvalidRequestError(DeferralError):
    """Malformed registration; raised before anything is registered."""

    pass


class RetryLimitExceededError(DeferralError):
    """A resume handler asked for another round past the chain depth."""

    def __init__(self, token: str, max_chain_depth: int) -> None:
        self.token = token
        self.max_chain_depth = max_chain_depth
        super().__init__(
            f"Continuation {token} exceeded the maximum chain depth of {max_chain_depth}"
        )


class UnknownTokenError(DeferralError, KeyError):
    """Token was never issued, or its result has already been collected."""

    def __init__(self, token: str, message: str | None = None) -> None:
        self.token = token
        super().__init__(message or f"Unknown continuation token: {token}")

    def __str__(self) -> str:
        return self.args[0]


class CapacityExceededError(DeferralError):
    """Too many continuation records are pending."""

    pass


class BrokerClosedError(DeferralError):
    """The broker has been closed and accepts no new registrations."""

    pass
