"""
Error taxonomy for market-data fetching, caching and simulation.
"""

from __future__ import annotations
from typing import Optional


class MarketDataError(Exception):
    """Base class for all errors raised by this project."""


class FetchError(MarketDataError):
    """Network, timeout or provider error. Retryable unless flagged otherwise."""

    def __init__(self, message: str, retryable: bool = True, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class InsufficientDataError(MarketDataError):
    """Too few candles for the indicator warm-up. Fatal, never retried."""

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient historical data. Got {available} candles, "
            f"need at least {required} for technical indicators."
        )
        self.required = required
        self.available = available


class CacheInconsistencyError(MarketDataError):
    """A cache record violates its ordering/range invariants. Indicates a bug."""


class AdvisoryUnavailableError(MarketDataError):
    """The advisor could not be reached or returned garbage. Non-fatal."""
