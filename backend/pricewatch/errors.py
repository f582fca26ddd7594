"""
Domain exceptions for symbol resolution, price providers and alert storage.

Provider-level errors (RateLimited, ProviderUnavailable) stay inside the
source chain. Callers only ever see UnknownSymbol, PriceUnavailable or
PersistenceError; routers map those to HTTP status codes.
"""
from __future__ import annotations

from typing import Dict


class PriceWatchError(Exception):
    code = "PRICEWATCH_ERROR"


class ConfigurationError(PriceWatchError, RuntimeError):
    """Settings or static tables are inconsistent."""

    code = "CONFIGURATION_ERROR"


class UnknownSymbol(PriceWatchError):
    """The token does not map to any canonical instrument."""

    code = "UNKNOWN_SYMBOL"

    def __init__(self, token: str) -> None:
        super().__init__(f"Unknown symbol: {token!r}")
        self.token = token


class RateLimited(PriceWatchError):
    """Provider asked us to slow down (HTTP 429). Retryable."""

    code = "RATE_LIMITED"

    def __init__(self, source: str, retry_after: float | None = None) -> None:
        super().__init__(f"{source} rate limited the request")
        self.source = source
        self.retry_after = retry_after


class ProviderUnavailable(PriceWatchError):
    """A single provider failed for this attempt."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, source: str, reason: str, *, transient: bool = False) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason
        self.transient = transient


class AllSourcesExhausted(PriceWatchError):
    code = "ALL_SOURCES_EXHAUSTED"

    def __init__(self, instrument_id: str, failures: Dict[str, str] | None = None) -> None:
        self.instrument_id = instrument_id
        self.failures = dict(failures or {})
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures.items()) or "no provider configured"
        super().__init__(f"No price source answered for {instrument_id} ({detail})")


class PriceUnavailable(PriceWatchError):
    """No quote could be produced right now; try again later."""

    code = "PRICE_UNAVAILABLE"

    def __init__(self, instrument_id: str) -> None:
        super().__init__(f"Price unavailable for {instrument_id}")
        self.instrument_id = instrument_id


class PersistenceError(PriceWatchError):
    code = "PERSISTENCE_ERROR"
