from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from pricewatch.errors import AllSourcesExhausted, PriceUnavailable
from pricewatch.schemas import PriceQuote
from pricewatch.services.sources import SourceChain
from pricewatch.services.symbols import Instrument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    quote: PriceQuote
    expires_at: float


class PriceCache:
    """Last good quote per instrument, valid for a fixed TTL."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, instrument_id: str) -> PriceQuote | None:
        entry = self._entries.get(instrument_id)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            self._entries.pop(instrument_id, None)
            return None
        return entry.quote

    def put(self, quote: PriceQuote) -> None:
        self._entries[quote.instrument] = CacheEntry(quote=quote, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, instrument_id: str) -> None:
        self._entries.pop(instrument_id, None)

    def __contains__(self, instrument_id: object) -> bool:
        return isinstance(instrument_id, str) and self.get(instrument_id) is not None


def _consume_result(task: asyncio.Task) -> None:
    # Every waiter may have been cancelled; keep asyncio from warning about an unread failure.
    if not task.cancelled():
        task.exception()


class QuoteService:
    """Cache-first quote lookup with one in-flight resolution per instrument.

    Checking the cache, checking the pending map and registering a new
    resolution happen without yielding to the event loop, so two callers can
    never both start a resolution for the same instrument.
    """

    def __init__(self, chain: SourceChain, cache: PriceCache) -> None:
        self._chain = chain
        self.cache = cache
        self._pending: Dict[str, asyncio.Task] = {}

    def is_pending(self, instrument_id: str) -> bool:
        return instrument_id in self._pending

    async def get_or_resolve(self, instrument: Instrument) -> PriceQuote:
        cached = self.cache.get(instrument.id)
        if cached is not None:
            return cached

        task = self._pending.get(instrument.id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._resolve(instrument),
                name=f"resolve-{instrument.id}",
            )
            task.add_done_callback(_consume_result)
            self._pending[instrument.id] = task
        return await asyncio.shield(task)

    async def _resolve(self, instrument: Instrument) -> PriceQuote:
        try:
            quote = await self._chain.fetch(instrument)
        except AllSourcesExhausted as exc:
            logger.warning("Price unavailable for %s: %s", instrument.id, exc)
            raise PriceUnavailable(instrument.id) from exc
        except Exception as exc:
            logger.exception("Unexpected failure resolving %s", instrument.id)
            raise PriceUnavailable(instrument.id) from exc
        else:
            self.cache.put(quote)
            return quote
        finally:
            self._pending.pop(instrument.id, None)

    async def aclose(self) -> None:
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # Tasks cancelled before they started never reach their own cleanup.
        self._pending.clear()
        await self._chain.aclose()
