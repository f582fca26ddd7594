from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List

from pricewatch.errors import PersistenceError, UnknownSymbol
from pricewatch.schemas import DigestReport, PriceQuote
from pricewatch.services.notifications import Notifier, format_digest
from pricewatch.services.price_cache import QuoteService
from pricewatch.services.scheduling import PeriodicService, utc_now
from pricewatch.services.symbols import Instrument, SymbolResolver
from pricewatch.services.watchlist import WatchlistRepository

logger = logging.getLogger(__name__)


class DigestBroadcaster(PeriodicService):
    """Periodically sends each owner the latest prices of everything they follow."""

    name = "digest-broadcaster"
    report_type = DigestReport

    def __init__(
        self,
        watchlist: WatchlistRepository,
        resolver: SymbolResolver,
        quotes: QuoteService,
        notifier: Notifier,
        interval_seconds: float = 3600,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(interval_seconds, clock=clock)
        self._watchlist = watchlist
        self._resolver = resolver
        self._quotes = quotes
        self._notifier = notifier

    async def _run(self, started_at: datetime) -> DigestReport:
        report = DigestReport(started_at=started_at)
        try:
            follows = {owner: self._watchlist.list_by_owner(owner) for owner in self._watchlist.owners()}
        except PersistenceError:
            logger.exception("Could not read watchlists; skipping digest")
            return report

        instruments: Dict[str, Instrument] = {}
        for instrument_id in sorted({item for items in follows.values() for item in items}):
            try:
                instruments[instrument_id] = self._resolver.get(instrument_id)
            except UnknownSymbol:
                report.unresolved.append(instrument_id)

        results = await asyncio.gather(
            *(self._quotes.get_or_resolve(instrument) for instrument in instruments.values()),
            return_exceptions=True,
        )
        quotes: Dict[str, PriceQuote] = {}
        for instrument_id, result in zip(instruments, results):
            if isinstance(result, PriceQuote):
                quotes[instrument_id] = result
            else:
                report.unresolved.append(instrument_id)

        for owner_id, items in follows.items():
            owner_quotes: List[PriceQuote] = [quotes[item] for item in items if item in quotes]
            if not owner_quotes:
                continue
            try:
                await self._notifier.send(owner_id, format_digest(owner_quotes))
            except Exception:
                logger.exception("Digest for %s failed", owner_id)
                continue
            report.owners_notified += 1
        return report
