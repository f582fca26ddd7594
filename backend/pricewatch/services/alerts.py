from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Set

from pricewatch.errors import PersistenceError, PriceUnavailable, UnknownSymbol
from pricewatch.schemas import AlertRule, PriceQuote, TickReport
from pricewatch.services.alert_store import AlertRepository
from pricewatch.services.notifications import Notifier, format_alert_triggered
from pricewatch.services.price_cache import QuoteService
from pricewatch.services.scheduling import PeriodicService, utc_now
from pricewatch.services.symbols import Instrument, SymbolResolver

logger = logging.getLogger(__name__)


def is_satisfied(rule: AlertRule, quote: PriceQuote) -> bool:
    # Both comparators include the threshold itself.
    if rule.comparator == "at_least":
        return quote.price >= rule.threshold
    if rule.comparator == "at_most":
        return quote.price <= rule.threshold
    return False


class AlertScheduler(PeriodicService):
    """Evaluates every standing alert against fresh quotes, once per interval.

    Alerts are one-shot: the first tick that sees the condition hold sends
    one notification and deletes the rule. Ticks never run concurrently; a
    tick requested while another is in progress returns a skipped report.
    """

    name = "alert-scheduler"
    report_type = TickReport

    def __init__(
        self,
        store: AlertRepository,
        resolver: SymbolResolver,
        quotes: QuoteService,
        notifier: Notifier,
        interval_seconds: float = 60,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(interval_seconds, clock=clock)
        self._store = store
        self._resolver = resolver
        self._quotes = quotes
        self._notifier = notifier
        # Rules whose notification went out but whose deletion has not succeeded yet.
        self._fired: Set[str] = set()

    async def _run(self, started_at: datetime) -> TickReport:
        report = TickReport(started_at=started_at)
        try:
            rules = self._store.list_all()
        except PersistenceError:
            logger.exception("Could not read alerts; skipping evaluation this tick")
            return report

        rules = self._retry_pending_deletes(rules, report)
        if not rules:
            return report

        instruments: Dict[str, Instrument] = {}
        for instrument_id in sorted({rule.instrument for rule in rules}):
            try:
                instruments[instrument_id] = self._resolver.get(instrument_id)
            except UnknownSymbol:
                logger.error("Alert references unknown instrument %s", instrument_id)
                report.unresolved.append(instrument_id)

        quotes = await self._resolve_quotes(list(instruments.values()), report)

        for rule in rules:
            quote = quotes.get(rule.instrument)
            if quote is None:
                continue
            report.rules_evaluated += 1
            if not is_satisfied(rule, quote):
                continue
            report.triggered.append(rule.id)
            try:
                await self._fire(rule, quote)
            except PersistenceError:
                logger.exception("Alert %s fired but could not be deleted; will retry next tick", rule.id)
                report.failed.append(rule.id)
        return report

    async def _resolve_quotes(self, instruments: List[Instrument], report: TickReport) -> Dict[str, PriceQuote]:
        results = await asyncio.gather(
            *(self._quotes.get_or_resolve(instrument) for instrument in instruments),
            return_exceptions=True,
        )
        quotes: Dict[str, PriceQuote] = {}
        for instrument, result in zip(instruments, results):
            if isinstance(result, PriceQuote):
                quotes[instrument.id] = result
                continue
            report.unresolved.append(instrument.id)
            if not isinstance(result, PriceUnavailable):
                logger.error("Unexpected error resolving %s: %r", instrument.id, result)
        return quotes

    def _retry_pending_deletes(self, rules: List[AlertRule], report: TickReport) -> List[AlertRule]:
        self._fired &= {rule.id for rule in rules}
        already_fired = set(self._fired)
        for alert_id in sorted(already_fired):
            try:
                self._store.delete_by_id(alert_id)
            except PersistenceError:
                logger.exception("Retrying deletion of fired alert %s failed", alert_id)
                report.failed.append(alert_id)
                continue
            self._fired.discard(alert_id)
        return [rule for rule in rules if rule.id not in already_fired]

    async def _fire(self, rule: AlertRule, quote: PriceQuote) -> None:
        self._fired.add(rule.id)
        try:
            await self._notifier.send(rule.owner_id, format_alert_triggered(rule, quote))
        except Exception:
            logger.exception("Notification for alert %s failed", rule.id)
        self._store.delete_by_id(rule.id)
        self._fired.discard(rule.id)
        logger.info(
            "Alert %s triggered: %s %s %s at %s",
            rule.id,
            rule.instrument,
            rule.comparator,
            rule.threshold,
            quote.price,
        )
