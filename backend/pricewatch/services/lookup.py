from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List

from pricewatch.errors import PersistenceError
from pricewatch.schemas import AlertRule, PriceQuote
from pricewatch.services.alert_store import AlertRepository
from pricewatch.services.price_cache import QuoteService
from pricewatch.services.symbols import SymbolResolver
from pricewatch.services.watchlist import WatchlistRepository

logger = logging.getLogger(__name__)

COMPARATORS = ("at_least", "at_most")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_threshold(value: Any) -> Decimal:
    try:
        threshold = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid threshold: {value!r}") from exc
    if not threshold.is_finite() or threshold <= 0:
        raise ValueError(f"Threshold must be a positive number, got {value!r}")
    return threshold


class PriceWatchService:
    """Entry points used by the transport layer: price lookups and alert management."""

    def __init__(
        self,
        resolver: SymbolResolver,
        quotes: QuoteService,
        alerts: AlertRepository,
        watchlist: WatchlistRepository,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.resolver = resolver
        self.quotes = quotes
        self.alerts = alerts
        self.watchlist = watchlist
        self._clock = clock

    async def lookup(self, raw_token: str, owner_id: str | None = None) -> PriceQuote:
        instrument = self.resolver.resolve(raw_token)
        if owner_id:
            try:
                self.watchlist.add(owner_id, instrument.id)
            except PersistenceError:
                logger.warning("Could not record %s on the watchlist of %s", instrument.id, owner_id, exc_info=True)
        return await self.quotes.get_or_resolve(instrument)

    def register_alert(self, owner_id: str, raw_token: str, comparator: str, threshold: Any) -> AlertRule:
        if comparator not in COMPARATORS:
            raise ValueError(f"Unknown comparator {comparator!r}; expected one of {', '.join(COMPARATORS)}")
        instrument = self.resolver.resolve(raw_token)
        rule = AlertRule(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            instrument=instrument.id,
            comparator=comparator,
            threshold=_parse_threshold(threshold),
            created_at=self._clock(),
        )
        stored_id = self.alerts.insert(rule)
        if stored_id != rule.id:
            rule = rule.model_copy(update={"id": stored_id})
        logger.info("Registered alert %s: %s %s %s for %s", rule.id, instrument.id, comparator, rule.threshold, owner_id)
        return rule

    def list_alerts(self, owner_id: str) -> List[AlertRule]:
        return self.alerts.list_by_owner(owner_id)

    def remove_alert(self, owner_id: str, alert_id: str) -> bool:
        owned = {rule.id for rule in self.alerts.list_by_owner(owner_id)}
        if alert_id not in owned:
            return False
        return self.alerts.delete_by_id(alert_id)

    def clear_alerts(self, owner_id: str) -> int:
        return self.alerts.delete_by_owner(owner_id)

    def list_watchlist(self, owner_id: str) -> List[str]:
        return self.watchlist.list_by_owner(owner_id)
