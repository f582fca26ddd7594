from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pricewatch.errors import PersistenceError, PriceUnavailable, UnknownSymbol
from pricewatch.schemas import AlertRule, PriceQuote
from pricewatch.services.alert_store import AlertRepository
from pricewatch.services.alerts import AlertScheduler, is_satisfied
from pricewatch.services.lookup import PriceWatchService
from pricewatch.services.price_cache import PriceCache, QuoteService
from pricewatch.services.symbols import SymbolResolver
from pricewatch.services.watchlist import WatchlistRepository

OWNER = "U1234567890abcdef1234567890abcdef"


def _quote(price: str) -> PriceQuote:
    return PriceQuote(
        instrument="bitcoin",
        symbol="BTC",
        price=Decimal(price),
        observed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        source="test",
    )


def _rule(comparator: str, threshold: str) -> AlertRule:
    return AlertRule(
        id="rule-1",
        owner_id=OWNER,
        instrument="bitcoin",
        comparator=comparator,
        threshold=Decimal(threshold),
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def _build(fake_chain, notifier, clock, store: AlertRepository | None = None):
    resolver = SymbolResolver()
    quotes = QuoteService(fake_chain, PriceCache(30, clock=clock))
    store = store or AlertRepository()
    service = PriceWatchService(resolver, quotes, store, WatchlistRepository())
    scheduler = AlertScheduler(store, resolver, quotes, notifier, interval_seconds=60)
    return service, scheduler, store


@pytest.mark.parametrize(
    ("comparator", "threshold", "price", "expected"),
    [
        ("at_least", "70000", "65000", False),
        ("at_least", "70000", "70000", True),
        ("at_least", "70000", "70000.01", True),
        ("at_most", "60000", "60000", True),
        ("at_most", "60000", "60000.01", False),
    ],
)
def test_comparators_are_inclusive(comparator, threshold, price, expected):
    assert is_satisfied(_rule(comparator, threshold), _quote(price)) is expected


def test_threshold_boundary_fires_exactly_once(fake_chain, notifier, clock):
    service, scheduler, store = _build(fake_chain, notifier, clock)
    rule = service.register_alert(OWNER, "BTC", "at_least", "70000")

    first = asyncio.run(scheduler.tick())
    assert first.rules_evaluated == 1
    assert first.triggered == []
    assert [item.id for item in store.list_all()] == [rule.id]

    fake_chain.set_price("bitcoin", "70000")
    clock.advance(60)
    second = asyncio.run(scheduler.tick())
    assert second.triggered == [rule.id]
    assert store.list_all() == []
    assert len(notifier.sent) == 1
    owner_id, text = notifier.sent[0]
    assert owner_id == OWNER
    assert "BTC" in text and "70000" in text

    clock.advance(60)
    third = asyncio.run(scheduler.tick())
    assert third.rules_evaluated == 0
    assert len(notifier.sent) == 1


def test_rules_on_one_instrument_cost_one_fetch_per_tick(fake_chain, notifier, clock):
    service, scheduler, _ = _build(fake_chain, notifier, clock)
    service.register_alert(OWNER, "btc", "at_least", "100000")
    service.register_alert("U2", "bitcoin", "at_most", "1000")
    service.register_alert("U3", "บิทคอยน์", "at_least", "90000")

    report = asyncio.run(scheduler.tick())

    assert report.rules_evaluated == 3
    assert fake_chain.calls == ["bitcoin"]


def test_unresolvable_instrument_does_not_abort_tick(fake_chain, notifier, clock):
    service, scheduler, store = _build(fake_chain, notifier, clock)
    fired = service.register_alert(OWNER, "eth", "at_most", "5000")
    pending = service.register_alert(OWNER, "sol", "at_least", "1")
    fake_chain.fail("solana")

    report = asyncio.run(scheduler.tick())

    assert report.triggered == [fired.id]
    assert report.unresolved == ["solana"]
    assert [rule.id for rule in store.list_all()] == [pending.id]
    assert len(notifier.sent) == 1


def test_overlapping_tick_is_skipped(fake_chain, notifier, clock):
    service, scheduler, store = _build(fake_chain, notifier, clock)
    service.register_alert(OWNER, "gold", "at_least", "2000")

    async def scenario():
        fake_chain.gate = asyncio.Event()
        running = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        overlapping = await scheduler.tick()
        fake_chain.gate.set()
        return await running, overlapping

    first, overlapping = asyncio.run(scenario())

    assert overlapping.skipped is True
    assert overlapping.rules_evaluated == 0
    assert len(first.triggered) == 1
    assert len(notifier.sent) == 1
    assert store.list_all() == []


class _FlakyDeleteStore(AlertRepository):
    def __init__(self) -> None:
        super().__init__()
        self.delete_failures = 1

    def delete_by_id(self, alert_id: str) -> bool:
        if self.delete_failures:
            self.delete_failures -= 1
            raise PersistenceError("database is read-only")
        return super().delete_by_id(alert_id)


def test_failed_delete_never_causes_a_second_notification(fake_chain, notifier, clock):
    store = _FlakyDeleteStore()
    service, scheduler, _ = _build(fake_chain, notifier, clock, store=store)
    rule = service.register_alert(OWNER, "btc", "at_least", "1000")

    first = asyncio.run(scheduler.tick())
    assert first.triggered == [rule.id]
    assert first.failed == [rule.id]
    assert len(store.list_all()) == 1

    clock.advance(60)
    second = asyncio.run(scheduler.tick())
    assert second.triggered == []
    assert store.list_all() == []
    assert len(notifier.sent) == 1


def test_notifier_failure_still_removes_rule(fake_chain, clock):
    class _BrokenNotifier:
        async def send(self, owner_id: str, text: str) -> None:
            raise RuntimeError("LINE is down")

    service, scheduler, store = _build(fake_chain, _BrokenNotifier(), clock)
    service.register_alert(OWNER, "eth", "at_least", "3000")

    report = asyncio.run(scheduler.tick())

    assert len(report.triggered) == 1
    assert store.list_all() == []


def test_store_read_failure_ends_tick_quietly(fake_chain, notifier, clock):
    class _DownStore(AlertRepository):
        def list_all(self):
            raise PersistenceError("timeout")

    _, scheduler, _ = _build(fake_chain, notifier, clock, store=_DownStore())

    report = asyncio.run(scheduler.tick())

    assert report.rules_evaluated == 0
    assert fake_chain.calls == []


def test_register_alert_validates_input(fake_chain, notifier, clock):
    service, _, store = _build(fake_chain, notifier, clock)

    with pytest.raises(UnknownSymbol):
        service.register_alert(OWNER, "dogwifhat", "at_least", "1")
    with pytest.raises(ValueError):
        service.register_alert(OWNER, "btc", "above", "1")
    with pytest.raises(ValueError):
        service.register_alert(OWNER, "btc", "at_least", "-10")
    with pytest.raises(ValueError):
        service.register_alert(OWNER, "btc", "at_least", "lots")
    assert store.list_all() == []


def test_alert_management_is_scoped_to_owner(fake_chain, notifier, clock):
    service, _, _ = _build(fake_chain, notifier, clock)
    mine = service.register_alert(OWNER, "btc", "at_least", "1")
    theirs = service.register_alert("U-other", "eth", "at_most", "1")

    assert [rule.id for rule in service.list_alerts(OWNER)] == [mine.id]
    assert service.remove_alert(OWNER, theirs.id) is False
    assert service.remove_alert(OWNER, mine.id) is True
    service.register_alert(OWNER, "gold", "at_least", "1")
    assert service.clear_alerts(OWNER) == 1
    assert [rule.id for rule in service.list_alerts("U-other")] == [theirs.id]


def test_lookup_records_watchlist(fake_chain, notifier, clock):
    service, _, _ = _build(fake_chain, notifier, clock)

    async def scenario():
        await service.lookup("ทอง", owner_id=OWNER)
        await service.lookup("btc", owner_id=OWNER)
        await service.lookup("GOLD", owner_id=OWNER)
        fake_chain.fail("ethereum")
        with pytest.raises(PriceUnavailable):
            await service.lookup("eth", owner_id=OWNER)

    asyncio.run(scenario())

    assert service.list_watchlist(OWNER) == ["gold", "bitcoin", "ethereum"]


def test_scheduler_loop_survives_failing_ticks(fake_chain, notifier, clock):
    _, scheduler, _ = _build(fake_chain, notifier, clock)
    scheduler.interval_seconds = 0.01
    ticks = {"n": 0}

    async def exploding_tick():
        ticks["n"] += 1
        raise RuntimeError("boom")

    scheduler.tick = exploding_tick

    async def scenario():
        await scheduler.start()
        await asyncio.sleep(0.05)
        alive = scheduler.running
        await scheduler.stop()
        return alive

    assert asyncio.run(scenario()) is True
    assert ticks["n"] >= 2
    assert scheduler.running is False
