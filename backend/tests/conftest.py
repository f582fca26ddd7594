from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from pricewatch.errors import AllSourcesExhausted
from pricewatch.schemas import PriceQuote
from pricewatch.services.symbols import Instrument


class FakeChain:
    """Stands in for SourceChain: prices keyed by instrument id, missing ids fail."""

    def __init__(self, prices: Dict[str, Decimal | str | int] | None = None) -> None:
        self.prices: Dict[str, Decimal] = {key: Decimal(str(value)) for key, value in (prices or {}).items()}
        self.calls: List[str] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    def set_price(self, instrument_id: str, value: Decimal | str | int) -> None:
        self.prices[instrument_id] = Decimal(str(value))

    def fail(self, instrument_id: str) -> None:
        self.prices.pop(instrument_id, None)

    @property
    def source_names(self) -> List[str]:
        return ["fake"]

    async def fetch(self, instrument: Instrument) -> PriceQuote:
        self.calls.append(instrument.id)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        price = self.prices.get(instrument.id)
        if price is None:
            raise AllSourcesExhausted(instrument.id, {"fake": "down"})
        return PriceQuote(
            instrument=instrument.id,
            symbol=instrument.symbol,
            price=price,
            change_24h=Decimal("1.5"),
            observed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            source="fake",
        )

    async def aclose(self) -> None:
        self.closed = True


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[tuple[str, str]] = []

    async def send(self, owner_id: str, text: str) -> None:
        self.sent.append((owner_id, text))


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _no_supabase(monkeypatch):
    monkeypatch.setattr("pricewatch.services.alert_store.get_supabase", lambda: None)
    monkeypatch.setattr("pricewatch.services.watchlist.get_supabase", lambda: None)
    monkeypatch.setattr("pricewatch.routers.system.get_supabase", lambda: None)


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain({"bitcoin": "65000", "ethereum": "3200", "gold": "2400"})


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class _FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str) -> None:
        self._client = client
        self._table = table
        self._op = "select"
        self._payload: Dict[str, Any] | None = None
        self._filters: List[tuple[str, Any]] = []

    def select(self, *columns: str) -> "_FakeQuery":
        self._op = "select"
        return self

    def insert(self, payload: Dict[str, Any]) -> "_FakeQuery":
        self._op, self._payload = "insert", payload
        return self

    def upsert(self, payload: Dict[str, Any], on_conflict: str | None = None) -> "_FakeQuery":
        self._op, self._payload = "upsert", payload
        return self

    def delete(self) -> "_FakeQuery":
        self._op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "_FakeQuery":
        self._filters.append((column, value))
        return self

    def order(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self

    def execute(self) -> SimpleNamespace:
        if self._client.fail:
            raise RuntimeError("supabase unreachable")
        rows = self._client.tables.setdefault(self._table, [])
        matched = [row for row in rows if all(row.get(column) == value for column, value in self._filters)]
        if self._op == "insert":
            row = dict(self._payload or {})
            rows.append(row)
            return SimpleNamespace(data=[row])
        if self._op == "upsert":
            row = dict(self._payload or {})
            if row not in rows:
                rows.append(row)
            return SimpleNamespace(data=[row])
        if self._op == "delete":
            for row in matched:
                rows.remove(row)
            return SimpleNamespace(data=matched)
        return SimpleNamespace(data=[dict(row) for row in matched])


class FakeSupabase:
    """Minimal stand-in for the supabase client's table/query builder."""

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]] | None = None, fail: bool = False) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = tables or {}
        self.fail = fail

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)


@pytest.fixture
def use_supabase(monkeypatch):
    def _install(tables: Dict[str, List[Dict[str, Any]]] | None = None, fail: bool = False) -> FakeSupabase:
        client = FakeSupabase(tables, fail=fail)
        monkeypatch.setattr("pricewatch.services.alert_store.get_supabase", lambda: client)
        monkeypatch.setattr("pricewatch.services.watchlist.get_supabase", lambda: client)
        return client

    return _install
