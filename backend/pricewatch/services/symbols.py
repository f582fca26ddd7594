from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from pricewatch.errors import ConfigurationError, UnknownSymbol

_SEPARATORS = re.compile(r"[\s/_\-]+")


@dataclass(frozen=True)
class Instrument:
    id: str
    symbol: str
    name: str
    source_ids: Tuple[Tuple[str, str], ...] = ()
    aliases: Tuple[str, ...] = ()

    def source_id(self, source: str) -> str | None:
        for name, value in self.source_ids:
            if name == source:
                return value
        return None

    @property
    def sources(self) -> List[str]:
        return [name for name, _ in self.source_ids]


def _instrument(
    instrument_id: str,
    symbol: str,
    name: str,
    *,
    coingecko: str | None = None,
    binance: str | None = None,
    coinbase: str | None = None,
    aliases: Iterable[str] = (),
) -> Instrument:
    ids = (("coingecko", coingecko), ("binance", binance), ("coinbase", coinbase))
    return Instrument(
        id=instrument_id,
        symbol=symbol,
        name=name,
        source_ids=tuple((source, value) for source, value in ids if value),
        aliases=tuple(aliases),
    )


DEFAULT_INSTRUMENTS: Tuple[Instrument, ...] = (
    _instrument(
        "bitcoin",
        "BTC",
        "Bitcoin",
        coingecko="bitcoin",
        binance="BTCUSDT",
        coinbase="BTC-USD",
        aliases=("btc", "xbt", "btcusdt", "btc-usd", "บิทคอยน์", "บิตคอยน์", "บิทคอย"),
    ),
    _instrument(
        "ethereum",
        "ETH",
        "Ethereum",
        coingecko="ethereum",
        binance="ETHUSDT",
        coinbase="ETH-USD",
        aliases=("eth", "ether", "ethusdt", "eth-usd", "อีเธอเรียม", "อีเทอเรียม"),
    ),
    _instrument(
        "solana",
        "SOL",
        "Solana",
        coingecko="solana",
        binance="SOLUSDT",
        coinbase="SOL-USD",
        aliases=("sol", "solusdt", "sol-usd", "โซลานา"),
    ),
    _instrument(
        "bnb",
        "BNB",
        "BNB",
        coingecko="binancecoin",
        binance="BNBUSDT",
        aliases=("binancecoin", "binance coin", "bnbusdt"),
    ),
    _instrument(
        "xrp",
        "XRP",
        "XRP",
        coingecko="ripple",
        binance="XRPUSDT",
        coinbase="XRP-USD",
        aliases=("ripple", "xrpusdt", "xrp-usd", "ริปเปิล"),
    ),
    _instrument(
        "dogecoin",
        "DOGE",
        "Dogecoin",
        coingecko="dogecoin",
        binance="DOGEUSDT",
        coinbase="DOGE-USD",
        aliases=("doge", "dogeusdt", "doge-usd", "ดอจ", "ดอจคอยน์"),
    ),
    _instrument(
        "cardano",
        "ADA",
        "Cardano",
        coingecko="cardano",
        binance="ADAUSDT",
        coinbase="ADA-USD",
        aliases=("ada", "adausdt", "ada-usd"),
    ),
    _instrument(
        "tether",
        "USDT",
        "Tether",
        coingecko="tether",
        coinbase="USDT-USD",
        aliases=("usdt",),
    ),
    # Spot gold is tracked through the gold-backed tokens that every source lists.
    _instrument(
        "gold",
        "GOLD",
        "Gold",
        coingecko="tether-gold",
        binance="PAXGUSDT",
        coinbase="PAXG-USD",
        aliases=("xau", "xaut", "paxg", "tether-gold", "ทอง", "ทองคำ", "ราคาทอง"),
    ),
)


def normalize_token(raw: Any) -> str:
    token = unicodedata.normalize("NFKC", str(raw or "")).casefold().strip()
    token = token.lstrip("$").strip()
    return _SEPARATORS.sub("-", token).strip("-")


def _build_alias_table(
    instruments: Iterable[Instrument],
    extra_aliases: Mapping[str, str],
) -> Tuple[Mapping[str, Instrument], Mapping[str, Instrument]]:
    by_id: Dict[str, Instrument] = {}
    table: Dict[str, Instrument] = {}

    def _register(alias: str, instrument: Instrument) -> None:
        key = normalize_token(alias)
        if not key:
            return
        existing = table.get(key)
        if existing is not None and existing.id != instrument.id:
            raise ConfigurationError(f"Alias {alias!r} maps to both {existing.id} and {instrument.id}")
        table[key] = instrument

    for instrument in instruments:
        if instrument.id in by_id:
            raise ConfigurationError(f"Duplicate instrument id {instrument.id!r}")
        by_id[instrument.id] = instrument
        for alias in (instrument.id, instrument.symbol, instrument.name, *instrument.aliases):
            _register(alias, instrument)

    for alias, instrument_id in extra_aliases.items():
        target = by_id.get(instrument_id)
        if target is None:
            raise ConfigurationError(f"Alias {alias!r} points at unknown instrument {instrument_id!r}")
        _register(alias, target)

    return MappingProxyType(table), MappingProxyType(by_id)


class SymbolResolver:
    """Maps user tokens (tickers, names, pairs, Thai words) to canonical instruments.

    The alias table is built once; resolution is a dictionary lookup on the
    normalized token and never touches the network.
    """

    def __init__(
        self,
        instruments: Iterable[Instrument] = DEFAULT_INSTRUMENTS,
        extra_aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._aliases, self._by_id = _build_alias_table(instruments, extra_aliases or {})

    def resolve(self, raw_token: str) -> Instrument:
        key = normalize_token(raw_token)
        instrument = self._aliases.get(key)
        if instrument is None and "-" in key:
            # "btc/usdt" and "eth_usdt" are written forms of the btcusdt pair aliases.
            instrument = self._aliases.get(key.replace("-", ""))
        if instrument is None:
            raise UnknownSymbol(str(raw_token or "").strip())
        return instrument

    def get(self, instrument_id: str) -> Instrument:
        instrument = self._by_id.get(instrument_id)
        if instrument is None:
            raise UnknownSymbol(instrument_id)
        return instrument

    def instruments(self) -> List[Instrument]:
        return list(self._by_id.values())

    def aliases_for(self, instrument_id: str) -> List[str]:
        return sorted(alias for alias, instrument in self._aliases.items() if instrument.id == instrument_id)
