from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Tuple

import httpx

from pricewatch.config import Settings
from pricewatch.errors import AllSourcesExhausted, PriceWatchError, ProviderUnavailable, RateLimited
from pricewatch.schemas import PriceQuote
from pricewatch.services.symbols import Instrument

logger = logging.getLogger(__name__)

RequestBuilder = Callable[[str], Tuple[str, Dict[str, Any]]]
PayloadParser = Callable[[Any, str], Tuple[Decimal, Decimal | None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            clean = value.strip().replace(",", "")
            if not clean:
                return None
            value = clean
        parsed = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, RateLimited):
        return True
    return isinstance(exc, ProviderUnavailable) and exc.transient


@dataclass(frozen=True)
class SourceDescriptor:
    name: str
    priority: int
    build_request: RequestBuilder
    parse: PayloadParser
    timeout_seconds: float = 8.0
    max_retries: int = 2
    backoff_seconds: float = 1.5
    headers: Mapping[str, str] = field(default_factory=dict)
    is_retryable: Callable[[Exception], bool] = is_transient


def _coingecko_parse(payload: Any, source_id: str) -> Tuple[Decimal, Decimal | None]:
    row = payload.get(source_id) if isinstance(payload, dict) else None
    if not isinstance(row, dict):
        raise ProviderUnavailable("coingecko", f"no data for {source_id}")
    price = _to_decimal(row.get("usd"))
    if price is None:
        raise ProviderUnavailable("coingecko", f"missing usd price for {source_id}")
    return price, _to_decimal(row.get("usd_24h_change"))


def _binance_parse(payload: Any, source_id: str) -> Tuple[Decimal, Decimal | None]:
    if not isinstance(payload, dict):
        raise ProviderUnavailable("binance", "unexpected payload")
    price = _to_decimal(payload.get("lastPrice"))
    if price is None:
        raise ProviderUnavailable("binance", f"missing lastPrice for {source_id}")
    return price, _to_decimal(payload.get("priceChangePercent"))


def _coinbase_parse(payload: Any, source_id: str) -> Tuple[Decimal, Decimal | None]:
    data = payload.get("data") if isinstance(payload, dict) else None
    price = _to_decimal(data.get("amount")) if isinstance(data, dict) else None
    if price is None:
        raise ProviderUnavailable("coinbase", f"missing spot amount for {source_id}")
    # Spot endpoint carries no 24h figure.
    return price, None


def build_source_descriptors(settings: Settings) -> List[SourceDescriptor]:
    coingecko_base = settings.coingecko_api_url.rstrip("/")
    binance_base = settings.binance_api_url.rstrip("/")
    coinbase_base = settings.coinbase_api_url.rstrip("/")
    coingecko_headers = {"Accept": "application/json"}
    if settings.coingecko_api_key:
        coingecko_headers["x-cg-demo-api-key"] = settings.coingecko_api_key

    factories: Dict[str, Callable[[int], SourceDescriptor]] = {
        "coingecko": lambda priority: SourceDescriptor(
            name="coingecko",
            priority=priority,
            build_request=lambda source_id: (
                f"{coingecko_base}/simple/price",
                {"ids": source_id, "vs_currencies": "usd", "include_24hr_change": "true"},
            ),
            parse=_coingecko_parse,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            backoff_seconds=settings.provider_backoff_seconds,
            headers=coingecko_headers,
        ),
        "binance": lambda priority: SourceDescriptor(
            name="binance",
            priority=priority,
            build_request=lambda source_id: (f"{binance_base}/api/v3/ticker/24hr", {"symbol": source_id}),
            parse=_binance_parse,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            backoff_seconds=settings.provider_backoff_seconds,
        ),
        "coinbase": lambda priority: SourceDescriptor(
            name="coinbase",
            priority=priority,
            build_request=lambda source_id: (f"{coinbase_base}/v2/prices/{source_id}/spot", {}),
            parse=_coinbase_parse,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            backoff_seconds=settings.provider_backoff_seconds,
        ),
    }
    return [factories[name](priority) for priority, name in enumerate(settings.price_sources)]


class SourceChain:
    """Tries each price source in priority order until one answers.

    Retryable failures (rate limiting, upstream 5xx) are retried on the same
    source after a fixed backoff; anything else, or an exhausted retry budget,
    falls through to the next source.
    """

    def __init__(
        self,
        descriptors: Iterable[SourceDescriptor],
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._descriptors = tuple(sorted(descriptors, key=lambda item: item.priority))
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock

    @property
    def source_names(self) -> List[str]:
        return [descriptor.name for descriptor in self._descriptors]

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"User-Agent": "PriceWatch/1.0"})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, descriptor: SourceDescriptor, source_id: str) -> Any:
        url, params = descriptor.build_request(source_id)
        resp = await self._get_client().get(
            url,
            params=params,
            headers=dict(descriptor.headers),
            timeout=descriptor.timeout_seconds,
        )
        if resp.status_code == 429:
            retry_after = _to_decimal(resp.headers.get("retry-after"))
            raise RateLimited(descriptor.name, float(retry_after) if retry_after is not None else None)
        if resp.status_code >= 500:
            raise ProviderUnavailable(descriptor.name, f"HTTP {resp.status_code}", transient=True)
        if resp.status_code >= 400:
            raise ProviderUnavailable(descriptor.name, f"HTTP {resp.status_code}")
        try:
            return resp.json(parse_float=Decimal)
        except ValueError as exc:
            raise ProviderUnavailable(descriptor.name, "malformed JSON body") from exc

    async def _attempt(self, descriptor: SourceDescriptor, instrument: Instrument, source_id: str) -> PriceQuote:
        try:
            payload = await asyncio.wait_for(self._request(descriptor, source_id), timeout=descriptor.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise ProviderUnavailable(descriptor.name, "timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(descriptor.name, f"{type(exc).__name__}: {exc}") from exc

        try:
            price, change = descriptor.parse(payload, source_id)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ProviderUnavailable(descriptor.name, "malformed payload") from exc
        if price <= 0:
            raise ProviderUnavailable(descriptor.name, f"non-positive price {price}")
        return PriceQuote(
            instrument=instrument.id,
            symbol=instrument.symbol,
            price=price,
            change_24h=change,
            observed_at=self._clock(),
            source=descriptor.name,
        )

    async def fetch(self, instrument: Instrument) -> PriceQuote:
        failures: Dict[str, str] = {}
        for descriptor in self._descriptors:
            source_id = instrument.source_id(descriptor.name)
            if not source_id:
                continue

            retries = 0
            while True:
                try:
                    return await self._attempt(descriptor, instrument, source_id)
                except PriceWatchError as exc:
                    if descriptor.is_retryable(exc) and retries < descriptor.max_retries:
                        retries += 1
                        logger.warning(
                            "%s failed for %s (%s); retry %d/%d in %.1fs",
                            descriptor.name,
                            instrument.id,
                            exc,
                            retries,
                            descriptor.max_retries,
                            descriptor.backoff_seconds,
                        )
                        await self._sleep(descriptor.backoff_seconds)
                        continue
                    failures[descriptor.name] = str(exc)
                    logger.info("Falling back from %s for %s: %s", descriptor.name, instrument.id, exc)
                    break

        raise AllSourcesExhausted(instrument.id, failures)
