from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Protocol

import httpx

from pricewatch.config import Settings
from pricewatch.schemas import AlertRule, PriceQuote

logger = logging.getLogger(__name__)

_MAX_TEXT_LENGTH = 5000
_COMPARATOR_SIGNS = {"at_least": "≥", "at_most": "≤"}


class Notifier(Protocol):
    async def send(self, owner_id: str, text: str) -> None: ...


def _plain(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _percent(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01')):+}%"


def format_quote(quote: PriceQuote) -> str:
    lines = [quote.symbol, f"${_plain(quote.price)}"]
    if quote.change_24h is not None:
        lines.append(f"24H: {_percent(quote.change_24h)}")
    return "\n".join(lines)


def format_alert_triggered(rule: AlertRule, quote: PriceQuote) -> str:
    sign = _COMPARATOR_SIGNS.get(rule.comparator, "?")
    return (
        f"🔔 {quote.symbol} is now ${_plain(quote.price)}\n"
        f"Alert: price {sign} {_plain(rule.threshold)}"
    )


def format_digest(quotes: Iterable[PriceQuote]) -> str:
    lines = ["📊 รายงานราคาล่าสุด", ""]
    for quote in quotes:
        line = f"{quote.symbol} ${_plain(quote.price)}"
        if quote.change_24h is not None:
            line += f" ({_percent(quote.change_24h)})"
        lines.append(line)
    return "\n".join(lines)


class LineNotifier:
    """Pushes text messages through the LINE Messaging API.

    Delivery is fire-and-forget: failures are logged and swallowed so that
    callers (the alert scheduler in particular) never block on them.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._token = settings.line_channel_access_token.strip()
        self._endpoint = f"{settings.line_api_url.rstrip('/')}/message/push"
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._token)

    async def send(self, owner_id: str, text: str) -> None:
        if not self._token:
            logger.warning("LINE token missing; dropping message for %s", owner_id)
            return

        payload = {"to": owner_id, "messages": [{"type": "text", "text": text[:_MAX_TEXT_LENGTH]}]}
        headers = {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}
        try:
            if self._client is not None:
                response = await self._client.post(self._endpoint, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self._endpoint, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("LINE push to %s failed: %s", owner_id, exc)
            return
        if response.status_code >= 300:
            logger.warning("LINE push to %s returned HTTP %s: %s", owner_id, response.status_code, response.text[:200])
