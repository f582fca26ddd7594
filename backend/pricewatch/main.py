from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pricewatch.config import get_settings
from pricewatch.routers import alerts, quotes, system, watchlist
from pricewatch.services.alert_store import AlertRepository
from pricewatch.services.alerts import AlertScheduler
from pricewatch.services.digest import DigestBroadcaster
from pricewatch.services.lookup import PriceWatchService
from pricewatch.services.notifications import LineNotifier
from pricewatch.services.price_cache import PriceCache, QuoteService
from pricewatch.services.sources import SourceChain, build_source_descriptors
from pricewatch.services.symbols import SymbolResolver
from pricewatch.services.watchlist import WatchlistRepository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    resolver = SymbolResolver(extra_aliases=settings.extra_symbol_aliases)
    chain = SourceChain(build_source_descriptors(settings))
    quote_service = QuoteService(chain, PriceCache(settings.price_cache_ttl_seconds))
    alert_store = AlertRepository()
    watchlist_store = WatchlistRepository()
    notifier = LineNotifier(settings)
    alert_scheduler = AlertScheduler(
        alert_store,
        resolver,
        quote_service,
        notifier,
        interval_seconds=settings.alert_poll_interval_seconds,
    )
    digest = DigestBroadcaster(
        watchlist_store,
        resolver,
        quote_service,
        notifier,
        interval_seconds=settings.digest_interval_seconds,
    )

    app.state.settings = settings
    app.state.resolver = resolver
    app.state.chain = chain
    app.state.quotes = quote_service
    app.state.pricewatch = PriceWatchService(resolver, quote_service, alert_store, watchlist_store)
    app.state.alert_scheduler = alert_scheduler
    app.state.digest = digest

    if not notifier.configured:
        logger.warning("LINE_CHANNEL_ACCESS_TOKEN is not set; notifications will be dropped.")

    try:
        await alert_scheduler.start()
    except Exception:
        logger.exception("Failed to start alert scheduler")
    if settings.digest_enabled:
        try:
            await digest.start()
        except Exception:
            logger.exception("Failed to start digest broadcaster")

    try:
        yield
    finally:
        for service in (alert_scheduler, digest):
            try:
                await service.stop()
            except Exception:
                logger.exception("Failed to stop %s", service.name)
        try:
            await quote_service.aclose()
        except Exception:
            logger.exception("Failed to close quote service")


settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.include_router(system.router)
app.include_router(quotes.router)
app.include_router(alerts.router)
app.include_router(watchlist.router)


@app.get("/")
async def root():
    return {"app": settings.app_name, "status": "running"}
