from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from pricewatch.schemas import InstrumentInfo
from pricewatch.services.database import get_supabase

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(request: Request):
    settings = request.app.state.settings
    return {
        "ok": True,
        "status": "ok",
        "app": settings.app_name,
        "environment": settings.environment,
        "dependencies": {
            "database": "supabase" if get_supabase() is not None else "memory",
            "notifier": "line" if settings.line_channel_access_token else "disabled",
        },
        "sources": request.app.state.chain.source_names,
        "schedulers": {
            "alerts": request.app.state.alert_scheduler.running,
            "digest": request.app.state.digest.running,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/instruments", response_model=list[InstrumentInfo])
async def instruments(request: Request):
    resolver = request.app.state.resolver
    return [
        InstrumentInfo(
            id=item.id,
            symbol=item.symbol,
            name=item.name,
            aliases=resolver.aliases_for(item.id),
            sources=item.sources,
        )
        for item in resolver.instruments()
    ]
