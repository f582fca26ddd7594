from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from pricewatch.errors import PersistenceError
from pricewatch.schemas import WatchlistResponse
from pricewatch.services.user_context import get_owner_id_from_request

router = APIRouter(prefix="/watchlist", tags=["watchlist"])


@router.get("", response_model=WatchlistResponse)
async def get_watchlist(request: Request):
    owner_id = get_owner_id_from_request(request)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Owner id header required")
    try:
        instruments = request.app.state.pricewatch.list_watchlist(owner_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=503, detail=f"Watchlist storage unavailable: {exc}") from exc
    return WatchlistResponse(owner_id=owner_id, instruments=instruments)


@router.post("/digest")
async def send_digest(request: Request):
    report = await request.app.state.digest.tick()
    return report.model_dump(mode="json")
