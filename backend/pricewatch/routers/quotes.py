from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from pricewatch.errors import PriceUnavailable, UnknownSymbol
from pricewatch.schemas import PriceQuote
from pricewatch.services.notifications import format_quote
from pricewatch.services.user_context import get_owner_id_from_request

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.get("/{token}")
async def get_quote(token: str, request: Request):
    service = request.app.state.pricewatch
    owner_id = get_owner_id_from_request(request)
    try:
        quote: PriceQuote = await service.lookup(token, owner_id=owner_id)
    except UnknownSymbol as exc:
        raise HTTPException(status_code=404, detail=f"Unknown symbol: {exc.token}") from exc
    except PriceUnavailable as exc:
        raise HTTPException(status_code=503, detail="Price provider unavailable, try again later") from exc
    return {**quote.model_dump(mode="json"), "text": format_quote(quote)}
