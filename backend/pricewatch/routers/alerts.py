from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from pricewatch.errors import PersistenceError, UnknownSymbol
from pricewatch.schemas import AlertCreateRequest
from pricewatch.services.user_context import get_owner_id_from_request

router = APIRouter(prefix="/alerts", tags=["alerts"])


def _require_owner_id(request: Request) -> str:
    owner_id = get_owner_id_from_request(request)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Owner id header required")
    return owner_id


def _storage_unavailable(exc: PersistenceError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Alert storage unavailable: {exc}")


@router.post("", status_code=201)
async def create_alert(payload: AlertCreateRequest, request: Request):
    owner_id = _require_owner_id(request)
    service = request.app.state.pricewatch
    try:
        rule = service.register_alert(owner_id, payload.token, payload.comparator, payload.threshold)
    except UnknownSymbol as exc:
        raise HTTPException(status_code=404, detail=f"Unknown symbol: {exc.token}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc
    return rule.model_dump(mode="json")


@router.get("")
async def list_alerts(request: Request):
    owner_id = _require_owner_id(request)
    try:
        rules = request.app.state.pricewatch.list_alerts(owner_id)
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc
    return {"alerts": [rule.model_dump(mode="json") for rule in rules]}


@router.delete("/{alert_id}")
async def delete_alert(alert_id: str, request: Request):
    owner_id = _require_owner_id(request)
    try:
        removed = request.app.state.pricewatch.remove_alert(owner_id, alert_id)
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc
    if not removed:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"ok": True}


@router.delete("")
async def clear_alerts(request: Request):
    owner_id = _require_owner_id(request)
    try:
        removed = request.app.state.pricewatch.clear_alerts(owner_id)
    except PersistenceError as exc:
        raise _storage_unavailable(exc) from exc
    return {"ok": True, "removed": removed}


@router.post("/tick")
async def run_tick(request: Request):
    report = await request.app.state.alert_scheduler.tick()
    return report.model_dump(mode="json")
