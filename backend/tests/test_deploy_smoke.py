from __future__ import annotations

from fastapi.testclient import TestClient
from starlette.requests import Request

from pricewatch.main import app
from pricewatch.services.user_context import get_owner_id_from_request


def _request_with_headers(headers: dict[str, str]) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(key.encode("latin-1"), value.encode("latin-1")) for key, value in headers.items()],
        "query_string": b"",
    }
    return Request(scope)


def test_app_starts_and_stops_background_services(monkeypatch):
    monkeypatch.setattr("pricewatch.services.database.get_supabase", lambda: None)

    with TestClient(app) as client:
        health = client.get("/health")
        root = client.get("/")
        assert app.state.alert_scheduler.running

    assert health.status_code == 200
    assert health.json()["sources"] == ["coingecko", "binance", "coinbase"]
    assert root.json()["status"] == "running"
    assert not app.state.alert_scheduler.running
    assert not app.state.digest.running


def test_owner_header_resolution():
    assert get_owner_id_from_request(_request_with_headers({"x-owner-id": "Uabc123"})) == "Uabc123"
    assert get_owner_id_from_request(_request_with_headers({"x-user-id": "line:Uabc"})) == "line:Uabc"
    assert get_owner_id_from_request(_request_with_headers({"x-owner-id": "drop table;"})) is None
    assert get_owner_id_from_request(_request_with_headers({})) is None
