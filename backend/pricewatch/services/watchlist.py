from __future__ import annotations

from typing import Dict, Iterable, List

from pricewatch.errors import PersistenceError
from pricewatch.services.database import get_supabase

WATCHLIST_TABLE = "watchlist"


def _clean_ids(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for raw in values:
        value = str(raw or "").strip()
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


class WatchlistRepository:
    """Instruments each owner has looked up, in first-seen order."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[str]] = {}

    def add(self, owner_id: str, instrument_id: str) -> None:
        client = get_supabase()
        if client is None:
            items = self._entries.setdefault(owner_id, [])
            if instrument_id not in items:
                items.append(instrument_id)
            return
        try:
            client.table(WATCHLIST_TABLE).upsert(
                {"owner_id": owner_id, "instrument": instrument_id},
                on_conflict="owner_id,instrument",
            ).execute()
        except Exception as exc:
            raise PersistenceError(f"Failed to record watchlist entry: {exc}") from exc

    def list_by_owner(self, owner_id: str) -> list[str]:
        client = get_supabase()
        if client is None:
            return list(self._entries.get(owner_id, []))
        try:
            rows = (
                client.table(WATCHLIST_TABLE)
                .select("instrument")
                .eq("owner_id", owner_id)
                .order("added_at", desc=False)
                .execute()
                .data
                or []
            )
        except Exception as exc:
            raise PersistenceError(f"Failed to read watchlist: {exc}") from exc
        return _clean_ids(str(row.get("instrument") or "") for row in rows if isinstance(row, dict))

    def owners(self) -> list[str]:
        client = get_supabase()
        if client is None:
            return [owner for owner, items in self._entries.items() if items]
        try:
            rows = client.table(WATCHLIST_TABLE).select("owner_id").execute().data or []
        except Exception as exc:
            raise PersistenceError(f"Failed to list watchlist owners: {exc}") from exc
        return _clean_ids(str(row.get("owner_id") or "") for row in rows if isinstance(row, dict))
