from __future__ import annotations

import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from pricewatch.errors import PersistenceError
from pricewatch.schemas import AlertRule
from pricewatch.services.database import get_supabase

logger = logging.getLogger(__name__)

ALERTS_TABLE = "price_alerts"


def _rule_from_row(row: Dict[str, Any]) -> AlertRule:
    return AlertRule.model_validate(
        {
            "id": str(row.get("id") or ""),
            "owner_id": str(row.get("owner_id") or ""),
            "instrument": str(row.get("instrument") or ""),
            "comparator": row.get("comparator"),
            "threshold": row.get("threshold"),
            "created_at": row.get("created_at"),
        }
    )


class AlertRepository:
    """Standing price alerts, in Supabase when configured, else in process.

    Each call is atomic on its own; there is no multi-row transaction.
    Supabase failures raise PersistenceError instead of silently falling back,
    so a rule is never half-stored.
    """

    def __init__(self) -> None:
        self._rules: Dict[str, AlertRule] = {}

    def insert(self, rule: AlertRule) -> str:
        client = get_supabase()
        if client is None:
            self._rules[rule.id] = rule
            return rule.id

        payload = rule.model_dump(mode="json")
        try:
            data = client.table(ALERTS_TABLE).insert(payload).execute().data
        except Exception as exc:
            raise PersistenceError(f"Failed to persist alert {rule.id}: {exc}") from exc
        if data and isinstance(data[0], dict) and data[0].get("id"):
            return str(data[0]["id"])
        return rule.id

    def list_all(self) -> List[AlertRule]:
        client = get_supabase()
        if client is None:
            return sorted(self._rules.values(), key=lambda rule: rule.created_at)
        return self._select(client, owner_id=None)

    def list_by_owner(self, owner_id: str) -> List[AlertRule]:
        client = get_supabase()
        if client is None:
            return [rule for rule in self.list_all() if rule.owner_id == owner_id]
        return self._select(client, owner_id=owner_id)

    def delete_by_id(self, alert_id: str) -> bool:
        client = get_supabase()
        if client is None:
            return self._rules.pop(alert_id, None) is not None
        try:
            data = client.table(ALERTS_TABLE).delete().eq("id", alert_id).execute().data
        except Exception as exc:
            raise PersistenceError(f"Failed to delete alert {alert_id}: {exc}") from exc
        return bool(data)

    def delete_by_owner(self, owner_id: str) -> int:
        client = get_supabase()
        if client is None:
            doomed = [rule.id for rule in self._rules.values() if rule.owner_id == owner_id]
            for alert_id in doomed:
                self._rules.pop(alert_id, None)
            return len(doomed)
        try:
            data = client.table(ALERTS_TABLE).delete().eq("owner_id", owner_id).execute().data
        except Exception as exc:
            raise PersistenceError(f"Failed to delete alerts for {owner_id}: {exc}") from exc
        return len(data or [])

    def _select(self, client: Any, owner_id: str | None) -> List[AlertRule]:
        try:
            query = client.table(ALERTS_TABLE).select("*").order("created_at")
            if owner_id:
                query = query.eq("owner_id", owner_id)
            data = query.execute().data
        except Exception as exc:
            raise PersistenceError(f"Failed to list alerts: {exc}") from exc
        if not isinstance(data, list):
            return []
        rules: List[AlertRule] = []
        for row in data:
            if not isinstance(row, dict):
                continue
            try:
                rules.append(_rule_from_row(row))
            except ValidationError:
                # A malformed row is skipped so the remaining alerts still fire.
                logger.exception("Skipping malformed alert row %s", row.get("id"))
        return rules
