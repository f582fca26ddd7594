from __future__ import annotations

import re

from fastapi import Request

# LINE user ids look like "U" + 32 hex chars; other transports use their own opaque ids.
_OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_:\-]{0,63}$")


def _is_owner_id(value: str | None) -> bool:
    return bool(value) and bool(_OWNER_ID_PATTERN.fullmatch(value or ""))


def get_owner_id_from_request(request: Request) -> str | None:
    for header in ("x-owner-id", "x-user-id"):
        candidate = (request.headers.get(header) or "").strip()
        if _is_owner_id(candidate):
            return candidate
    return None
