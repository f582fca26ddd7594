from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pricewatch.config import get_settings


def main() -> int:
    settings = get_settings()

    required = {
        "LINE_CHANNEL_ACCESS_TOKEN": settings.line_channel_access_token,
    }
    optional = {
        "SUPABASE_URL": settings.supabase_url,
        "SUPABASE_SERVICE_KEY": settings.supabase_service_key or settings.supabase_key,
        "COINGECKO_API_KEY": settings.coingecko_api_key,
    }

    missing_required = [name for name, value in required.items() if not str(value or "").strip()]

    print("Environment check")
    print("=================")
    for name, value in required.items():
        print(f"[{'ok' if value else 'missing'}] {name} (required)")
    for name, value in optional.items():
        print(f"[{'ok' if value else 'missing'}] {name} (optional)")
    print(f"Price sources (in order): {', '.join(settings.price_sources)}")
    print(f"Cache TTL: {settings.price_cache_ttl_seconds:g}s, alert interval: {settings.alert_poll_interval_seconds}s")

    if missing_required:
        print("\nMissing required environment variables:")
        for item in missing_required:
            print(f"- {item}")
        return 1

    print("\nAll required environment variables are present.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
