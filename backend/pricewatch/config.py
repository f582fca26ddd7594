from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List
from urllib.parse import urlparse

from pricewatch.errors import ConfigurationError

KNOWN_SOURCES = ("coingecko", "binance", "coinbase")


def _load_dotenv(path: str = ".env") -> None:
    candidates = [Path(path)]
    resolved = Path(__file__).resolve()
    # Probe parent directories safely without assuming a fixed depth.
    for parent in resolved.parents:
        candidates.append(parent / ".env")
    seen: set[Path] = set()
    for env_path in candidates:
        if env_path in seen or not env_path.exists():
            continue
        seen.add(env_path)
        for raw in env_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            os.environ.setdefault(key, value)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    except json.JSONDecodeError:
        pass
    return [token.strip() for token in raw.split(",") if token.strip()] or default


def _env_mapping(name: str) -> Dict[str, str]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(key): str(value) for key, value in parsed.items()}


@dataclass
class Settings:
    app_name: str = "PriceWatch API"
    environment: str = "development"
    log_level: str = "INFO"

    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_key: str = ""

    line_channel_access_token: str = ""
    line_api_url: str = "https://api.line.me/v2/bot"

    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    coingecko_api_key: str = ""
    binance_api_url: str = "https://api.binance.com"
    coinbase_api_url: str = "https://api.coinbase.com"

    price_sources: List[str] = field(default_factory=lambda: list(KNOWN_SOURCES))
    provider_timeout_seconds: float = 8.0
    provider_max_retries: int = 2
    provider_backoff_seconds: float = 1.5

    price_cache_ttl_seconds: float = 30.0
    alert_poll_interval_seconds: int = 60
    digest_enabled: bool = True
    digest_interval_seconds: int = 3600

    extra_symbol_aliases: Dict[str, str] = field(default_factory=dict)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _validate_settings(settings: Settings) -> None:
    if settings.environment.lower() == "production":
        required = {
            "SUPABASE_URL": settings.supabase_url,
            "SUPABASE_SERVICE_KEY": settings.supabase_service_key or settings.supabase_key,
            "LINE_CHANNEL_ACCESS_TOKEN": settings.line_channel_access_token,
        }
        missing = [key for key, value in required.items() if not str(value or "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required production environment variables: {', '.join(sorted(missing))}")

    unknown_sources = [name for name in settings.price_sources if name not in KNOWN_SOURCES]
    if unknown_sources:
        raise ConfigurationError(f"Invalid PRICE_SOURCES entries: {', '.join(unknown_sources)}")
    if not settings.price_sources:
        raise ConfigurationError("PRICE_SOURCES must name at least one provider.")

    urls = {
        "LINE_API_URL": settings.line_api_url,
        "COINGECKO_API_URL": settings.coingecko_api_url,
        "BINANCE_API_URL": settings.binance_api_url,
        "COINBASE_API_URL": settings.coinbase_api_url,
    }
    invalid_urls = [key for key, value in urls.items() if not _is_http_url(value)]
    if invalid_urls:
        raise ConfigurationError(f"Invalid URL settings: {', '.join(sorted(invalid_urls))}")

    if settings.price_cache_ttl_seconds <= 0:
        raise ConfigurationError("PRICE_CACHE_TTL_SECONDS must be positive.")
    if settings.alert_poll_interval_seconds <= 0 or settings.digest_interval_seconds <= 0:
        raise ConfigurationError("Poll intervals must be positive.")
    if settings.provider_timeout_seconds <= 0 or settings.provider_max_retries < 0:
        raise ConfigurationError("Provider timeout must be positive and retries non-negative.")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    _load_dotenv()
    settings = Settings(
        app_name=_env("APP_NAME", "PriceWatch API"),
        environment=_env("ENVIRONMENT", "development"),
        log_level=_env("LOG_LEVEL", "INFO"),
        supabase_url=_env("SUPABASE_URL"),
        supabase_key=_env("SUPABASE_KEY"),
        supabase_service_key=_env("SUPABASE_SERVICE_KEY"),
        line_channel_access_token=_env("LINE_CHANNEL_ACCESS_TOKEN"),
        line_api_url=_env("LINE_API_URL", "https://api.line.me/v2/bot"),
        coingecko_api_url=_env("COINGECKO_API_URL", "https://api.coingecko.com/api/v3"),
        coingecko_api_key=_env("COINGECKO_API_KEY"),
        binance_api_url=_env("BINANCE_API_URL", "https://api.binance.com"),
        coinbase_api_url=_env("COINBASE_API_URL", "https://api.coinbase.com"),
        price_sources=[name.strip().lower() for name in _env_list("PRICE_SOURCES", list(KNOWN_SOURCES))],
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 8.0),
        provider_max_retries=_env_int("PROVIDER_MAX_RETRIES", 2),
        provider_backoff_seconds=_env_float("PROVIDER_BACKOFF_SECONDS", 1.5),
        price_cache_ttl_seconds=_env_float("PRICE_CACHE_TTL_SECONDS", 30.0),
        alert_poll_interval_seconds=_env_int("ALERT_POLL_INTERVAL_SECONDS", 60),
        digest_enabled=_env_bool("DIGEST_ENABLED", True),
        digest_interval_seconds=_env_int("DIGEST_INTERVAL_SECONDS", 3600),
        extra_symbol_aliases=_env_mapping("EXTRA_SYMBOL_ALIASES"),
    )
    _validate_settings(settings)
    return settings
