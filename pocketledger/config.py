from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

FALLBACK_CURRENCY = "EUR"
TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    access_token_ttl_minutes: int
    refresh_token_ttl_days: int
    app_env: str
    frontend_origin: str
    default_currency: str
    enforce_category_kind: bool
    cron_secret: str | None
    log_level: str

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUE_VALUES


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _read_currency(name: str) -> str:
    raw = os.getenv(name, FALLBACK_CURRENCY).strip().upper()
    if len(raw) != 3 or not raw.isalpha():
        return FALLBACK_CURRENCY
    return raw


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./pocketledger.db"),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_ttl_minutes=_read_int("ACCESS_TOKEN_TTL_MINUTES", 60),
        refresh_token_ttl_days=_read_int("REFRESH_TOKEN_TTL_DAYS", 7),
        app_env=os.getenv("APP_ENV", "development").strip().lower(),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
        default_currency=_read_currency("DEFAULT_CURRENCY"),
        enforce_category_kind=_read_bool("ENFORCE_CATEGORY_KIND", True),
        cron_secret=os.getenv("CRON_SECRET") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
