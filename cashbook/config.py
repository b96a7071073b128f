from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os

from cashbook.money import normalize_currency
from cashbook.search import DEFAULT_PAGE_SIZE

RATE_SOURCES = {"static", "stored"}


def _currency_from_env(name: str, default: str) -> str:
    raw = os.getenv(name, default)
    try:
        return normalize_currency(raw)
    except ValueError:
        return default


def _flag_from_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./cashbook.db"
    default_currency: str = "SSP"
    fx_rate_source: str = "stored"
    fx_base_currency: str = "SSP"
    search_page_size: int = DEFAULT_PAGE_SIZE
    frontend_origin: str = "http://localhost:3000"
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        if self.fx_rate_source not in RATE_SOURCES:
            raise ValueError(
                f"Unsupported FX_RATE_SOURCE '{self.fx_rate_source}'. Allowed: {sorted(RATE_SOURCES)}"
            )
        if self.search_page_size <= 0:
            raise ValueError("SEARCH_PAGE_SIZE must be greater than zero.")


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./cashbook.db"),
        default_currency=_currency_from_env("DEFAULT_CURRENCY", "SSP"),
        fx_rate_source=os.getenv("FX_RATE_SOURCE", "stored").strip().lower(),
        fx_base_currency=_currency_from_env("FX_BASE_CURRENCY", "SSP"),
        search_page_size=int(os.getenv("SEARCH_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        log_json=_flag_from_env("LOG_JSON", True),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
