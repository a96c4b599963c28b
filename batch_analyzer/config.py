from __future__ import annotations

import os
from dataclasses import dataclass

from .concurrency import SHARED_CONCURRENCY, SOLO_CONCURRENCY


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(int(raw), minimum)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    backend_url: str = "http://127.0.0.1:3000"
    http_timeout: int = 120
    solo_concurrency: int = SOLO_CONCURRENCY
    shared_concurrency: int = SHARED_CONCURRENCY
    max_items: int = 500


def load_settings() -> Settings:
    return Settings(
        backend_url=os.getenv("BATCH_ANALYZER_BACKEND_URL", Settings.backend_url).rstrip("/"),
        http_timeout=_env_int("BATCH_ANALYZER_HTTP_TIMEOUT", Settings.http_timeout),
        solo_concurrency=_env_int("BATCH_ANALYZER_SOLO_CONCURRENCY", SOLO_CONCURRENCY),
        shared_concurrency=_env_int("BATCH_ANALYZER_SHARED_CONCURRENCY", SHARED_CONCURRENCY),
        max_items=_env_int("BATCH_ANALYZER_MAX_ITEMS", Settings.max_items),
    )
