"""Runtime configuration.

Two layers live here: process-level ``AppConfig`` (environment driven,
cached for the process lifetime) and the user-editable ``Settings`` stored
in the ``app_settings`` table and read through a short-TTL ``SettingsCache``.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from functools import lru_cache
from typing import Callable

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from intelbox.models import AppSetting

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_STALENESS_DAYS = 180

# app_settings keys
KEY_SEARCH_PROVIDER = "search_provider"
KEY_STALENESS_DAYS = "staleness_days"
API_KEY_PREFIX = "api_key."

_ENV_API_KEYS = {
    "tavily": "TAVILY_API_KEY",
    "serpapi": "SERPAPI_API_KEY",
}


class AppConfig(BaseModel):
    user_agent: str = "IntelBoxBot/1.0 (+https://intelbox.local)"
    fetch_timeout_seconds: float = 20.0
    search_timeout_seconds: float = 20.0
    max_content_chars: int = 300_000
    fetch_concurrency: int = 5
    search_results_per_query: int = 10
    scheduler_poll_seconds: float = 30.0
    scheduler_concurrency: int = 3


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    overrides: dict[str, float] = {}
    if os.environ.get("INTELBOX_FETCH_TIMEOUT"):
        overrides["fetch_timeout_seconds"] = float(os.environ["INTELBOX_FETCH_TIMEOUT"])
    return AppConfig(**overrides)


class Settings(BaseModel):
    search_provider: str | None = None
    api_keys: dict[str, str] = Field(default_factory=dict)
    staleness_days: int = DEFAULT_STALENESS_DAYS

    def api_key(self, provider: str) -> str | None:
        return self.api_keys.get(provider) or None


class SettingsCache:
    """Single-slot TTL cache for :class:`Settings`.

    Readers may observe a value up to ``ttl`` seconds old; ``invalidate()``
    drops it immediately.
    """

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Settings | None = None
        self._loaded_at = 0.0

    def get(self) -> Settings | None:
        with self._lock:
            if self._value is None:
                return None
            if self._clock() - self._loaded_at >= self.ttl:
                self._value = None
                return None
            return self._value

    def put(self, value: Settings) -> None:
        with self._lock:
            self._value = value
            self._loaded_at = self._clock()

    def invalidate(self) -> None:
        with self._lock:
            self._value = None


class SettingsLoader:
    """Reads :class:`Settings` from ``app_settings`` with env-var fallback."""

    def __init__(self, cache: SettingsCache, session_factory: Callable[[], Session]):
        self.cache = cache
        self._session_factory = session_factory

    def load(self) -> Settings:
        cached = self.cache.get()
        if cached is not None:
            return cached
        session = self._session_factory()
        try:
            rows = {row.key: row.value for row in session.execute(select(AppSetting)).scalars()}
        finally:
            session.close()
        settings = _settings_from_rows(rows)
        self.cache.put(settings)
        return settings

    def save(self, settings: Settings) -> None:
        rows: dict[str, str] = {
            KEY_SEARCH_PROVIDER: settings.search_provider or "",
            KEY_STALENESS_DAYS: str(settings.staleness_days),
        }
        for provider, key in settings.api_keys.items():
            rows[f"{API_KEY_PREFIX}{provider}"] = key
        session = self._session_factory()
        try:
            for key, value in rows.items():
                row = session.get(AppSetting, key)
                if row is None:
                    session.add(AppSetting(key=key, value=value))
                else:
                    row.value = value
            session.commit()
        finally:
            session.close()
        self.cache.invalidate()
        log.info("Settings saved (provider=%s)", settings.search_provider or "none")


def _settings_from_rows(rows: dict[str, str]) -> Settings:
    provider = rows.get(KEY_SEARCH_PROVIDER) or os.environ.get("SEARCH_PROVIDER") or None

    api_keys: dict[str, str] = {}
    for provider_name, env_name in _ENV_API_KEYS.items():
        if os.environ.get(env_name):
            api_keys[provider_name] = os.environ[env_name]
    for key, value in rows.items():
        if key.startswith(API_KEY_PREFIX) and value:
            api_keys[key.removeprefix(API_KEY_PREFIX)] = value

    raw_days = rows.get(KEY_STALENESS_DAYS) or os.environ.get("STALENESS_DAYS")
    try:
        staleness_days = int(raw_days) if raw_days else DEFAULT_STALENESS_DAYS
    except ValueError:
        log.warning("Ignoring invalid staleness_days=%r", raw_days)
        staleness_days = DEFAULT_STALENESS_DAYS

    return Settings(
        search_provider=provider.lower() if provider else None,
        api_keys=api_keys,
        staleness_days=staleness_days,
    )
