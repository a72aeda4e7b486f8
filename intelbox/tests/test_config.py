from __future__ import annotations

from intelbox.config import Settings, SettingsCache, SettingsLoader
from intelbox.models import AppSetting


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSettingsCache:
    def test_value_expires_after_ttl(self):
        clock = FakeClock()
        cache = SettingsCache(ttl=60, clock=clock)
        cache.put(Settings(staleness_days=30))
        clock.now = 59
        assert cache.get().staleness_days == 30
        clock.now = 60
        assert cache.get() is None

    def test_invalidate(self):
        cache = SettingsCache()
        cache.put(Settings())
        cache.invalidate()
        assert cache.get() is None


class TestSettingsLoader:
    def test_defaults_from_empty_store(self, session_factory, monkeypatch):
        for name in ("SEARCH_PROVIDER", "TAVILY_API_KEY", "SERPAPI_API_KEY", "STALENESS_DAYS"):
            monkeypatch.delenv(name, raising=False)
        settings = SettingsLoader(SettingsCache(), session_factory).load()
        assert settings.search_provider is None
        assert settings.api_keys == {}
        assert settings.staleness_days == 180

    def test_env_fallback(self, session_factory, monkeypatch):
        monkeypatch.setenv("SEARCH_PROVIDER", "Tavily")
        monkeypatch.setenv("TAVILY_API_KEY", "env-key")
        monkeypatch.setenv("STALENESS_DAYS", "90")
        settings = SettingsLoader(SettingsCache(), session_factory).load()
        assert settings.search_provider == "tavily"
        assert settings.api_key("tavily") == "env-key"
        assert settings.staleness_days == 90

    def test_stored_rows_win_over_env(self, session_factory, session, monkeypatch):
        monkeypatch.setenv("TAVILY_API_KEY", "env-key")
        session.add_all([
            AppSetting(key="search_provider", value="serpapi"),
            AppSetting(key="api_key.tavily", value="db-key"),
            AppSetting(key="staleness_days", value="not-a-number"),
        ])
        session.commit()
        settings = SettingsLoader(SettingsCache(), session_factory).load()
        assert settings.search_provider == "serpapi"
        assert settings.api_key("tavily") == "db-key"
        assert settings.staleness_days == 180

    def test_reads_are_cached_until_save(self, session_factory, session, monkeypatch):
        monkeypatch.delenv("STALENESS_DAYS", raising=False)
        loader = SettingsLoader(SettingsCache(ttl=60), session_factory)
        assert loader.load().staleness_days == 180

        session.add(AppSetting(key="staleness_days", value="30"))
        session.commit()
        assert loader.load().staleness_days == 180  # cached

        loader.save(Settings(search_provider="duckduckgo", staleness_days=45))
        fresh = loader.load()
        assert fresh.staleness_days == 45
        assert fresh.search_provider == "duckduckgo"
