"""Settings tests."""

from funlab.config import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.enforce_awardable_type_restriction is True
        assert settings.max_xp_per_award == 0
        assert settings.event_channel_prefix == "pubsub:funlab"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("FUNLAB_MAX_XP_PER_AWARD", "250")
        monkeypatch.setenv("FUNLAB_DISPATCH_EVENTS", "false")

        settings = Settings()

        assert settings.max_xp_per_award == 250
        assert settings.dispatch_events is False

    def test_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
