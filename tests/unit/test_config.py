"""Unit tests for configuration and settings."""
from common.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    """Test configuration management."""

    def test_get_settings_returns_same_instance(self):
        assert get_settings() is get_settings()

    def test_reset_settings_cache(self):
        settings1 = get_settings()
        reset_settings_cache()
        settings2 = get_settings()

        assert settings1 is not settings2

    def test_test_environment_is_applied(self):
        """The test suite points at SQLite and disables limits and notifications."""
        settings = get_settings()

        assert settings.database_url.startswith("sqlite")
        assert settings.rate_limiting_enabled is False
        assert settings.notifications_enabled is False

    def test_jwt_configuration(self):
        settings = get_settings()

        assert settings.jwt_secret
        assert settings.jwt_algorithm == "HS256"
        assert settings.access_token_expire_minutes > 0

    def test_service_ports_configuration(self):
        settings = get_settings()

        assert settings.users_service_port == 8001
        assert settings.rooms_service_port == 8002
        assert settings.students_service_port == 8003
        assert settings.applications_service_port == 8004
        assert settings.maintenance_service_port == 8005
        assert settings.announcements_service_port == 8006
        assert settings.billing_service_port == 8007
        assert settings.analytics_service_port == 8008

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ROOM_CACHE_TTL", "5")
        monkeypatch.setenv("NOTIFICATION_QUEUE", "custom-queue")

        settings = Settings()

        assert settings.room_cache_ttl == 5
        assert settings.notification_queue == "custom-queue"

    def test_cors_origins_configuration(self):
        settings = get_settings()

        assert isinstance(settings.cors_origins, list)
        assert len(settings.cors_origins) > 0
