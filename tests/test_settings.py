"""Tests for YAML settings loading."""
import textwrap

import pytest

from config.settings import Settings, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestLoadSettings:
    def test_defaults_when_file_missing(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.queue.queue_name == "message_sending_queue"
        assert settings.queue.backend == "memory"
        assert settings.scheduling.max_retries == 3
        assert settings.scheduling.retention_days == 30
        assert (settings.scheduling.planner_hour, settings.scheduling.retention_hour) == (2, 3)

    def test_bundled_file_loads(self, monkeypatch):
        monkeypatch.delenv("AUTOPAIR_CONFIG", raising=False)
        settings = load_settings()
        assert settings.app_name == "AutoPair"
        assert settings.database.store_backend == "sql"
        assert settings.queue.ttl_seconds == 86400

    def test_partial_sections_keep_defaults(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            scheduling:
              scan_interval_seconds: 15
              unknown_key: ignored
        """))
        settings = load_settings(str(path))
        assert settings.scheduling.scan_interval_seconds == 15
        assert settings.scheduling.max_retries == 3
        assert not hasattr(settings.scheduling, "unknown_key")

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AUTOPAIR_TEST_REDIS", "redis://cache:6380")
        path = tmp_path / "settings.yaml"
        path.write_text(textwrap.dedent("""
            queue:
              backend: redis
              redis_url: "${AUTOPAIR_TEST_REDIS}"
            presence:
              redis_url: "${AUTOPAIR_TEST_UNSET_VAR}"
        """))
        settings = load_settings(str(path))
        assert settings.queue.redis_url == "redis://cache:6380"
        assert settings.presence.redis_url == "${AUTOPAIR_TEST_UNSET_VAR}"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("app_name: Staging\n")
        monkeypatch.setenv("AUTOPAIR_CONFIG", str(path))
        assert load_settings().app_name == "Staging"

    def test_get_settings_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AUTOPAIR_CONFIG", str(tmp_path / "absent.yaml"))
        assert get_settings() is get_settings()
        assert isinstance(get_settings(), Settings)
